"""Timeline, automation and playback core for a multitrack audio editor."""

from .curves import (
    Curve,
    ExponentialIn,
    Linear,
    LogarithmicOut,
    SCurve,
    curve_for,
    evaluate_curve,
    interpolate,
    sample_curve,
    shape_progress,
)
from .encode import ConversionError, FfmpegConverter, MonotonicProgress, SoundfileConverter, encode
from .envelope import (
    EnvelopePoint,
    EnvelopeSegment,
    TrackEnvelope,
    default_envelope,
    evaluate_envelope_gain_at,
    get_envelope_multiplier_at_time,
    migrate_to_segments,
)
from .graph import (
    AudioBuffer,
    AudioParam,
    AudioSource,
    InMemoryAudioSource,
    LiveContext,
    OfflineContext,
    SchedulingError,
)
from .looping import DEFAULT_LOOPING_POLICY, LoopingPolicy, clip_cycles, compute_loop_end_ms
from .model import Clip, Marker, PlaybackState, Project, Track
from .render import RenderRange, render_project, render_project_to_audio_buffer
from .scale import Scale
from .scheduler import PlaybackScheduler, PlayheadHint
from .serde import deserialize_project, serialize_project
from .timebase import GridSettings, MusicalMetadata, Timebase, TimelineSettings, TimeSignature
from .wav import decode_wav, encode_wav

__all__ = [
    "AudioBuffer",
    "AudioParam",
    "AudioSource",
    "clip_cycles",
    "Clip",
    "compute_loop_end_ms",
    "ConversionError",
    "Curve",
    "curve_for",
    "decode_wav",
    "default_envelope",
    "DEFAULT_LOOPING_POLICY",
    "deserialize_project",
    "encode",
    "encode_wav",
    "EnvelopePoint",
    "EnvelopeSegment",
    "evaluate_curve",
    "evaluate_envelope_gain_at",
    "ExponentialIn",
    "FfmpegConverter",
    "get_envelope_multiplier_at_time",
    "GridSettings",
    "InMemoryAudioSource",
    "interpolate",
    "Linear",
    "LiveContext",
    "LogarithmicOut",
    "LoopingPolicy",
    "Marker",
    "migrate_to_segments",
    "MonotonicProgress",
    "MusicalMetadata",
    "OfflineContext",
    "PlaybackScheduler",
    "PlaybackState",
    "PlayheadHint",
    "Project",
    "render_project",
    "render_project_to_audio_buffer",
    "RenderRange",
    "sample_curve",
    "Scale",
    "SchedulingError",
    "SCurve",
    "serialize_project",
    "shape_progress",
    "SoundfileConverter",
    "Timebase",
    "TimelineSettings",
    "TimeSignature",
    "Track",
    "TrackEnvelope",
]

__version__ = "0.1.0"
