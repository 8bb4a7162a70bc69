"""Offline, deterministic render of a project time window."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Self

import numpy as np

from .graph import AudioBuffer, AudioSource, OfflineContext
from .model import Track, project_duration, solo_engaged
from .scheduling import (
    TimeMap,
    schedule_clip_cycles,
    schedule_clip_fades,
    schedule_track_envelope,
)
from .volume import db_to_gain, volume_to_db

log = logging.getLogger(__name__)

NORMALIZE_TARGET = 0.95
DEFAULT_RENDER_MS = 60_000.0


@dataclass(frozen=True)
class RenderRange:
    start_ms: float
    end_ms: float
    sample_rate: int = 48_000
    channels: int = 2

    def __post_init__(self) -> None:
        if self.sample_rate <= 0:
            raise ValueError(f"sample_rate must be positive, got {self.sample_rate}")
        if self.channels not in (1, 2):
            raise ValueError(f"channels must be 1 or 2, got {self.channels}")
        if self.start_ms < 0 or self.end_ms <= self.start_ms:
            raise ValueError(f"Invalid render range [{self.start_ms}, {self.end_ms})")

    @classmethod
    def for_project(cls, tracks: list[Track], sample_rate: int = 48_000, channels: int = 2) -> Self:
        """Whole project from zero, at least one minute long."""
        return cls(0.0, max(project_duration(tracks), DEFAULT_RENDER_MS), sample_rate, channels)

    @property
    def length(self) -> int:
        return math.ceil((self.end_ms - self.start_ms) / 1000 * self.sample_rate)


def normalize_buffer(buffer: AudioBuffer, target: float = NORMALIZE_TARGET) -> AudioBuffer:
    """Scale a quiet buffer so its peak sits at *target*. Louder or silent buffers pass through."""
    peak = float(np.max(np.abs(buffer.data))) if buffer.data.size else 0.0
    if peak <= 0 or peak >= 1:
        return buffer
    scaled = (buffer.data * (target / peak)).astype(buffer.data.dtype)
    return AudioBuffer(buffer.sample_rate, scaled)


def render_project(
    tracks: list[Track],
    render_range: RenderRange,
    audio_source: AudioSource,
    normalize: bool = False,
) -> AudioBuffer:
    """Render ``[start_ms, end_ms)`` of *tracks* into a new buffer.

    Uses the same envelope, fade and loop-cycle scheduling as live playback,
    with render-local time zero at ``start_ms``. Clips without decoded audio
    are skipped.
    """
    start, end = render_range.start_ms, render_range.end_ms
    ctx = OfflineContext(
        sample_rate=render_range.sample_rate,
        channels=render_range.channels,
        length=render_range.length,
    )
    master = ctx.create_gain()
    master.connect(ctx.destination)
    time_map = TimeMap(start, 0.0)
    engaged = solo_engaged(tracks)

    for track in tracks:
        if not track.is_audible(engaged):
            continue
        track_gain = ctx.create_gain()
        track_gain.connect(master)
        base_gain = db_to_gain(volume_to_db(track.volume))
        schedule_track_envelope(track_gain.gain, track.volume_envelope, start, end, base_gain, time_map, 0.0)

        for clip in track.clips:
            if not clip.overlaps(start, end):
                continue
            buffer = audio_source.get_buffer(clip.source_id) if clip.source_id else None
            if buffer is None:
                log.warning("Skipping clip %s: no decoded audio for source %r", clip.id, clip.source_id)
                continue
            clip_gain = ctx.create_gain()
            clip_gain.connect(track_gain)
            schedule_clip_fades(clip_gain.gain, clip, start, time_map, 0.0)
            schedule_clip_cycles(ctx, clip, clip_gain, buffer, start, end, time_map)

    rendered = ctx.start_rendering()
    if normalize:
        rendered = normalize_buffer(rendered)
    return rendered


render_project_to_audio_buffer = render_project
