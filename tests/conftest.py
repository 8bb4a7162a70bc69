"""Shared test fixtures."""

from dataclasses import dataclass

import numpy as np
import pytest

from dawcore import AudioBuffer, Clip, InMemoryAudioSource, LiveContext, Track
from dawcore.envelope import EnvelopePoint, EnvelopeSegment, TrackEnvelope

SAMPLE_RATE = 8000


@dataclass
class ManualClock:
    """Clock for LiveContext that only moves when told to."""

    now: float = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def constant_buffer(seconds: float, value: float = 0.5, channels: int = 1, sample_rate: int = SAMPLE_RATE) -> AudioBuffer:
    frames = int(round(seconds * sample_rate))
    return AudioBuffer(sample_rate, np.full((channels, frames), value, dtype=np.float32))


def ramp_buffer(seconds: float, sample_rate: int = SAMPLE_RATE) -> AudioBuffer:
    """Mono buffer whose sample value is its own time in seconds."""
    frames = int(round(seconds * sample_rate))
    return AudioBuffer(sample_rate, (np.arange(frames, dtype=np.float32) / sample_rate)[np.newaxis, :])


def make_clip(clip_id: str = "c1", start: float = 0.0, length: float = 1000.0, **kwargs) -> Clip:
    kwargs.setdefault("source_id", "src")
    return Clip(clip_id, start_time=start, trim_start=0.0, trim_end=length, **kwargs)


def make_envelope(*points: tuple[float, float], curves: tuple[float, ...] = ()) -> TrackEnvelope:
    """Enabled envelope through ``(time, value)`` points; *curves* shape consecutive segments."""
    pts = [EnvelopePoint(f"p{i}", t, v) for i, (t, v) in enumerate(points)]
    segs = [
        EnvelopeSegment(f"s{i}", a.id, b.id, curves[i] if i < len(curves) else 0.0)
        for i, (a, b) in enumerate(zip(pts, pts[1:]))
    ]
    return TrackEnvelope(enabled=True, points=pts, segments=segs)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def live_context(clock: ManualClock) -> LiveContext:
    return LiveContext(sample_rate=SAMPLE_RATE, channels=1, clock=clock)


@pytest.fixture
def audio_source() -> InMemoryAudioSource:
    return InMemoryAudioSource().add("src", constant_buffer(2.0))


@pytest.fixture
def track() -> Track:
    return Track("t1", clips=[make_clip()], volume=100.0)
