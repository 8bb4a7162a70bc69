"""Project data: clips, tracks, markers and playback position."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from .envelope import TrackEnvelope
from .timebase import MusicalMetadata


@dataclass
class Clip:
    """A trimmed window of a decoded source placed on a track.

    Times are milliseconds. ``trim_start``/``trim_end`` address the source;
    ``start_time`` places the audible window on the timeline.
    """

    id: str
    start_time: float = 0.0
    trim_start: float = 0.0
    trim_end: float = 0.0
    fade_in: float = 0.0
    fade_out: float = 0.0
    loop: bool = False
    loop_end: float | None = None
    source_id: str | None = None
    name: str = ""
    fade_in_curve: float = 0.0
    fade_out_curve: float = 0.0

    @property
    def duration(self) -> float:
        return max(0.0, self.trim_end - self.trim_start)

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

    @property
    def loop_until(self) -> float:
        """Timeline ms at which the clip falls silent; ``inf`` for an open loop."""
        if not self.loop or self.duration <= 0:
            return self.end_time
        if self.loop_end is None:
            return math.inf
        return max(self.loop_end, self.end_time)

    def overlaps(self, from_ms: float, to_ms: float = math.inf) -> bool:
        return self.start_time < to_ms and self.loop_until > from_ms


@dataclass
class Track:
    id: str
    clips: list[Clip] = field(default_factory=list)
    volume: float = 75.0
    muted: bool = False
    soloed: bool = False
    volume_envelope: TrackEnvelope | None = None
    name: str = ""

    def is_audible(self, solo_engaged: bool) -> bool:
        if self.muted:
            return False
        return self.soloed or not solo_engaged

    def clip(self, clip_id: str) -> Clip:
        for c in self.clips:
            if c.id == clip_id:
                return c
        raise KeyError(clip_id)


@dataclass
class Marker:
    id: str
    time_ms: float
    duration_ms: float = 0.0
    name: str = ""
    color: str = ""


@dataclass
class PlaybackState:
    is_playing: bool = False
    current_time: float = 0.0


def solo_engaged(tracks: list[Track]) -> bool:
    return any(t.soloed for t in tracks)


def audible_tracks(tracks: list[Track]) -> list[Track]:
    engaged = solo_engaged(tracks)
    return [t for t in tracks if t.is_audible(engaged)]


def project_duration(tracks: list[Track]) -> float:
    """End of the last finite clip window. Open loops count to their first pass."""
    end = 0.0
    for track in tracks:
        for clip in track.clips:
            until = clip.loop_until
            end = max(end, until if math.isfinite(until) else clip.end_time)
    return end


@dataclass
class Project:
    tracks: list[Track] = field(default_factory=list)
    markers: list[Marker] = field(default_factory=list)
    music: MusicalMetadata = field(default_factory=MusicalMetadata)

    def track(self, track_id: str) -> Track:
        for t in self.tracks:
            if t.id == track_id:
                return t
        raise KeyError(track_id)

    @property
    def duration(self) -> float:
        return project_duration(self.tracks)
