"""Musical timebase and grid generation for the timeline."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Literal

from .scale import _round_half_up

GridMode = Literal["time", "bars"]
Resolution = Literal["1/1", "1/2", "1/4", "1/8", "1/16"]
SnapGranularity = Literal["coarse", "medium", "fine", "custom"]

PPQ = 960
DEFAULT_TEMPO_BPM = 120.0
RESOLUTIONS: tuple[str, ...] = ("1/1", "1/2", "1/4", "1/8", "1/16")

TIME_STEP_CANDIDATES_MS = (100, 200, 500, 1000, 2000, 5000, 10000, 15000, 30000, 60000)
MIN_MAJOR_SPACING_PX = 80.0
MIN_LABEL_SPACING_PX = 28.0

# Density gates for bars-mode grid lines
BEAT_MIN_PX = 14.0
PRIMARY_BEAT_MIN_PX = 8.0
SUB_MIN_PX = 12.0

SWING_OFFSET = 2 / 3 - 1 / 2


@dataclass(frozen=True)
class TimeSignature:
    num: int = 4
    den: int = 4

    @property
    def is_compound(self) -> bool:
        return self.den == 8 and self.num % 3 == 0


@dataclass
class MusicalMetadata:
    tempo_bpm: float = 120.0
    time_signature: TimeSignature = field(default_factory=TimeSignature)


@dataclass
class GridSettings:
    mode: GridMode = "time"
    resolution: Resolution = "1/16"
    triplet: bool = False
    swing: float = 0.0  # 0-100


@dataclass
class TimelineSettings:
    zoom: float = 1.0
    snap_to_grid: bool = True
    snap_granularity: SnapGranularity = "medium"
    custom_snap_interval_ms: float | None = None


@dataclass(frozen=True)
class Measure:
    ms: float
    bar: int


@dataclass(frozen=True)
class Beat:
    ms: float
    primary: bool


@dataclass
class GridLines:
    measures: list[Measure] = field(default_factory=list)
    beats: list[Beat] = field(default_factory=list)
    subs: list[float] = field(default_factory=list)


@dataclass(frozen=True)
class TimeMarker:
    ms: float
    label: str


@dataclass
class TimeGrid:
    majors: list[TimeMarker] = field(default_factory=list)
    minors: list[float] = field(default_factory=list)


# --- Pure conversions ---


def _safe_bpm(bpm: float) -> float:
    return bpm if math.isfinite(bpm) and bpm > 0 else DEFAULT_TEMPO_BPM


def _safe_signature(signature: TimeSignature) -> TimeSignature:
    """*signature*, or 4/4 when either part is not positive."""
    if signature.num > 0 and signature.den > 0:
        return signature
    return TimeSignature()


def ms_per_beat(bpm: float, signature: TimeSignature | None = None) -> float:
    """Length of one notated beat. With den=8 a beat is an eighth note.

    A non-positive tempo or meter falls back to 120 bpm in 4/4.
    """
    den_scale = 4 / _safe_signature(signature).den if signature else 1.0
    return 60_000.0 / _safe_bpm(bpm) * den_scale


def ms_to_beats(ms: float, bpm: float, signature: TimeSignature | None = None) -> float:
    return ms / ms_per_beat(bpm, signature)


def beats_to_ms(beats: float, bpm: float, signature: TimeSignature | None = None) -> float:
    return beats * ms_per_beat(bpm, signature)


def ms_to_bars_beats(ms: float, bpm: float, signature: TimeSignature) -> tuple[int, int, int]:
    """Return 1-based ``(bar, beat, tick)`` for *ms*."""
    signature = _safe_signature(signature)
    beats = ms_to_beats(ms if math.isfinite(ms) else 0.0, bpm, signature)
    bar = math.floor(beats / signature.num)
    beat = math.floor(beats % signature.num)
    tick = math.floor((beats - math.floor(beats)) * PPQ)
    return bar + 1, beat + 1, tick


def bars_beats_to_ms(bar: int, beat: int, bpm: float, signature: TimeSignature, tick: int = 0) -> float:
    signature = _safe_signature(signature)
    total_beats = (bar - 1) * signature.num + (beat - 1) + tick / PPQ
    return beats_to_ms(total_beats, bpm, signature)


def format_bars_beats_ticks(ms: float, bpm: float, signature: TimeSignature) -> str:
    bar, beat, tick = ms_to_bars_beats(ms, bpm, signature)
    return f"{bar}.{beat}.{tick:03d}"


def division_beats(resolution: str, signature: TimeSignature) -> float:
    if resolution not in RESOLUTIONS:
        raise ValueError(f"Unknown grid resolution: {resolution!r}")
    denom = int(resolution.split("/")[1])
    return _safe_signature(signature).num / denom


def subdivision_ms(bpm: float, signature: TimeSignature, resolution: str, triplet: bool) -> float:
    beats = division_beats(resolution, signature)
    if triplet:
        beats /= 3
    return beats * ms_per_beat(bpm, signature)


# --- Time-mode grid ---


def choose_time_steps(px_per_ms: float) -> tuple[float, float, str]:
    """Pick ``(major_ms, minor_ms, label_format)`` so majors sit >= 80px apart."""
    major = TIME_STEP_CANDIDATES_MS[-1]
    for step in TIME_STEP_CANDIDATES_MS:
        if step * px_per_ms >= MIN_MAJOR_SPACING_PX:
            major = step
            break
    minor = max(50, _round_half_up(major / 5 / 10) * 10)
    label_format = "mm:ss" if major >= 1000 else "ss.ms"
    return float(major), float(minor), label_format


def format_time_ms(ms: float, label_format: str) -> str:
    if label_format == "mm:ss":
        total_seconds = math.floor(ms / 1000)
        return f"{total_seconds // 60}:{total_seconds % 60:02d}"
    seconds = math.floor(ms / 1000)
    tenths = math.floor((ms % 1000) / 100)
    return f"{seconds}.{tenths}"


def generate_time_grid(view_start_ms: float, view_end_ms: float, px_per_ms: float) -> TimeGrid:
    if px_per_ms <= 0 or view_end_ms <= view_start_ms:
        return TimeGrid()

    major_ms, minor_ms, label_format = choose_time_steps(px_per_ms)
    grid = TimeGrid()

    first = math.floor(view_start_ms / major_ms)
    k = first
    while k * major_ms <= view_end_ms:
        ms = k * major_ms
        if ms >= view_start_ms:
            grid.majors.append(TimeMarker(ms, format_time_ms(ms, label_format)))
        k += 1

    k = math.floor(first * major_ms / minor_ms)
    while k * minor_ms <= view_end_ms:
        ms = k * minor_ms
        k += 1
        if ms % major_ms == 0 or ms < view_start_ms:
            continue
        grid.minors.append(ms)

    return grid


def place_labels(
    markers: list[TimeMarker],
    px_per_ms: float,
    min_spacing_px: float = MIN_LABEL_SPACING_PX,
) -> list[TimeMarker]:
    """Drop labels that would overlap the previously placed one.

    Independent of line emission: every marker still gets its grid line.
    """
    placed = []
    last_x = -math.inf
    for marker in markers:
        x = _round_half_up(marker.ms * px_per_ms)
        if x - last_x >= min_spacing_px:
            placed.append(marker)
            last_x = x
    return placed


# --- Timebase ---


@dataclass
class Timebase:
    """Grid and snapping for the current tempo, meter and grid mode."""

    music: MusicalMetadata = field(default_factory=MusicalMetadata)
    grid: GridSettings = field(default_factory=GridSettings)
    timeline: TimelineSettings = field(default_factory=TimelineSettings)

    @property
    def signature(self) -> TimeSignature:
        return _safe_signature(self.music.time_signature)

    @property
    def ms_per_beat(self) -> float:
        return ms_per_beat(self.music.tempo_bpm, self.music.time_signature)

    @property
    def ms_per_bar(self) -> float:
        return self.signature.num * self.ms_per_beat

    @property
    def division_beats(self) -> float:
        return division_beats(self.grid.resolution, self.music.time_signature)

    @property
    def subdivision_beats(self) -> float:
        beats = self.division_beats
        return beats / 3 if self.grid.triplet else beats

    @property
    def step_ms(self) -> float:
        if self.grid.mode == "time":
            return 100.0
        return self.subdivision_beats * self.ms_per_beat

    def _swing_bias_beats(self, index: int) -> float:
        if self.grid.swing <= 0 or self.grid.triplet or index % 2 == 0:
            return 0.0
        return self.grid.swing / 100 * SWING_OFFSET * self.subdivision_beats

    def grid_in_view(self, view_start_ms: float, view_end_ms: float, px_per_ms: float) -> GridLines:
        lines = GridLines()
        if self.grid.mode == "time" or px_per_ms <= 0 or view_end_ms < view_start_ms:
            return lines
        if not (math.isfinite(view_start_ms) and math.isfinite(view_end_ms) and math.isfinite(px_per_ms)):
            return lines

        sig = self.signature
        beat_ms = self.ms_per_beat
        bar_ms = self.ms_per_bar
        group = 3 if sig.is_compound else 1
        sub_beats = self.subdivision_beats
        divisions_per_bar = sig.num / sub_beats

        # Density gates decide up front which line kinds are worth building
        px_per_beat = px_per_ms * beat_ms
        show_beats = px_per_beat >= PRIMARY_BEAT_MIN_PX
        primary_only = px_per_beat < BEAT_MIN_PX
        show_subs = px_per_ms * sub_beats * beat_ms >= SUB_MIN_PX

        for bar_index in range(math.floor(view_start_ms / bar_ms), math.ceil(view_end_ms / bar_ms) + 1):
            bar_start = bar_index * bar_ms
            if view_start_ms <= bar_start <= view_end_ms:
                lines.measures.append(Measure(bar_start, bar_index + 1))

            if show_beats:
                for k in range(1, sig.num):
                    primary = k % group == 0
                    if primary_only and not primary:
                        continue
                    beat_at = bar_start + k * beat_ms
                    if view_start_ms <= beat_at <= view_end_ms:
                        lines.beats.append(Beat(beat_at, primary))

            if show_subs:
                i = 1
                while i < divisions_per_bar:
                    sub_at = bar_start + (i * sub_beats + self._swing_bias_beats(i)) * beat_ms
                    if view_start_ms <= sub_at <= view_end_ms:
                        lines.subs.append(sub_at)
                    i += 1

        return lines

    def time_grid(self, view_start_ms: float, view_end_ms: float, px_per_ms: float) -> TimeGrid:
        if self.grid.mode != "time":
            return TimeGrid()
        return generate_time_grid(view_start_ms, view_end_ms, px_per_ms)

    def snap_interval_ms(
        self,
        granularity: SnapGranularity | None = None,
        custom_interval_ms: float | None = None,
    ) -> float:
        granularity = granularity or self.timeline.snap_granularity
        if custom_interval_ms is None:
            custom_interval_ms = self.timeline.custom_snap_interval_ms

        if granularity == "custom" and custom_interval_ms is not None:
            return custom_interval_ms

        if self.grid.mode == "time":
            return {"coarse": 1000.0, "fine": 100.0}.get(granularity, 500.0)

        beat_ms = self.ms_per_beat
        if granularity == "coarse":
            return max(self.division_beats * beat_ms, beat_ms)
        if granularity == "fine":
            return max(self.subdivision_beats / 4 * beat_ms, 50.0)
        return self.subdivision_beats * beat_ms

    def snap(self, ms: float) -> float:
        if self.grid.mode == "time":
            interval = self.snap_interval_ms()
            if interval <= 0:
                return max(0.0, ms)
            return max(0.0, _round_half_up(ms / interval) * interval)

        sub_beats = self.subdivision_beats
        beat_pos = ms_to_beats(ms, self.music.tempo_bpm, self.music.time_signature)
        index = int(_round_half_up(beat_pos / sub_beats))
        snapped = index * sub_beats + self._swing_bias_beats(index)
        return max(0.0, beats_to_ms(snapped, self.music.tempo_bpm, self.music.time_signature))

    def format(self, ms: float) -> str:
        if self.grid.mode == "time":
            return f"{ms:.0f} ms"
        return format_bars_beats_ticks(ms, self.music.tempo_bpm, self.music.time_signature)
