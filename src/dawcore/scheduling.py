"""Scheduling primitives shared by live playback and offline render."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np

from .curves import interpolate, sample_curve
from .envelope import TrackEnvelope, evaluate_envelope_gain_at
from .graph import AudioBuffer, AudioParam, BaseContext, BufferSource, GainNode
from .looping import clip_cycles
from .model import Clip

log = logging.getLogger(__name__)

# Look back this far when cancelling so curves that started moments ago go too.
AUTOMATION_CANCEL_LOOKAHEAD_SEC = 0.01
# Gap kept between consecutive curve commands on one param.
AUTOMATION_SCHEDULING_EPSILON_SEC = 0.001
MIN_AUTOMATION_SEGMENT_DURATION_SEC = 0.001
AUTOMATION_CURVE_STEPS_PER_SEC = 60


@dataclass(frozen=True)
class TimeMap:
    """Maps timeline milliseconds onto context seconds."""

    origin_ms: float
    context_origin_sec: float = 0.0

    def to_context(self, ms: float) -> float:
        return self.context_origin_sec + (ms - self.origin_ms) / 1000.0

    def to_timeline(self, sec: float) -> float:
        return self.origin_ms + (sec - self.context_origin_sec) * 1000.0


@dataclass(frozen=True)
class CurveCommand:
    start_ms: float
    end_ms: float
    values: np.ndarray

    @property
    def duration_sec(self) -> float:
        return (self.end_ms - self.start_ms) / 1000.0


def curve_steps(duration_sec: float) -> int:
    return max(2, math.ceil(duration_sec * AUTOMATION_CURVE_STEPS_PER_SEC))


def plan_ramp(
    v0: float,
    v1: float,
    start_ms: float,
    end_ms: float,
    curve: float,
    from_ms: float,
    to_ms: float,
    scale: float = 1.0,
) -> CurveCommand | None:
    """The part of a shaped ramp from *v0* to *v1* inside ``[from_ms, to_ms]``."""
    span = end_ms - start_ms
    lo, hi = max(start_ms, from_ms), min(end_ms, to_ms)
    if span <= 0 or hi <= lo:
        return None
    t0 = (lo - start_ms) / span
    t1 = (hi - start_ms) / span
    values = sample_curve(v0, v1, curve, curve_steps((hi - lo) / 1000.0), t0, t1) * scale
    return CurveCommand(lo, hi, values)


def plan_envelope_segments(
    envelope: TrackEnvelope | None,
    from_ms: float,
    to_ms: float = math.inf,
    base_gain: float = 1.0,
) -> list[CurveCommand]:
    if envelope is None or not envelope.enabled or not envelope.points:
        return []
    ordered = envelope.sorted_points()
    commands = []
    for a, b in zip(ordered, ordered[1:]):
        cmd = plan_ramp(
            a.value, b.value, a.time, b.time,
            envelope.curve_between(a.id, b.id),
            from_ms, to_ms, base_gain,
        )
        if cmd is not None:
            commands.append(cmd)
    return commands


def write_curves(
    param: AudioParam,
    commands: list[CurveCommand],
    time_map: TimeMap,
    not_before: float,
) -> float:
    """Issue *commands* as value curves, never overlapping and never too short.

    Each curve starts at least one epsilon after the previous one ended (or
    after *not_before*). Curves left shorter than the minimum are dropped.
    Returns the context time the last curve ends.
    """
    last_end = not_before
    for cmd in commands:
        start = time_map.to_context(cmd.start_ms)
        duration = cmd.duration_sec
        if duration < MIN_AUTOMATION_SEGMENT_DURATION_SEC:
            log.debug("Dropping %.6fs automation segment at %.3fms", duration, cmd.start_ms)
            continue
        adjusted = max(start, last_end + AUTOMATION_SCHEDULING_EPSILON_SEC)
        remaining = duration - (adjusted - start)
        if remaining < MIN_AUTOMATION_SEGMENT_DURATION_SEC:
            log.debug("Dropping automation segment at %.3fms squeezed to %.6fs", cmd.start_ms, remaining)
            continue
        param.set_value_curve_at_time(cmd.values, adjusted, remaining)
        last_end = adjusted + remaining
    return last_end


def _cancel_and_anchor(param: AudioParam, value: float, now: float) -> None:
    param.cancel_scheduled_values(max(0.0, now - AUTOMATION_CANCEL_LOOKAHEAD_SEC))
    param.set_value_at_time(value, now)


def schedule_track_envelope(
    param: AudioParam,
    envelope: TrackEnvelope | None,
    from_ms: float,
    to_ms: float,
    base_gain: float,
    time_map: TimeMap,
    now: float,
) -> float:
    """Replace the automation on *param* with *envelope* from *from_ms* on.

    *from_ms* is the timeline position at context time *now*.
    """
    anchor = base_gain * evaluate_envelope_gain_at(envelope, from_ms)
    _cancel_and_anchor(param, anchor, now)
    commands = plan_envelope_segments(envelope, from_ms, to_ms, base_gain)
    return write_curves(param, commands, time_map, now)


# --- Clip fades ---


def fade_windows(clip: Clip) -> tuple[float, float, float | None]:
    """Effective ``(fade_in, fade_out, fade_out_end)`` in ms.

    Fades apply once over the whole clip including its loop repetitions:
    the fade-in at the clip start, the fade-out ending at the final end.
    An open loop has no final end and gets no fade-out. Fades longer than
    the span are shrunk proportionally.
    """
    until = clip.loop_until
    fade_end = until if math.isfinite(until) else None
    fade_in = max(0.0, clip.fade_in)
    fade_out = max(0.0, clip.fade_out) if fade_end is not None else 0.0
    if fade_end is not None:
        span = fade_end - clip.start_time
        total = fade_in + fade_out
        if total > span > 0:
            fade_in *= span / total
            fade_out *= span / total
    return fade_in, fade_out, fade_end


def clip_fade_gain_at(clip: Clip, t: float) -> float:
    fade_in, fade_out, fade_end = fade_windows(clip)
    gain = 1.0
    if fade_in > 0:
        if t < clip.start_time:
            return 0.0
        if t < clip.start_time + fade_in:
            gain *= interpolate(0.0, 1.0, (t - clip.start_time) / fade_in, clip.fade_in_curve)
    if fade_out > 0 and fade_end is not None:
        if t >= fade_end:
            return 0.0
        if t > fade_end - fade_out:
            gain *= interpolate(1.0, 0.0, (t - (fade_end - fade_out)) / fade_out, clip.fade_out_curve)
    return gain


def schedule_clip_fades(
    param: AudioParam,
    clip: Clip,
    from_ms: float,
    time_map: TimeMap,
    now: float,
) -> float:
    fade_in, fade_out, fade_end = fade_windows(clip)
    _cancel_and_anchor(param, clip_fade_gain_at(clip, from_ms), now)
    commands = []
    if fade_in > 0:
        cmd = plan_ramp(0.0, 1.0, clip.start_time, clip.start_time + fade_in, clip.fade_in_curve, from_ms, math.inf)
        if cmd is not None:
            commands.append(cmd)
    if fade_out > 0 and fade_end is not None:
        cmd = plan_ramp(1.0, 0.0, fade_end - fade_out, fade_end, clip.fade_out_curve, from_ms, math.inf)
        if cmd is not None:
            commands.append(cmd)
    return write_curves(param, commands, time_map, now)


# --- Clip sources ---


def schedule_clip_cycles(
    context: BaseContext,
    clip: Clip,
    output: GainNode,
    buffer: AudioBuffer,
    from_ms: float,
    to_ms: float,
    time_map: TimeMap,
    first_index: int = 0,
) -> tuple[list[BufferSource], int]:
    """Start one source per loop cycle beginning before *to_ms*.

    Cycles run whole except the first, which joins at *from_ms* when
    playback starts mid-cycle. Cycles below *first_index* are already armed
    and are skipped. Returns the sources and the next index to arm.
    """
    sources = []
    next_index = first_index
    for cycle in clip_cycles(clip, from_ms, to_ms):
        if cycle.index < first_index:
            continue
        play_from = max(cycle.start_ms, from_ms)
        length_sec = (cycle.end_ms - play_from) / 1000.0
        offset_sec = (clip.trim_start + play_from - cycle.start_ms) / 1000.0
        next_index = cycle.index + 1
        if length_sec <= 0 or offset_sec >= buffer.duration:
            continue
        source = context.create_buffer_source(buffer)
        source.connect(output)
        source.start(time_map.to_context(play_from), offset_sec, length_sec)
        sources.append(source)
    return sources, next_index
