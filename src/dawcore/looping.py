"""Default loop boundaries and loop tiling."""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Iterator

from .model import Clip


@dataclass(frozen=True)
class LoopingPolicy:
    short_clip_ms_threshold: float = 15_000.0
    min_repetitions_default: int = 1
    min_repetitions_for_short_clips: int = 4


DEFAULT_LOOPING_POLICY = LoopingPolicy()


def compute_loop_end_ms(clip: Clip, policy: LoopingPolicy = DEFAULT_LOOPING_POLICY) -> float:
    """Default loop end for *clip*.

    Short clips repeat several times so the loop is audible; longer clips
    get one extra pass. A clip with no audible duration loops nowhere and
    returns its own start.

    >>> compute_loop_end_ms(Clip("c", start_time=0, trim_end=20_000))
    40000.0
    >>> compute_loop_end_ms(Clip("c", start_time=0, trim_end=5_000))
    25000.0
    """
    duration = clip.duration
    if duration <= 0:
        return float(clip.start_time)
    if duration < policy.short_clip_ms_threshold:
        reps = policy.min_repetitions_for_short_clips
    else:
        reps = policy.min_repetitions_default
    return float(clip.start_time + duration * (reps + 1))


def enable_loop(clip: Clip, policy: LoopingPolicy = DEFAULT_LOOPING_POLICY) -> Clip:
    """Turn looping on, filling in the default loop end when none is set."""
    loop_end = clip.loop_end if clip.loop_end is not None else compute_loop_end_ms(clip, policy)
    return replace(clip, loop=True, loop_end=loop_end)


@dataclass(frozen=True)
class LoopCycle:
    """One repetition of a clip's audible window on the timeline."""

    index: int
    start_ms: float
    end_ms: float

    @property
    def duration_ms(self) -> float:
        return self.end_ms - self.start_ms


def clip_cycles(clip: Clip, from_ms: float, to_ms: float = math.inf) -> Iterator[LoopCycle]:
    """Yield the cycles of *clip* overlapping ``[from_ms, to_ms)``.

    The first overlapping index is computed directly, so a window far into an
    open loop costs the same as one at its start. A non-looping clip has a
    single cycle 0. The last cycle is cut at the loop end.
    """
    period = clip.duration
    if period <= 0 or to_ms <= from_ms:
        return
    until = clip.loop_until

    k = max(0, math.floor((from_ms - clip.start_time) / period))
    while True:
        start = clip.start_time + k * period
        if start >= until or start >= to_ms:
            return
        end = min(start + period, until)
        if end > from_ms:
            yield LoopCycle(k, start, end)
        k += 1
