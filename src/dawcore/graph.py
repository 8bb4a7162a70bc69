"""Deterministic audio graph: automation params, gain stages, buffer sources.

Commands are explicit: every ``set_*``/``*_ramp_*`` call records an event on
an ``AudioParam``, and ``cancel_scheduled_values`` is the only way to take
events back. Invalid curve commands raise ``SchedulingError`` instead of
being silently dropped.
"""

from __future__ import annotations

import bisect
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol, Self

import numpy as np

log = logging.getLogger(__name__)


class SchedulingError(RuntimeError):
    """An automation command overlaps another or has no duration."""


# --- Buffers and decoded audio ---


@dataclass
class AudioBuffer:
    """PCM samples shaped ``(channels, frames)``."""

    sample_rate: int
    data: np.ndarray

    def __post_init__(self) -> None:
        data = np.asarray(self.data)
        if data.ndim == 1:
            data = data[np.newaxis, :]
        self.data = data

    @classmethod
    def silence(cls, channels: int, frames: int, sample_rate: int) -> Self:
        return cls(sample_rate, np.zeros((channels, frames), dtype=np.float32))

    @property
    def channels(self) -> int:
        return self.data.shape[0]

    @property
    def frames(self) -> int:
        return self.data.shape[1]

    @property
    def duration(self) -> float:
        """Length in seconds."""
        return self.frames / self.sample_rate

    @property
    def duration_ms(self) -> float:
        return self.duration * 1000.0


class AudioSource(Protocol):
    def get_buffer(self, source_id: str) -> AudioBuffer | None: ...


@dataclass
class InMemoryAudioSource:
    buffers: dict[str, AudioBuffer] = field(default_factory=dict)

    def add(self, source_id: str, buffer: AudioBuffer) -> Self:
        self.buffers[source_id] = buffer
        return self

    def get_buffer(self, source_id: str) -> AudioBuffer | None:
        return self.buffers.get(source_id)


# --- Automation events ---


@dataclass(frozen=True)
class SetValue:
    time: float
    value: float

    @property
    def end(self) -> float:
        return self.time


@dataclass(frozen=True)
class LinearRamp:
    """Ramp ending at ``time``; it starts where the previous event ends."""

    time: float
    value: float

    @property
    def end(self) -> float:
        return self.time


@dataclass(frozen=True)
class ValueCurve:
    time: float
    duration: float
    values: np.ndarray = field(compare=False)
    hold_from: float | None = None

    @property
    def end(self) -> float:
        full = self.time + self.duration
        return full if self.hold_from is None else min(full, self.hold_from)

    def sample(self, t: np.ndarray) -> np.ndarray:
        """Interpolated curve value at times *t* within ``[time, end]``."""
        t = np.minimum(t, self.end)
        pos = (t - self.time) / self.duration * (len(self.values) - 1)
        return np.interp(pos, np.arange(len(self.values)), self.values)


AutomationEvent = SetValue | LinearRamp | ValueCurve


@dataclass
class AudioParam:
    default_value: float = 1.0
    _events: list[AutomationEvent] = field(default_factory=list, init=False, repr=False)

    @property
    def events(self) -> tuple[AutomationEvent, ...]:
        return tuple(self._events)

    def _curves(self) -> list[ValueCurve]:
        return [e for e in self._events if isinstance(e, ValueCurve)]

    def _check_outside_curves(self, t: float, what: str) -> None:
        for c in self._curves():
            if c.time <= t < c.end:
                raise SchedulingError(
                    f"{what} at {t:.6f}s falls inside a value curve [{c.time:.6f}, {c.end:.6f})"
                )

    def _insert(self, event: AutomationEvent) -> None:
        bisect.insort_right(self._events, event, key=lambda e: e.time)

    def set_value_at_time(self, value: float, t: float) -> Self:
        self._check_outside_curves(t, "setValue")
        self._insert(SetValue(t, float(value)))
        return self

    def linear_ramp_to_value_at_time(self, value: float, t: float) -> Self:
        self._check_outside_curves(t, "linearRamp")
        self._insert(LinearRamp(t, float(value)))
        return self

    def set_value_curve_at_time(self, values, start: float, duration: float) -> Self:
        values = np.asarray(values, dtype=np.float64)
        if not duration > 0:
            raise SchedulingError(f"Value curve needs a positive duration, got {duration!r}")
        if len(values) < 2:
            raise SchedulingError("Value curve needs at least two values")
        end = start + duration
        for e in self._events:
            if isinstance(e, ValueCurve):
                if e.time < end and start < e.end:
                    raise SchedulingError(
                        f"Value curve [{start:.6f}, {end:.6f}) overlaps [{e.time:.6f}, {e.end:.6f})"
                    )
            elif start <= e.time < end:
                raise SchedulingError(
                    f"Value curve [{start:.6f}, {end:.6f}) contains an event at {e.time:.6f}"
                )
        self._insert(ValueCurve(start, duration, values))
        return self

    def _start_of(self, index: int) -> float:
        """Time from which event *index* starts affecting the value."""
        event = self._events[index]
        if isinstance(event, LinearRamp):
            return self._events[index - 1].end if index > 0 else 0.0
        return event.time

    def cancel_scheduled_values(self, t: float) -> Self:
        """Drop every event that starts at or after *t*.

        A curve or ramp already running at *t* is cut there and holds the
        value it had reached. Calling this again with the same *t* is a no-op.
        """
        self._events = [e for i, e in enumerate(self._events) if self._start_of(i) < t]
        held = self.value_at(t)
        kept: list[AutomationEvent] = []
        for event in self._events:
            if isinstance(event, ValueCurve) and event.end > t:
                kept.append(ValueCurve(event.time, event.duration, event.values, t))
            elif isinstance(event, LinearRamp) and event.time > t:
                kept.append(LinearRamp(t, held))
            else:
                kept.append(event)
        self._events = kept
        return self

    def values_at(self, times: np.ndarray) -> np.ndarray:
        times = np.asarray(times, dtype=np.float64)
        out = np.full(times.shape, self.default_value, dtype=np.float64)
        prev_end, prev_value = 0.0, self.default_value
        for event in self._events:
            if isinstance(event, SetValue):
                out[times >= event.time] = event.value
            elif isinstance(event, LinearRamp):
                span = event.time - prev_end
                ramp = (times >= prev_end) & (times < event.time)
                if span > 0:
                    frac = (times[ramp] - prev_end) / span
                    out[ramp] = prev_value + (event.value - prev_value) * frac
                out[times >= event.time] = event.value
            else:
                active = times >= event.time
                out[active] = event.sample(times[active])
            prev_end = event.end
            prev_value = self._final_value(event)
        return out

    def value_at(self, t: float) -> float:
        return float(self.values_at(np.array([t]))[0])

    @staticmethod
    def _final_value(event: AutomationEvent) -> float:
        if isinstance(event, ValueCurve):
            return float(event.sample(np.array([event.end]))[0])
        return event.value


# --- Nodes ---


class Destination:
    pass


@dataclass(eq=False)
class GainNode:
    gain: AudioParam = field(default_factory=AudioParam)
    output: GainNode | Destination | None = field(default=None, repr=False)

    def connect(self, node: GainNode | Destination) -> GainNode | Destination:
        self.output = node
        return node

    def disconnect(self) -> None:
        self.output = None


@dataclass(eq=False)
class BufferSource:
    buffer: AudioBuffer
    output: GainNode | Destination | None = field(default=None, repr=False)
    start_time: float | None = None
    offset: float = 0.0
    duration: float | None = None
    stop_time: float | None = None

    def connect(self, node: GainNode | Destination) -> GainNode | Destination:
        self.output = node
        return node

    def disconnect(self) -> None:
        self.output = None

    def start(self, when: float, offset: float = 0.0, duration: float | None = None) -> None:
        if self.start_time is not None:
            raise SchedulingError("BufferSource can only be started once")
        self.start_time = when
        self.offset = max(0.0, offset)
        self.duration = duration

    def stop(self, when: float) -> None:
        """Stop at *when*. Repeated calls keep the earliest stop time."""
        if self.stop_time is None or when < self.stop_time:
            self.stop_time = when

    @property
    def end_time(self) -> float:
        if self.start_time is None:
            return float("-inf")
        play = self.buffer.duration - self.offset
        if self.duration is not None:
            play = min(play, self.duration)
        end = self.start_time + max(0.0, play)
        if self.stop_time is not None:
            end = min(end, self.stop_time)
        return end


# --- Contexts ---


@dataclass
class BaseContext:
    sample_rate: int = 48_000
    channels: int = 2
    destination: Destination = field(default_factory=Destination, init=False, repr=False)
    sources: list[BufferSource] = field(default_factory=list, init=False, repr=False)
    lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)

    @property
    def current_time(self) -> float:
        return 0.0

    def create_gain(self, value: float = 1.0) -> GainNode:
        return GainNode(AudioParam(value))

    def create_buffer_source(self, buffer: AudioBuffer) -> BufferSource:
        source = BufferSource(buffer)
        with self.lock:
            self.sources.append(source)
        return source

    def _map_channels(self, data: np.ndarray) -> np.ndarray:
        have = data.shape[0]
        if have == self.channels:
            return data
        if have == 1:
            return np.repeat(data, self.channels, axis=0)
        if self.channels == 1:
            return data.mean(axis=0, keepdims=True)
        out = np.zeros((self.channels, data.shape[1]), dtype=data.dtype)
        n = min(have, self.channels)
        out[:n] = data[:n]
        return out

    def _chain(self, source: BufferSource) -> list[GainNode] | None:
        """Gain stages between *source* and the destination, or None if unrouted."""
        chain = []
        node = source.output
        while isinstance(node, GainNode):
            chain.append(node)
            node = node.output
        return chain if node is self.destination else None

    def _render_source(self, source: BufferSource, times: np.ndarray) -> np.ndarray | None:
        if source.buffer.frames == 0:
            return None
        begin, end = source.start_time, source.end_time
        active = (times >= begin) & (times < end)
        if not active.any():
            return None
        buffer = source.buffer
        pos = (source.offset + (times[active] - begin)) * buffer.sample_rate
        # Rounding can land the final frame a hair past the last index; hold it.
        last = buffer.frames - 1
        pos = np.where((pos > last) & (pos < last + 0.5), last, pos)
        index = np.arange(buffer.frames)
        block = np.zeros((buffer.channels, len(times)), dtype=np.float64)
        for ch in range(buffer.channels):
            block[ch, active] = np.interp(pos, index, buffer.data[ch], left=0.0, right=0.0)
        return self._map_channels(block)

    def mix(self, start_time: float, frames: int) -> np.ndarray:
        """Sum every routed source over *frames* samples from *start_time* (seconds)."""
        out = np.zeros((self.channels, frames), dtype=np.float64)
        if frames <= 0:
            return out
        times = start_time + np.arange(frames, dtype=np.float64) / self.sample_rate
        with self.lock:
            for source in self.sources:
                if source.start_time is None:
                    continue
                chain = self._chain(source)
                if chain is None:
                    continue
                signal = self._render_source(source, times)
                if signal is None:
                    continue
                for node in chain:
                    signal = signal * node.gain.values_at(times)
                out += signal
        return out


@dataclass
class OfflineContext(BaseContext):
    """Renders a fixed number of frames from time zero, faster than real time."""

    length: int = 0

    def start_rendering(self) -> AudioBuffer:
        data = self.mix(0.0, self.length).astype(np.float32)
        return AudioBuffer(self.sample_rate, data)


@dataclass
class LiveContext(BaseContext):
    """Context driven by a real-time output.

    ``current_time`` comes from *clock* so tests can drive it by hand. The
    output device reads mixed blocks through ``pull``.
    """

    clock: Callable[[], float] = time.monotonic
    _origin: float = field(default=0.0, init=False, repr=False)
    _rendered_until: float = field(default=0.0, init=False, repr=False)

    def __post_init__(self) -> None:
        self._origin = self.clock()

    @property
    def current_time(self) -> float:
        return self.clock() - self._origin

    def pull(self, frames: int) -> np.ndarray:
        with self.lock:
            block = self.mix(self._rendered_until, frames)
            self._rendered_until += frames / self.sample_rate
        return block.astype(np.float32)

    def prune(self, before: float) -> int:
        """Forget sources that finished before *before*; returns how many went."""
        with self.lock:
            kept = [s for s in self.sources if s.start_time is None or s.end_time > before]
            dropped = len(self.sources) - len(kept)
            self.sources = kept
        if dropped:
            log.debug("Pruned %d finished sources", dropped)
        return dropped
