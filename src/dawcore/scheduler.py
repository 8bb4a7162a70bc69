"""Real-time playback scheduling onto a live audio graph."""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from .envelope import TrackEnvelope
from .graph import AudioSource, BufferSource, GainNode, LiveContext
from .model import Clip, PlaybackState, Track, solo_engaged
from .scheduling import (
    TimeMap,
    schedule_clip_cycles,
    schedule_clip_fades,
    schedule_track_envelope,
)
from .volume import db_to_gain, volume_to_db

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlayheadHint:
    """Where to draw the playhead; emitted once per tick."""

    time_ms: float
    is_playing: bool


def describe_clip(clip: Clip) -> str:
    return (
        f"{clip.start_time}|{clip.trim_start}|{clip.trim_end}|{int(clip.loop)}|"
        f"{clip.loop_end if clip.loop_end is not None else -1}|{clip.fade_in}|{clip.fade_out}|"
        f"{clip.fade_in_curve}|{clip.fade_out_curve}|{clip.source_id}"
    )


def describe_envelope(envelope: TrackEnvelope | None) -> str:
    if envelope is None or not envelope.enabled or not envelope.points:
        return ""
    pts = ",".join(f"{p.time}:{p.value}" for p in envelope.points)
    segs = ",".join(f"{s.from_point_id}->{s.to_point_id}:{s.curve}" for s in envelope.segments)
    return f"{pts}#{segs}"


def describe_track(track: Track, audible: bool) -> str:
    clips = ";".join(f"{c.id}={describe_clip(c)}" for c in track.clips)
    return f"{int(audible)}|{track.volume}|{describe_envelope(track.volume_envelope)}|{clips}"


@dataclass
class _ClipState:
    clip: Clip
    gain: GainNode
    sources: list[BufferSource] = field(default_factory=list)
    next_cycle: int = 0


@dataclass
class _TrackState:
    envelope_gain: GainNode
    desc: str = ""
    clips: dict[str, _ClipState] = field(default_factory=dict)


@dataclass
class PlaybackScheduler:
    """Schedules clips and envelope automation for one playback session.

    *tracks* is called at every decision point, so edits made elsewhere are
    picked up by the next ``play``/``seek``/``synchronize``/``tick``. All
    public operations are serialized by one lock; a cancel followed by a
    reschedule is never observed half done.
    """

    context: LiveContext
    audio_source: AudioSource
    tracks: Callable[[], list[Track]]
    fps: float = 40.0
    loop_horizon_ms: float = 2000.0
    master_gain: float = 1.0
    autostart_loop: bool = True

    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)
    _thread: threading.Thread | None = field(default=None, init=False, repr=False)
    _stop_event: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _playback: PlaybackState = field(default_factory=PlaybackState, init=False, repr=False)
    _time_map: TimeMap = field(default_factory=lambda: TimeMap(0.0), init=False, repr=False)
    _master: GainNode | None = field(default=None, init=False, repr=False)
    _track_states: dict[str, _TrackState] = field(default_factory=dict, init=False, repr=False)
    _subscribers: list[Callable[[PlayheadHint], None]] = field(default_factory=list, init=False, repr=False)
    _paused: bool = field(default=False, init=False, repr=False)

    # --- state ---

    @property
    def state(self) -> str:
        """Current playback state: 'stopped', 'playing', or 'paused'."""
        if self._playback.is_playing:
            return "playing"
        if self._paused:
            return "paused"
        return "stopped"

    @property
    def playback(self) -> PlaybackState:
        with self._lock:
            return PlaybackState(self._playback.is_playing, self.current_time_ms)

    @property
    def current_time_ms(self) -> float:
        with self._lock:
            if self._playback.is_playing:
                return max(0.0, self._time_map.to_timeline(self.context.current_time))
            return self._playback.current_time

    def subscribe(self, callback: Callable[[PlayheadHint], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, hint: PlayheadHint) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(hint)

    # --- transport ---

    def play(self, from_ms: float | None = None) -> None:
        with self._lock:
            position = self.current_time_ms if from_ms is None else max(0.0, from_ms)
            if self._playback.is_playing:
                self._cancel_all()
            self._start(position)
            self._paused = False
            if self.autostart_loop:
                self._start_loop()
        self._emit(PlayheadHint(position, True))

    def pause(self) -> None:
        with self._lock:
            if not self._playback.is_playing:
                return
            position = self.current_time_ms
            self._cancel_all()
            self._playback = PlaybackState(False, position)
            self._paused = True
            thread = self._signal_loop_stop()
        self._join_loop(thread)
        self._emit(PlayheadHint(position, False))

    def stop(self, rewind: bool = False) -> None:
        """Stop playback. The position is kept unless *rewind* is set."""
        with self._lock:
            position = self.current_time_ms
            if self._playback.is_playing:
                self._cancel_all()
            if rewind:
                position = 0.0
            self._playback = PlaybackState(False, position)
            self._paused = False
            thread = self._signal_loop_stop()
        self._join_loop(thread)
        self._emit(PlayheadHint(position, False))

    def seek(self, to_ms: float) -> None:
        to_ms = max(0.0, to_ms)
        with self._lock:
            playing = self._playback.is_playing
            if playing:
                self._cancel_all()
                self._start(to_ms)
            else:
                self._playback = PlaybackState(False, to_ms)
        self._emit(PlayheadHint(to_ms, playing))

    def close(self) -> None:
        self.stop()
        with self._lock:
            self._subscribers.clear()

    # --- edits while playing ---

    def reschedule_track(self, track_id: str) -> None:
        """Rebuild one track's future schedule; other tracks keep playing untouched."""
        with self._lock, self.context.lock:
            tracks = self.tracks()
            track = next((t for t in tracks if t.id == track_id), None)
            if track is None:
                raise KeyError(track_id)
            if not self._playback.is_playing:
                return
            self._schedule_track(track, solo_engaged(tracks), self.current_time_ms, self.context.current_time)

    def synchronize(self) -> list[str]:
        """Reschedule every track whose clips, envelope or audibility changed.

        Returns the ids of the tracks that were rescheduled or dropped.
        """
        with self._lock, self.context.lock:
            if not self._playback.is_playing:
                return []
            tracks = self.tracks()
            engaged = solo_engaged(tracks)
            now_ms = self.current_time_ms
            now = self.context.current_time
            changed = []
            live_ids = {t.id for t in tracks}
            for track_id in [tid for tid in self._track_states if tid not in live_ids]:
                self._cancel_track(track_id, now)
                del self._track_states[track_id]
                changed.append(track_id)
            for track in tracks:
                state = self._track_states.get(track.id)
                if state is not None and state.desc == describe_track(track, track.is_audible(engaged)):
                    continue
                self._schedule_track(track, engaged, now_ms, now)
                changed.append(track.id)
            if changed:
                log.debug("Rescheduled tracks %s", changed)
            return changed

    def tick(self) -> PlayheadHint:
        """Advance the playhead, arm loop cycles entering the horizon, and emit a hint."""
        with self._lock, self.context.lock:
            playing = self._playback.is_playing
            now_ms = self.current_time_ms
            if playing:
                self._playback = PlaybackState(True, now_ms)
                self._arm_loops(now_ms)
                self.context.prune(self.context.current_time)
            hint = PlayheadHint(now_ms, playing)
        self._emit(hint)
        return hint

    # --- internals ---

    def _start(self, position: float) -> None:
        with self.context.lock:
            now = self.context.current_time
            self._time_map = TimeMap(position, now)
            self._playback = PlaybackState(True, position)
            self._master = self.context.create_gain(self.master_gain)
            self._master.connect(self.context.destination)
            self._track_states = {}
            tracks = self.tracks()
            engaged = solo_engaged(tracks)
            for track in tracks:
                self._schedule_track(track, engaged, position, now)

    def _schedule_track(self, track: Track, engaged: bool, now_ms: float, now: float) -> None:
        state = self._track_states.get(track.id)
        if state is None:
            gain = self.context.create_gain()
            gain.connect(self._master)
            state = self._track_states[track.id] = _TrackState(gain)
        else:
            self._stop_clips(state, now)

        audible = track.is_audible(engaged)
        state.desc = describe_track(track, audible)
        base_gain = db_to_gain(volume_to_db(track.volume)) if audible else 0.0
        schedule_track_envelope(
            state.envelope_gain.gain,
            track.volume_envelope,
            now_ms,
            math.inf,
            base_gain,
            self._time_map,
            now,
        )
        if not audible:
            return
        for clip in track.clips:
            self._start_clip(state, clip, now_ms, now)

    def _start_clip(self, state: _TrackState, clip: Clip, now_ms: float, now: float) -> None:
        if not clip.overlaps(now_ms):
            return
        buffer = self.audio_source.get_buffer(clip.source_id) if clip.source_id else None
        if buffer is None:
            log.warning("No decoded audio for clip %s (source %r), not scheduling", clip.id, clip.source_id)
            return
        gain = self.context.create_gain()
        gain.connect(state.envelope_gain)
        schedule_clip_fades(gain.gain, clip, now_ms, self._time_map, now)
        clip_state = _ClipState(clip, gain)
        horizon = now_ms + self.loop_horizon_ms if clip.loop else math.inf
        clip_state.sources, clip_state.next_cycle = schedule_clip_cycles(
            self.context, clip, gain, buffer, now_ms, horizon, self._time_map
        )
        state.clips[clip.id] = clip_state

    def _arm_loops(self, now_ms: float) -> None:
        horizon = now_ms + self.loop_horizon_ms
        for state in self._track_states.values():
            for clip_state in state.clips.values():
                clip = clip_state.clip
                if not clip.loop:
                    continue
                next_start = clip.start_time + clip_state.next_cycle * clip.duration
                if next_start >= clip.loop_until or next_start >= horizon:
                    continue
                buffer = self.audio_source.get_buffer(clip.source_id) if clip.source_id else None
                if buffer is None:
                    continue
                sources, clip_state.next_cycle = schedule_clip_cycles(
                    self.context,
                    clip,
                    clip_state.gain,
                    buffer,
                    max(now_ms, next_start),
                    horizon,
                    self._time_map,
                    first_index=clip_state.next_cycle,
                )
                clip_state.sources.extend(sources)
                log.debug("Armed %d loop cycles for clip %s", len(sources), clip.id)

    def _stop_clips(self, state: _TrackState, now: float) -> None:
        for clip_state in state.clips.values():
            for source in clip_state.sources:
                source.stop(now)
                source.disconnect()
            clip_state.gain.disconnect()
        state.clips.clear()

    def _cancel_track(self, track_id: str, now: float) -> None:
        state = self._track_states.get(track_id)
        if state is None:
            return
        self._stop_clips(state, now)
        state.envelope_gain.disconnect()

    def _cancel_all(self) -> None:
        with self.context.lock:
            now = self.context.current_time
            for track_id in list(self._track_states):
                self._cancel_track(track_id, now)
            self._track_states = {}
            if self._master is not None:
                self._master.disconnect()
                self._master = None
            self.context.prune(now)

    # --- background tick loop ---

    def _start_loop(self) -> None:
        if self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set():
            return
        # Each thread owns its stop event, so halting an old thread never stops a newer one
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._loop, args=(1.0 / self.fps, self._stop_event), daemon=True
        )
        self._thread.start()

    def _signal_loop_stop(self) -> threading.Thread | None:
        """Ask the running tick thread to exit. Call with the lock held."""
        self._stop_event.set()
        thread, self._thread = self._thread, None
        return thread

    def _join_loop(self, thread: threading.Thread | None) -> None:
        if thread is not None and thread is not threading.current_thread():
            thread.join()

    def _loop(self, frame_duration: float, stop_event: threading.Event) -> None:
        start = time.monotonic()
        frame_count = 0
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception:
                log.exception("Error in playback tick")
            frame_count += 1
            delay = max(0.0, start + frame_count * frame_duration - time.monotonic())
            if stop_event.wait(timeout=delay):
                break
