"""Tests for PlaybackScheduler."""

import threading
import time

import numpy as np
import pytest

from dawcore import InMemoryAudioSource, LiveContext, PlaybackScheduler, PlayheadHint, Track
from dawcore.graph import ValueCurve

from conftest import ManualClock, make_clip, make_envelope


def scheduler_for(ctx: LiveContext, source: InMemoryAudioSource, tracks: list[Track], **kwargs) -> PlaybackScheduler:
    kwargs.setdefault("autostart_loop", False)
    return PlaybackScheduler(ctx, source, lambda: tracks, **kwargs)


def live_sources(ctx: LiveContext) -> list:
    return [s for s in ctx.sources if s.output is not None and s.stop_time is None]


def assert_no_overlap(param) -> None:
    curves = sorted((e for e in param.events if isinstance(e, ValueCurve)), key=lambda c: c.time)
    for a, b in zip(curves, curves[1:]):
        assert a.end <= b.time


# --- transport ---


class TestTransport:
    def test_state_transitions(self, live_context, audio_source, track) -> None:
        sched = scheduler_for(live_context, audio_source, [track])
        assert sched.state == "stopped"
        sched.play()
        assert sched.state == "playing"
        sched.pause()
        assert sched.state == "paused"
        sched.stop()
        assert sched.state == "stopped"

    def test_play_starts_clip_sources(self, live_context, audio_source, track) -> None:
        sched = scheduler_for(live_context, audio_source, [track])
        sched.play()
        assert len(live_context.sources) == 1
        assert live_context.sources[0].start_time == 0.0

    def test_position_follows_clock(self, clock: ManualClock, live_context, audio_source, track) -> None:
        sched = scheduler_for(live_context, audio_source, [track])
        sched.play(from_ms=1000)
        clock.advance(0.25)
        assert sched.current_time_ms == pytest.approx(1250)
        assert sched.playback.is_playing

    def test_pause_keeps_position_and_resumes(self, clock: ManualClock, live_context, audio_source, track) -> None:
        sched = scheduler_for(live_context, audio_source, [track])
        sched.play()
        clock.advance(0.25)
        sched.pause()
        assert sched.playback.current_time == pytest.approx(250)
        assert live_context.sources == []

        clock.advance(5.0)
        assert sched.current_time_ms == pytest.approx(250)
        sched.play()
        src = live_context.sources[0]
        assert src.start_time == pytest.approx(5.25)
        assert src.offset == pytest.approx(0.25)

    def test_pause_when_stopped_is_noop(self, live_context, audio_source, track) -> None:
        sched = scheduler_for(live_context, audio_source, [track])
        sched.pause()
        assert sched.state == "stopped"

    def test_stop_keeps_or_rewinds(self, clock: ManualClock, live_context, audio_source, track) -> None:
        sched = scheduler_for(live_context, audio_source, [track])
        sched.play()
        clock.advance(0.4)
        sched.stop()
        assert sched.current_time_ms == pytest.approx(400)
        sched.stop(rewind=True)
        assert sched.current_time_ms == 0.0

    def test_seek_while_playing_restarts_sources(self, live_context, audio_source, track) -> None:
        sched = scheduler_for(live_context, audio_source, [track])
        sched.play()
        first = live_context.sources[0]
        sched.seek(600)
        assert first.stop_time == 0.0
        current = live_sources(live_context)
        assert len(current) == 1
        assert current[0].offset == pytest.approx(0.6)
        assert sched.current_time_ms == pytest.approx(600)

    def test_seek_while_stopped(self, live_context, audio_source, track) -> None:
        sched = scheduler_for(live_context, audio_source, [track])
        sched.seek(1234)
        assert sched.playback.current_time == 1234
        assert sched.state == "stopped"
        assert live_context.sources == []

    def test_seek_clamps_negative(self, live_context, audio_source, track) -> None:
        sched = scheduler_for(live_context, audio_source, [track])
        sched.seek(-50)
        assert sched.current_time_ms == 0.0

    def test_play_past_clip_schedules_nothing(self, live_context, audio_source, track) -> None:
        sched = scheduler_for(live_context, audio_source, [track])
        sched.play(from_ms=5000)
        assert live_context.sources == []


# --- playhead hints ---


class TestHints:
    def test_subscribe_and_unsubscribe(self, clock: ManualClock, live_context, audio_source, track) -> None:
        sched = scheduler_for(live_context, audio_source, [track])
        hints: list[PlayheadHint] = []
        unsubscribe = sched.subscribe(hints.append)
        sched.play()
        clock.advance(0.1)
        sched.tick()
        unsubscribe()
        sched.tick()
        assert hints[0] == PlayheadHint(0.0, True)
        assert hints[1].time_ms == pytest.approx(100)
        assert len(hints) == 2

    def test_tick_when_stopped(self, live_context, audio_source, track) -> None:
        sched = scheduler_for(live_context, audio_source, [track])
        sched.seek(300)
        assert sched.tick() == PlayheadHint(300, False)

    def test_close_drops_subscribers(self, live_context, audio_source, track) -> None:
        sched = scheduler_for(live_context, audio_source, [track])
        hints: list[PlayheadHint] = []
        sched.subscribe(hints.append)
        sched.play()
        sched.close()
        count = len(hints)
        sched.tick()
        assert len(hints) == count
        assert sched.state == "stopped"


# --- audibility and gain ---


class TestGainChain:
    def test_output_level(self, live_context, audio_source, track) -> None:
        sched = scheduler_for(live_context, audio_source, [track])
        sched.play()
        np.testing.assert_allclose(live_context.pull(800), 0.5)

    def test_volume_and_envelope_multiply(self, live_context, audio_source) -> None:
        track = Track("t1", clips=[make_clip()], volume=50.0, volume_envelope=make_envelope((0, 0.5), (1000, 0.5)))
        sched = scheduler_for(live_context, audio_source, [track])
        sched.play()
        np.testing.assert_allclose(live_context.pull(800), 0.125, rtol=1e-5)

    def test_muted_track_not_scheduled(self, live_context, audio_source) -> None:
        track = Track("t1", clips=[make_clip()], muted=True)
        sched = scheduler_for(live_context, audio_source, [track])
        sched.play()
        assert live_context.sources == []

    def test_solo_silences_others(self, live_context, audio_source) -> None:
        loud = Track("a", clips=[make_clip("ca")], soloed=True)
        quiet = Track("b", clips=[make_clip("cb")])
        sched = scheduler_for(live_context, audio_source, [loud, quiet])
        sched.play()
        assert len(live_context.sources) == 1

    def test_missing_audio_logged(self, live_context, audio_source, caplog: pytest.LogCaptureFixture) -> None:
        track = Track("t1", clips=[make_clip(source_id="nope")])
        sched = scheduler_for(live_context, audio_source, [track])
        with caplog.at_level("WARNING"):
            sched.play()
        assert live_context.sources == []
        assert "No decoded audio" in caplog.text


# --- edits while playing ---


class TestReschedule:
    def test_unknown_track(self, live_context, audio_source, track) -> None:
        sched = scheduler_for(live_context, audio_source, [track])
        sched.play()
        with pytest.raises(KeyError):
            sched.reschedule_track("missing")

    def test_noop_when_stopped(self, live_context, audio_source, track) -> None:
        sched = scheduler_for(live_context, audio_source, [track])
        sched.reschedule_track("t1")
        assert live_context.sources == []

    def test_only_touches_one_track(self, live_context, audio_source) -> None:
        tracks = [Track("t1", clips=[make_clip("c1")]), Track("t2", clips=[make_clip("c2")])]
        sched = scheduler_for(live_context, audio_source, tracks)
        sched.play()
        s1, s2 = live_context.sources
        sched.reschedule_track("t1")
        assert s1.stop_time == 0.0
        assert s2.stop_time is None
        assert len(live_context.sources) == 3

    def test_repeated_reschedule_never_overlaps(self, clock: ManualClock, live_context, audio_source) -> None:
        env = make_envelope((0, 0.2), (500, 1.0), (1500, 0.4))
        track = Track("t1", clips=[make_clip(fade_in=100, fade_out=200)], volume_envelope=env)
        sched = scheduler_for(live_context, audio_source, [track])
        sched.play()
        for _ in range(5):
            sched.reschedule_track("t1")
        clock.advance(0.3)
        for _ in range(3):
            sched.reschedule_track("t1")
            clock.advance(0.0005)
        (src,) = live_sources(live_context)
        assert_no_overlap(src.output.gain)
        assert_no_overlap(src.output.output.gain)

    def test_synchronize_detects_changes(self, live_context, audio_source, track) -> None:
        tracks = [track]
        sched = scheduler_for(live_context, audio_source, tracks)
        assert sched.synchronize() == []
        sched.play()
        assert sched.synchronize() == []
        track.clips[0].start_time = 200
        assert sched.synchronize() == ["t1"]
        assert live_sources(live_context)[0].start_time == pytest.approx(0.2)

    def test_synchronize_mute_and_removal(self, live_context, audio_source, track) -> None:
        tracks = [track]
        sched = scheduler_for(live_context, audio_source, tracks)
        sched.play()
        track.muted = True
        assert sched.synchronize() == ["t1"]
        assert live_sources(live_context) == []
        tracks.clear()
        assert sched.synchronize() == ["t1"]
        assert sched.synchronize() == []


# --- loop arming ---


class TestLoopArming:
    def test_arms_within_horizon_without_duplicates(self, clock: ManualClock, live_context, audio_source) -> None:
        track = Track("t1", clips=[make_clip(loop=True)])
        sched = scheduler_for(live_context, audio_source, [track], loop_horizon_ms=2000)
        sched.play()
        assert sorted(s.start_time for s in live_context.sources) == [0.0, 1.0]

        clock.advance(0.5)
        sched.tick()
        sched.tick()
        assert sorted(s.start_time for s in live_context.sources) == pytest.approx([0.0, 1.0, 2.0])

        clock.advance(1.0)
        sched.tick()
        assert sorted(s.start_time for s in live_context.sources) == pytest.approx([1.0, 2.0, 3.0])

    def test_stops_at_loop_end(self, clock: ManualClock, live_context, audio_source) -> None:
        track = Track("t1", clips=[make_clip(loop=True, loop_end=2500)])
        sched = scheduler_for(live_context, audio_source, [track], loop_horizon_ms=10_000)
        sched.play()
        clock.advance(0.9)
        sched.tick()
        starts = sorted(s.start_time for s in live_context.sources)
        assert starts == pytest.approx([0.0, 1.0, 2.0])
        assert live_context.sources[-1].duration == pytest.approx(0.5)

    def test_seek_into_open_loop(self, live_context, audio_source) -> None:
        track = Track("t1", clips=[make_clip(loop=True)])
        sched = scheduler_for(live_context, audio_source, [track], loop_horizon_ms=1000)
        sched.play(from_ms=1_000_250)
        (first, second) = live_context.sources
        assert first.offset == pytest.approx(0.25)
        assert second.start_time == pytest.approx(0.75)


# --- background loop ---


class TestBackgroundLoop:
    def test_ticks_until_stopped(self, live_context, audio_source, track) -> None:
        sched = scheduler_for(live_context, audio_source, [track], autostart_loop=True, fps=100.0)
        hints: list[PlayheadHint] = []
        sched.subscribe(hints.append)
        sched.play()
        time.sleep(0.1)
        sched.stop()
        count = len(hints)
        assert count >= 3
        time.sleep(0.05)
        assert len(hints) == count

    def test_tick_errors_are_logged(self, live_context, audio_source, track, caplog: pytest.LogCaptureFixture) -> None:
        sched = scheduler_for(live_context, audio_source, [track], autostart_loop=True, fps=100.0)

        def explode(hint: PlayheadHint) -> None:
            if threading.current_thread() is not threading.main_thread():
                raise RuntimeError("boom")

        sched.subscribe(explode)
        with caplog.at_level("ERROR"):
            sched.play()
            time.sleep(0.1)
            sched.stop()
        assert "Error in playback tick" in caplog.text

    def test_play_during_stop_keeps_a_tick_thread(self, live_context, audio_source, track) -> None:
        sched = scheduler_for(live_context, audio_source, [track], autostart_loop=True, fps=100.0)
        sched.play()
        old_thread = sched._thread
        original_join = old_thread.join

        def join_after_replay(timeout: float | None = None) -> None:
            # Another caller starts playback while stop is still waiting on the old thread
            sched.play()
            original_join(timeout)

        old_thread.join = join_after_replay
        sched.stop()
        assert sched.state == "playing"
        assert sched._thread is not None
        assert sched._thread is not old_thread
        assert sched._thread.is_alive()
        assert not old_thread.is_alive()

        hints: list[PlayheadHint] = []
        sched.subscribe(hints.append)
        time.sleep(0.05)
        assert hints
        sched.stop()
        assert sched._thread is None
