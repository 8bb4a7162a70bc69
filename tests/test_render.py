"""Tests for the offline render service."""

import numpy as np
import pytest

from dawcore import InMemoryAudioSource, LiveContext, PlaybackScheduler, Track
from dawcore.graph import AudioBuffer
from dawcore.render import (
    DEFAULT_RENDER_MS,
    NORMALIZE_TARGET,
    RenderRange,
    normalize_buffer,
    render_project,
    render_project_to_audio_buffer,
)

from conftest import SAMPLE_RATE, ManualClock, make_clip, make_envelope, ramp_buffer


def mono_range(start_ms: float, end_ms: float) -> RenderRange:
    return RenderRange(start_ms, end_ms, sample_rate=SAMPLE_RATE, channels=1)


# --- RenderRange ---


class TestRenderRange:
    def test_length_rounds_up(self) -> None:
        assert RenderRange(0, 1000, sample_rate=SAMPLE_RATE).length == SAMPLE_RATE
        assert RenderRange(0, 1000.01, sample_rate=SAMPLE_RATE).length == SAMPLE_RATE + 1

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"start_ms": 0, "end_ms": 0},
            {"start_ms": 500, "end_ms": 100},
            {"start_ms": -1, "end_ms": 100},
            {"start_ms": 0, "end_ms": 100, "sample_rate": 0},
            {"start_ms": 0, "end_ms": 100, "channels": 3},
        ],
    )
    def test_invalid(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            RenderRange(**kwargs)

    def test_for_project_minimum(self) -> None:
        assert RenderRange.for_project([Track("t", clips=[make_clip()])]).end_ms == DEFAULT_RENDER_MS

    def test_for_project_covers_loops(self) -> None:
        track = Track("t", clips=[make_clip(length=10_000, loop=True, loop_end=90_000)])
        assert RenderRange.for_project([track]).end_ms == 90_000


# --- rendering ---


class TestRender:
    def test_plays_clip(self, audio_source, track) -> None:
        out = render_project([track], mono_range(0, 1000), audio_source)
        assert out.sample_rate == SAMPLE_RATE
        assert out.data.shape == (1, SAMPLE_RATE)
        np.testing.assert_allclose(out.data, 0.5)

    def test_stereo_output(self, audio_source, track) -> None:
        out = render_project([track], RenderRange(0, 500, sample_rate=SAMPLE_RATE), audio_source)
        assert out.channels == 2
        np.testing.assert_allclose(out.data, 0.5)

    def test_deterministic(self, audio_source) -> None:
        track = Track(
            "t1",
            clips=[make_clip(length=700, fade_in=100, fade_out=150, loop=True, loop_end=2600, fade_out_curve=40)],
            volume=80,
            volume_envelope=make_envelope((0, 0.3), (1200, 1.4), (2600, 0.1), curves=(-30, 60)),
        )
        first = render_project([track], mono_range(250, 2750), audio_source)
        second = render_project([track], mono_range(250, 2750), audio_source)
        assert np.array_equal(first.data, second.data)

    def test_volume_and_envelope(self, audio_source) -> None:
        track = Track("t1", clips=[make_clip()], volume=50, volume_envelope=make_envelope((0, 0.5), (1000, 0.5)))
        out = render_project([track], mono_range(0, 500), audio_source)
        np.testing.assert_allclose(out.data, 0.125, rtol=1e-5)

    def test_fade_in(self, audio_source) -> None:
        track = Track("t1", clips=[make_clip(fade_in=500)], volume=100.0)
        out = render_project([track], mono_range(0, 1000), audio_source).data[0]
        assert out[0] == 0.0
        assert out[SAMPLE_RATE // 4] == pytest.approx(0.25, abs=0.01)
        assert out[SAMPLE_RATE * 3 // 4] == pytest.approx(0.5)

    def test_muted_and_solo(self, audio_source) -> None:
        muted = Track("a", clips=[make_clip("ca")], muted=True, volume=100.0)
        assert not render_project([muted], mono_range(0, 500), audio_source).data.any()

        soloed = Track("b", clips=[make_clip("cb")], soloed=True, volume=100.0)
        other = Track("c", clips=[make_clip("cc")], volume=100.0)
        out = render_project([soloed, other], mono_range(0, 500), audio_source)
        np.testing.assert_allclose(out.data, 0.5)

    def test_missing_audio_skipped(self, audio_source, caplog: pytest.LogCaptureFixture) -> None:
        tracks = [Track("t1", clips=[make_clip("gone", source_id="nope"), make_clip("ok", start=500)], volume=100.0)]
        with caplog.at_level("WARNING"):
            out = render_project(tracks, mono_range(0, 1000), audio_source).data[0]
        assert "Skipping clip gone" in caplog.text
        assert not out[: SAMPLE_RATE // 2].any()
        np.testing.assert_allclose(out[SAMPLE_RATE // 2 :], 0.5)

    def test_alias(self) -> None:
        assert render_project_to_audio_buffer is render_project


class TestLoopedSubRange:
    def source(self) -> InMemoryAudioSource:
        return InMemoryAudioSource().add("src", ramp_buffer(1.0))

    def track(self) -> Track:
        return Track("t1", clips=[make_clip(length=1000, loop=True, loop_end=10_000)], volume=100.0)

    def test_cycle_positions(self) -> None:
        out = render_project([self.track()], mono_range(3500, 5500), self.source()).data[0]
        assert out[0] == pytest.approx(0.5, abs=1e-3)
        assert out[SAMPLE_RATE // 2 - 1] == pytest.approx(1.0, abs=1e-3)
        assert out[SAMPLE_RATE // 2] == pytest.approx(0.0, abs=1e-3)
        assert out[SAMPLE_RATE * 3 // 2] == pytest.approx(0.0, abs=1e-3)

    def test_matches_slice_of_full_render(self) -> None:
        full = render_project([self.track()], mono_range(0, 10_000), self.source()).data[0]
        part = render_project([self.track()], mono_range(3500, 5500), self.source()).data[0]
        lo = SAMPLE_RATE * 7 // 2
        np.testing.assert_allclose(part, full[lo : lo + len(part)], atol=1e-4)

    def test_range_after_loop_end_is_silent(self) -> None:
        out = render_project([self.track()], mono_range(10_000, 11_000), self.source())
        assert not out.data.any()


class TestLiveParity:
    def test_render_matches_playback(self, audio_source) -> None:
        track = Track(
            "t1",
            clips=[make_clip(length=900, fade_in=120, fade_out=200, fade_in_curve=-50)],
            volume=90,
            volume_envelope=make_envelope((0, 0.4), (600, 1.2), (1000, 0.8), curves=(25,)),
        )
        rendered = render_project([track], mono_range(0, 1000), audio_source)

        ctx = LiveContext(sample_rate=SAMPLE_RATE, channels=1, clock=ManualClock())
        sched = PlaybackScheduler(ctx, audio_source, lambda: [track], autostart_loop=False)
        sched.play()
        live = ctx.pull(rendered.frames)
        np.testing.assert_allclose(live, rendered.data, atol=1e-6)


# --- normalize ---


class TestNormalize:
    def test_quiet_buffer_scaled(self, audio_source, track) -> None:
        out = render_project([track], mono_range(0, 500), audio_source, normalize=True)
        assert np.max(np.abs(out.data)) == pytest.approx(NORMALIZE_TARGET, rel=1e-6)

    def test_loud_buffer_unchanged(self) -> None:
        buf = AudioBuffer(SAMPLE_RATE, np.array([[0.2, -1.5, 0.3]], dtype=np.float32))
        assert normalize_buffer(buf) is buf

    def test_silence_unchanged(self) -> None:
        buf = AudioBuffer.silence(1, 10, SAMPLE_RATE)
        assert normalize_buffer(buf) is buf
