"""Tests for the segmentation state machine."""

import numpy as np
import pytest

from speech_relay._types import NormalizedFrame
from speech_relay.config import ConfigError, VadConfig
from speech_relay.segmenter import Idle, Segmenter, Speaking

FRAME_SAMPLES = 320  # 20 ms at 16 kHz


def make_frame(energy: float, samples: int = FRAME_SAMPLES) -> NormalizedFrame:
    return NormalizedFrame(samples=np.full(samples, energy, dtype=np.float32), energy=energy)


def feed(segmenter: Segmenter, energy: float, duration_ms: int) -> list:
    """Push 20 ms frames at a fixed energy and collect finalized segments."""
    segments = []
    for _ in range(duration_ms // 20):
        segment = segmenter.push(make_frame(energy))
        if segment is not None:
            segments.append(segment)
    return segments


@pytest.fixture
def vad_config():
    return VadConfig(
        gate_high=0.01,
        gate_low=0.004,
        pad_ms=70,
        min_speech_ms=800,
        max_segment_ms=5000,
    )


@pytest.fixture
def segmenter(vad_config):
    return Segmenter(vad_config)


class TestSegmenterInit:
    """Tests for construction and validation."""

    def test_starts_idle(self, segmenter):
        assert isinstance(segmenter.state, Idle)
        assert segmenter.is_speaking is False

    def test_default_config(self):
        seg = Segmenter()
        assert seg.config.gate_high == 0.01
        assert seg.config.gate_low == 0.004

    def test_rejects_inverted_thresholds(self):
        with pytest.raises(ConfigError, match="gate_high"):
            Segmenter(VadConfig(gate_high=0.004, gate_low=0.01))

    def test_rejects_max_below_min(self):
        with pytest.raises(ConfigError, match="max_segment_ms"):
            Segmenter(VadConfig(min_speech_ms=2000, max_segment_ms=1000))


class TestSegmenterTransitions:
    """Tests for Idle/Speaking transitions."""

    def test_silence_stays_idle(self, segmenter):
        """Test 300 ms of silence never starts a segment."""
        assert feed(segmenter, 0.0, 300) == []
        assert isinstance(segmenter.state, Idle)

    def test_hysteresis_band_never_starts(self, segmenter):
        """Test energies between gate_low and gate_high do not leave Idle."""
        for i in range(500):
            energy = 0.005 if i % 2 else 0.0099
            assert segmenter.push(make_frame(energy)) is None
            assert isinstance(segmenter.state, Idle)

    def test_gate_high_starts_speaking(self, segmenter):
        """Test the triggering frame becomes the first buffered frame."""
        segmenter.push(make_frame(0.01))
        state = segmenter.state
        assert isinstance(state, Speaking)
        assert len(state.frames) == 1
        assert state.total_ms == pytest.approx(20.0)
        assert state.voiced_ms == pytest.approx(20.0)
        assert state.silence_ms == 0.0

    def test_steady_speech_then_pad_finalizes_once(self, segmenter):
        """Test 1000 ms of speech followed by 100 ms silence yields one segment."""
        assert feed(segmenter, 0.05, 1000) == []
        segments = feed(segmenter, 0.0, 100)

        assert len(segments) == 1
        segment = segments[0]
        assert 1000 <= segment.duration_ms <= 1100
        assert segment.voiced_ms == pytest.approx(1000.0)
        assert len(segment.samples) == round(segment.duration_ms / 1000 * 16000)
        assert isinstance(segmenter.state, Idle)

    def test_buffer_keeps_frame_order(self, segmenter):
        """Test segment samples start with the triggering frame."""
        segmenter.push(make_frame(0.5))
        feed(segmenter, 0.05, 900)
        segment = feed(segmenter, 0.0, 100)[0]
        assert segment.samples[0] == pytest.approx(0.5)
        assert segment.samples[FRAME_SAMPLES] == pytest.approx(0.05)

    def test_short_silence_resets_trailing_counter(self, segmenter):
        """Test a gap shorter than pad_ms does not end the segment."""
        feed(segmenter, 0.05, 800)
        assert feed(segmenter, 0.0, 60) == []
        assert feed(segmenter, 0.05, 200) == []
        assert segmenter.state.silence_ms == 0.0

        segment = feed(segmenter, 0.0, 80)[0]
        assert segment.duration_ms == pytest.approx(800 + 60 + 200 + 80)
        assert segment.voiced_ms == pytest.approx(1000.0)

    def test_hysteresis_band_counts_as_voiced_while_speaking(self, segmenter):
        """Test frames between the gates keep a segment alive."""
        feed(segmenter, 0.05, 400)
        assert feed(segmenter, 0.006, 1000) == []
        assert segmenter.is_speaking
        assert segmenter.state.voiced_ms == pytest.approx(1400.0)

    def test_short_segment_discarded(self, segmenter):
        """Test segments below min_speech_ms are dropped silently."""
        feed(segmenter, 0.05, 200)
        assert feed(segmenter, 0.0, 100) == []
        assert isinstance(segmenter.state, Idle)

    def test_max_duration_forces_finalize(self, segmenter):
        """Test continuous speech is cut at max_segment_ms and restarts."""
        segments = feed(segmenter, 0.05, 6000)

        assert len(segments) == 1
        assert segments[0].duration_ms <= 5000
        assert segments[0].duration_ms == pytest.approx(5000.0)
        assert segmenter.is_speaking
        assert segmenter.state.total_ms == pytest.approx(1000.0)

    def test_max_duration_during_silence(self):
        """Test the cutoff also applies on a quiet frame."""
        seg = Segmenter(VadConfig(pad_ms=1000, min_speech_ms=100, max_segment_ms=500))
        feed(seg, 0.05, 400)
        segments = feed(seg, 0.0, 100)
        assert len(segments) == 1
        assert segments[0].duration_ms == pytest.approx(500.0)

    def test_buffer_empty_after_finalize(self, segmenter):
        """Test a new segment never contains audio from the previous one."""
        feed(segmenter, 0.05, 1000)
        first = feed(segmenter, 0.0, 80)[0]
        feed(segmenter, 0.2, 1000)
        second = feed(segmenter, 0.0, 80)[0]

        assert first.samples.max() == pytest.approx(0.05)
        assert second.samples[0] == pytest.approx(0.2)
        assert second.duration_ms == pytest.approx(1080.0)

    def test_reset_drops_buffer(self, segmenter):
        feed(segmenter, 0.05, 500)
        segmenter.reset()
        assert isinstance(segmenter.state, Idle)
        assert feed(segmenter, 0.0, 100) == []
