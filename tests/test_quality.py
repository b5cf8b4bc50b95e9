"""Tests for segment statistics and the quality gate."""

import numpy as np
import pytest

from speech_relay._types import Segment, SegmentStats
from speech_relay.config import ConfigError, QualityConfig
from speech_relay.quality import QualityGate, compute_stats


def make_stats(voiced_fraction: float, duration_ms: float) -> SegmentStats:
    return SegmentStats(
        duration_ms=duration_ms,
        voiced_ms=voiced_fraction * duration_ms,
        voiced_fraction=voiced_fraction,
        rms=0.05,
        peak=0.1,
    )


class TestComputeStats:
    """Tests for compute_stats."""

    def test_summary_values(self):
        samples = np.array([0.1, -0.4, 0.2, 0.0], dtype=np.float32)
        stats = compute_stats(Segment(samples=samples, duration_ms=1000, voiced_ms=250))

        assert stats.duration_ms == 1000
        assert stats.voiced_ms == 250
        assert stats.voiced_fraction == pytest.approx(0.25)
        assert stats.peak == pytest.approx(0.4)
        assert stats.rms == pytest.approx(np.sqrt((0.01 + 0.16 + 0.04) / 4), rel=1e-5)

    def test_no_voiced_time(self):
        stats = compute_stats(
            Segment(samples=np.zeros(16, dtype=np.float32), duration_ms=1, voiced_ms=0)
        )
        assert stats.voiced_fraction == 0.0
        assert stats.peak == 0.0

    def test_payload_keys(self):
        payload = make_stats(0.5, 1000).to_payload()
        assert set(payload) == {"durMs", "voicedMs", "voicedFraction", "rms", "peak"}
        assert payload["voicedFraction"] == 0.5


class TestQualityGate:
    """Tests for QualityGate."""

    @pytest.fixture
    def gate(self):
        return QualityGate(QualityConfig(min_voiced_fraction=0.18, short_segment_ms=1200))

    def test_rejects_short_unvoiced(self, gate):
        assert gate.accepts(make_stats(0.1, 1000)) is False

    def test_accepts_long_unvoiced(self, gate):
        """Test long segments pass regardless of voiced fraction."""
        assert gate.accepts(make_stats(0.1, 1500)) is True

    def test_accepts_short_voiced(self, gate):
        """Test brief but voiced utterances pass."""
        assert gate.accepts(make_stats(0.9, 820)) is True

    def test_boundaries_are_exclusive(self, gate):
        assert gate.accepts(make_stats(0.18, 1000)) is True
        assert gate.accepts(make_stats(0.1, 1200)) is True

    def test_invalid_fraction(self):
        with pytest.raises(ConfigError, match="min_voiced_fraction"):
            QualityGate(QualityConfig(min_voiced_fraction=1.5))
