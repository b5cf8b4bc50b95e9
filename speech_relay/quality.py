"""Segment statistics and the secondary noise gate."""

import logging

import numpy as np

from speech_relay._types import Segment, SegmentStats
from speech_relay.config import QualityConfig, validate_quality_config
from speech_relay.resampler import rms_energy

logger = logging.getLogger(__name__)


def compute_stats(segment: Segment) -> SegmentStats:
    """Summarize a finalized segment for gating and server diagnostics."""
    samples = segment.samples
    peak = float(np.max(np.abs(samples))) if len(samples) else 0.0
    if segment.voiced_ms > 0:
        voiced_fraction = segment.voiced_ms / max(1.0, segment.duration_ms)
    else:
        voiced_fraction = 0.0

    return SegmentStats(
        duration_ms=segment.duration_ms,
        voiced_ms=segment.voiced_ms,
        voiced_fraction=voiced_fraction,
        rms=rms_energy(samples),
        peak=peak,
    )


class QualityGate:
    """Drops segments that are both mostly unvoiced and short.

    Short but voiced utterances ("yes") and long segments always pass.
    """

    def __init__(self, config: QualityConfig | None = None):
        self.config = config or QualityConfig()
        validate_quality_config(self.config)

    def accepts(self, stats: SegmentStats) -> bool:
        if (
            stats.voiced_fraction < self.config.min_voiced_fraction
            and stats.duration_ms < self.config.short_segment_ms
        ):
            logger.debug(
                "Quality gate rejected segment: voiced_fraction=%.2f, duration=%.0f ms",
                stats.voiced_fraction,
                stats.duration_ms,
            )
            return False
        return True
