"""Shared types and dataclasses for cross-module use."""

from dataclasses import dataclass, field

import numpy as np

TARGET_SAMPLE_RATE = 16000


@dataclass
class NormalizedFrame:
    """Mono float32 samples at 16 kHz with their RMS energy."""

    samples: np.ndarray
    energy: float

    @property
    def duration_ms(self) -> float:
        return len(self.samples) / TARGET_SAMPLE_RATE * 1000.0


@dataclass
class Segment:
    """A finalized utterance handed off by the segmenter."""

    samples: np.ndarray
    duration_ms: float
    voiced_ms: float


@dataclass(frozen=True)
class SegmentStats:
    """Read-only summary of a finalized segment."""

    duration_ms: float
    voiced_ms: float
    voiced_fraction: float
    rms: float
    peak: float

    def to_payload(self) -> dict:
        """Diagnostics payload sent alongside the transcription upload."""
        return {
            "durMs": self.duration_ms,
            "voicedMs": self.voiced_ms,
            "voicedFraction": self.voiced_fraction,
            "rms": self.rms,
            "peak": self.peak,
        }


@dataclass
class TranscriptResult:
    """Result from transcription. Empty text means nothing was recognized."""

    text: str


@dataclass
class TranslationResult:
    """A single translated target."""

    language: str
    text: str


@dataclass
class PipelineResult:
    """Transcript plus translations ordered by the requested targets."""

    original: str
    translations: list[TranslationResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "original": self.original,
            "translations": [
                {"lang": t.language, "text": t.text} for t in self.translations
            ],
        }
