"""Energy-based utterance segmentation with hysteresis."""

import logging
from dataclasses import dataclass, field

import numpy as np

from speech_relay._types import NormalizedFrame, Segment
from speech_relay.config import VadConfig, validate_vad_config

logger = logging.getLogger(__name__)


@dataclass
class Idle:
    """Not speaking; no buffered audio."""


@dataclass
class Speaking:
    """Accumulating an utterance."""

    frames: list[np.ndarray] = field(default_factory=list)
    total_ms: float = 0.0
    voiced_ms: float = 0.0
    silence_ms: float = 0.0


class Segmenter:
    """Turns a stream of 16 kHz frames into finalized utterance segments.

    A segment starts when frame energy reaches ``gate_high`` and keeps every
    following frame. Frames below ``gate_low`` count as trailing silence;
    anything at or above ``gate_low`` resets it. The segment ends once
    trailing silence reaches ``pad_ms`` or its length reaches
    ``max_segment_ms``. Segments shorter than ``min_speech_ms`` are dropped.

    Runs synchronously inside the audio path; no I/O happens here.
    """

    def __init__(self, config: VadConfig | None = None):
        """Initialize segmenter.

        Args:
            config: VadConfig with thresholds and durations

        Raises:
            ConfigError: If thresholds or durations are invalid
        """
        self.config = config or VadConfig()
        validate_vad_config(self.config)
        self._state: Idle | Speaking = Idle()

    @property
    def state(self) -> Idle | Speaking:
        return self._state

    @property
    def is_speaking(self) -> bool:
        return isinstance(self._state, Speaking)

    def reset(self) -> None:
        """Drop any buffered audio and return to Idle."""
        if isinstance(self._state, Speaking):
            logger.debug(
                "Segmenter reset while speaking, dropping %.0f ms", self._state.total_ms
            )
        self._state = Idle()

    def push(self, frame: NormalizedFrame) -> Segment | None:
        """Consume one frame.

        Args:
            frame: NormalizedFrame with precomputed energy

        Returns:
            The finalized Segment when this frame closes one, else None
        """
        state = self._state
        frame_ms = frame.duration_ms

        if isinstance(state, Idle):
            if frame.energy >= self.config.gate_high:
                self._state = Speaking(
                    frames=[frame.samples],
                    total_ms=frame_ms,
                    voiced_ms=frame_ms,
                    silence_ms=0.0,
                )
                logger.debug("Voice activity started (energy=%.4f)", frame.energy)
            return None

        state.frames.append(frame.samples)
        state.total_ms += frame_ms

        if frame.energy < self.config.gate_low:
            state.silence_ms += frame_ms
            if state.silence_ms >= self.config.pad_ms:
                return self._finalize("trailing silence")
        else:
            state.silence_ms = 0.0
            state.voiced_ms += frame_ms

        if state.total_ms >= self.config.max_segment_ms:
            return self._finalize("max duration")
        return None

    def _finalize(self, reason: str) -> Segment | None:
        """Hand off the buffered segment and return to Idle."""
        state = self._state
        self._state = Idle()
        assert isinstance(state, Speaking)

        if not state.frames or state.total_ms < self.config.min_speech_ms:
            logger.debug(
                "Discarding short segment: %.0f ms < %.0f ms",
                state.total_ms,
                self.config.min_speech_ms,
            )
            return None

        logger.debug(
            "Segment finalized by %s: %.0f ms (voiced %.0f ms)",
            reason,
            state.total_ms,
            state.voiced_ms,
        )
        return Segment(
            samples=np.concatenate(state.frames),
            duration_ms=state.total_ms,
            voiced_ms=state.voiced_ms,
        )
