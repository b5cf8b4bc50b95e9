"""Capture session lifecycle: frame path, request supersession and teardown."""

import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from typing import Protocol

import numpy as np

from speech_relay._types import NormalizedFrame, PipelineResult, Segment, SegmentStats
from speech_relay.audio_source import AudioSourceError, MicrophoneStream
from speech_relay.cancellation import RequestCancellationToken
from speech_relay.codec import encode_segment
from speech_relay.config import AudioConfig, Config
from speech_relay.quality import QualityGate, compute_stats
from speech_relay.resampler import apply_pre_gain, downsample_to_16k, rms_energy, to_mono
from speech_relay.segmenter import Segmenter
from speech_relay.transcriber import TranscriptionClient
from speech_relay.translator import TranslationClient, TranslationDispatcher

logger = logging.getLogger(__name__)

ResultCallback = Callable[[PipelineResult], None]
ErrorCallback = Callable[[str], None]


class AudioSource(Protocol):
    def start(self, on_block: Callable[[np.ndarray, int], None], loop: asyncio.AbstractEventLoop) -> None:
        ...

    def close(self) -> None:
        ...


class CaptureSession:
    """One enable/disable cycle of the live pipeline.

    Owns the audio source, the segmenter and the cancellation token of the
    in-flight segment. The frame path (process_block) is synchronous and
    never awaits; network work runs in tasks it schedules. A new segment
    cancels the previous segment's requests, so at most one transcription
    is outstanding. Results from a cancelled or stopped session are dropped.
    """

    def __init__(
        self,
        config: Config,
        source: AudioSource,
        transcriber: TranscriptionClient,
        dispatcher: TranslationDispatcher,
        on_result: ResultCallback,
        on_error: ErrorCallback | None = None,
        session_id: int = 0,
    ):
        """Initialize capture session.

        Args:
            config: Full configuration (vad, quality, audio, languages)
            source: Audio source delivering (samples, sample_rate) blocks
            transcriber: Client used to transcribe finalized segments
            dispatcher: Translation fan-out for non-empty transcripts
            on_result: Called with each PipelineResult
            on_error: Called with a message for unrecoverable failures
            session_id: Identifier used in log messages
        """
        self.config = config
        self.source = source
        self.transcriber = transcriber
        self.dispatcher = dispatcher
        self.on_result = on_result
        self.on_error = on_error
        self.session_id = session_id

        self.segmenter = Segmenter(config.vad)
        self.quality_gate = QualityGate(config.quality)

        self._active = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._token: RequestCancellationToken | None = None
        self._tasks: set[asyncio.Task] = set()
        self._segment_count = 0

    @property
    def active(self) -> bool:
        return self._active

    @property
    def pending_requests(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Start capturing.

        Raises:
            AudioSourceError: If the audio source cannot be opened
        """
        if self._active:
            raise RuntimeError(f"Session {self.session_id} already active")

        self._loop = loop or asyncio.get_running_loop()
        self.segmenter.reset()
        self._active = True
        try:
            self.source.start(self.process_block, self._loop)
        except Exception:
            self._active = False
            raise
        logger.info("Capture session %d started", self.session_id)

    async def stop(self) -> None:
        """Abort requests, release the audio source and reset segmentation.

        Safe to call more than once.
        """
        was_active = self._active
        self._active = False

        if self._token is not None:
            self._token.cancel()
            self._token = None

        try:
            self.source.close()
        except Exception as e:
            logger.warning("Error closing audio source: %s", e)

        self.segmenter.reset()

        pending = [t for t in self._tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()

        if was_active:
            logger.info("Capture session %d stopped", self.session_id)

    async def wait_idle(self) -> None:
        """Wait until every scheduled segment request has settled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def process_block(self, samples: np.ndarray, sample_rate: int) -> None:
        """Feed one block of native-rate audio through the frame path.

        Runs on the event loop thread and returns without awaiting.
        Failures are reported through on_error instead of raised.
        """
        if not self._active:
            return

        try:
            normalized = downsample_to_16k(to_mono(samples), sample_rate)
            normalized = apply_pre_gain(normalized, self.config.audio.pre_gain)
            if len(normalized) == 0:
                return

            frame = NormalizedFrame(samples=normalized, energy=rms_energy(normalized))
            segment = self.segmenter.push(frame)
            if segment is not None:
                self._submit(segment)
        except Exception as e:
            logger.error("Frame processing failed: %s", e, exc_info=True)
            self._report_error(f"Audio processing failed: {e}")

    def _submit(self, segment: Segment) -> None:
        """Gate, encode and schedule a finalized segment."""
        stats = compute_stats(segment)
        if not self.quality_gate.accepts(stats):
            return

        wav_bytes = encode_segment(segment.samples)

        if self._token is not None:
            logger.debug("Superseding in-flight request (%s)", self._token.label)
            self._token.cancel()

        self._segment_count += 1
        token = RequestCancellationToken(
            label=f"session {self.session_id} segment {self._segment_count}"
        )
        self._token = token

        loop = self._loop or asyncio.get_running_loop()
        task = loop.create_task(self._process_segment(wav_bytes, stats, token))
        token.attach(task)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug(
            "Scheduled %s: %.0f ms, voiced %.0f%%",
            token.label,
            stats.duration_ms,
            stats.voiced_fraction * 100,
        )

    async def _process_segment(
        self, wav_bytes: bytes, stats: SegmentStats, token: RequestCancellationToken
    ) -> None:
        """Transcribe one segment, translate it and deliver the result."""
        language = self.config.transcription.language
        try:
            transcript = await self.transcriber.transcribe(
                wav_bytes, language=language, stats=stats, token=token
            )
            if not transcript.text:
                logger.debug("Empty transcript for %s", token.label)
                return

            translations = await self.dispatcher.dispatch(
                transcript.text,
                self.config.translation.targets,
                source=language,
                token=token,
            )
        except asyncio.CancelledError:
            logger.debug("Request cancelled: %s", token.label)
            raise
        except Exception as e:
            if self._is_current(token):
                logger.error("Segment pipeline failed (%s): %s", token.label, e)
                self._report_error(str(e) or type(e).__name__)
            else:
                logger.debug("Ignoring failure from stale request %s: %s", token.label, e)
            return

        if not self._is_current(token):
            logger.debug("Dropping stale result from %s", token.label)
            return

        result = PipelineResult(original=transcript.text, translations=translations)
        try:
            self.on_result(result)
        except Exception as e:
            logger.error("Result callback raised: %s", e, exc_info=True)

    def _is_current(self, token: RequestCancellationToken) -> bool:
        return self._active and token is self._token and not token.is_cancelled()

    def _report_error(self, message: str) -> None:
        if self.on_error is None or not self._active:
            return
        try:
            self.on_error(message)
        except Exception as e:
            logger.error("Error callback raised: %s", e, exc_info=True)


class State(Enum):
    """Controller state."""

    DISABLED = "disabled"
    LISTENING = "listening"


def _default_source_factory(audio: AudioConfig) -> MicrophoneStream:
    return MicrophoneStream(block_size=audio.block_size, device=audio.device)


def _material(config: Config) -> tuple:
    """Settings whose change requires a fresh session."""
    return (
        config.audio,
        config.vad,
        config.quality,
        config.api,
        config.transcription,
        config.translation,
    )


class SessionController:
    """Enables, disables and reconfigures the single live capture session.

    Enabling always tears down the previous session first; re-enabling
    creates a strictly new one.
    """

    def __init__(
        self,
        config: Config,
        on_result: ResultCallback,
        on_error: ErrorCallback | None = None,
        source_factory: Callable[[AudioConfig], AudioSource] | None = None,
        transcriber: TranscriptionClient | None = None,
        dispatcher: TranslationDispatcher | None = None,
    ):
        """Initialize controller.

        Args:
            config: Initial configuration
            on_result: Consumer callback for results
            on_error: Consumer callback for error messages
            source_factory: Builds the audio source for each session
            transcriber: Optional prebuilt transcription client
            dispatcher: Optional prebuilt translation dispatcher
        """
        self.config = config
        self.on_result = on_result
        self.on_error = on_error
        self.source_factory = source_factory or _default_source_factory
        self._owns_transcriber = transcriber is None
        self._owns_dispatcher = dispatcher is None
        self.transcriber = transcriber
        self.dispatcher = dispatcher
        self._build_clients()

        self.state = State.DISABLED
        self._session: CaptureSession | None = None
        self._session_counter = 0
        self._warmup_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

        logger.info("SessionController initialized in DISABLED state")

    @property
    def session(self) -> CaptureSession | None:
        return self._session

    def _build_clients(self) -> None:
        if self.transcriber is None:
            self.transcriber = TranscriptionClient.from_config(
                self.config.api, self.config.transcription
            )
        if self.dispatcher is None:
            client = TranslationClient.from_config(self.config.api, self.config.translation)
            self.dispatcher = TranslationDispatcher(client, workers=self.config.translation.workers)

    async def _close_clients(self) -> None:
        """Close the clients this controller built; injected ones stay open."""
        if self._owns_transcriber and self.transcriber is not None:
            await self.transcriber.close()
        if self._owns_dispatcher and self.dispatcher is not None:
            await self.dispatcher.client.close()

    async def _cancel_warmup(self) -> None:
        task = self._warmup_task
        self._warmup_task = None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def enable(self, config: Config | None = None) -> bool:
        """Start a new capture session, tearing down any current one.

        Args:
            config: Optional replacement configuration

        Returns:
            True if capture started; False if the audio source failed
            (reported through on_error)
        """
        async with self._lock:
            await self._teardown()
            if config is not None:
                await self._apply_config(config)

            self._session_counter += 1
            session = CaptureSession(
                config=self.config,
                source=self.source_factory(self.config.audio),
                transcriber=self.transcriber,
                dispatcher=self.dispatcher,
                on_result=self.on_result,
                on_error=self.on_error,
                session_id=self._session_counter,
            )
            try:
                session.start()
            except AudioSourceError as e:
                logger.error("Failed to start capture: %s", e)
                if self.on_error is not None:
                    self.on_error(str(e) or "mic init failed")
                return False

            self._session = session
            logger.info("State transition: DISABLED -> LISTENING")
            self.state = State.LISTENING
            self._schedule_warmup()
            return True

    async def disable(self) -> None:
        """Stop the current session, if any. Safe to call repeatedly."""
        async with self._lock:
            await self._teardown()

    async def reconfigure(self, config: Config) -> None:
        """Apply new settings, restarting the session on material changes."""
        if _material(config) == _material(self.config):
            self.config = config
            return

        logger.info("Material configuration change")
        if self.state == State.LISTENING:
            await self.enable(config)
        else:
            async with self._lock:
                await self._apply_config(config)

    async def shutdown(self) -> None:
        """Stop capture and close network clients."""
        await self.disable()
        await self._cancel_warmup()
        await self._close_clients()
        logger.info("SessionController shutdown complete")

    async def _apply_config(self, config: Config) -> None:
        clients_changed = (
            config.api != self.config.api
            or config.transcription != self.config.transcription
            or config.translation != self.config.translation
        )
        self.config = config
        if clients_changed and (self._owns_transcriber or self._owns_dispatcher):
            await self._cancel_warmup()
            await self._close_clients()
            if self._owns_transcriber:
                self.transcriber = None
            if self._owns_dispatcher:
                self.dispatcher = None
            self._build_clients()

    async def _teardown(self) -> None:
        session = self._session
        self._session = None
        if session is not None:
            await session.stop()
        if self.state != State.DISABLED:
            logger.info("State transition: LISTENING -> DISABLED")
        self.state = State.DISABLED

    def _schedule_warmup(self) -> None:
        if self._warmup_task is not None and not self._warmup_task.done():
            return
        self._warmup_task = asyncio.get_running_loop().create_task(
            self.transcriber.warmup(
                self.config.transcription.model,
                self.config.translation.model,
                self.config.transcription.language,
            )
        )
