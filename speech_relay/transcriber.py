"""Segment upload to the transcription endpoint."""

import json
import logging
import re

import httpx

from speech_relay._types import SegmentStats, TranscriptResult
from speech_relay.api import ApiClient, ApiError
from speech_relay.cancellation import RequestCancellationToken
from speech_relay.config import ApiConfig, TranscriptionConfig

logger = logging.getLogger(__name__)


class TranscriptionError(ApiError):
    """Transcription failed after all retry attempts."""

    pass


class TranscriptionClient(ApiClient):
    """Uploads encoded segments for transcription.

    Each upload carries the WAV container, a source-language hint, the model
    identifier and the segment's diagnostic stats. Failed attempts are
    retried with exponential backoff; the final failure raises
    TranscriptionError. A cancelled token raises asyncio.CancelledError.
    """

    error_class = TranscriptionError

    def __init__(
        self,
        base_url: str = "http://localhost:3000",
        model: str = "gpt-4o-transcribe",
        api_key: str | None = None,
        timeout: float | None = None,
        max_attempts: int = 2,
        base_delay: float = 0.25,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize transcription client.

        Args:
            base_url: Backend base URL
            model: Transcription model identifier sent with each upload
            api_key: Optional bearer token
            timeout: Per-request timeout in seconds (None disables it)
            max_attempts: Total attempts per upload
            base_delay: Initial backoff delay in seconds
            http_client: Optional pre-built httpx.AsyncClient
        """
        super().__init__(
            base_url=base_url,
            api_key=api_key,
            timeout=timeout,
            max_attempts=max_attempts,
            base_delay=base_delay,
            http_client=http_client,
        )
        self.model = model
        logger.info(
            "TranscriptionClient initialized: url=%s, model=%s, max_attempts=%d",
            self.base_url,
            model,
            max_attempts,
        )

    @classmethod
    def from_config(
        cls,
        api: ApiConfig,
        transcription: TranscriptionConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> "TranscriptionClient":
        """Create TranscriptionClient from configuration."""
        return cls(
            base_url=api.base_url,
            model=transcription.model,
            api_key=api.api_key,
            timeout=api.timeout,
            max_attempts=transcription.max_attempts,
            base_delay=transcription.base_delay,
            http_client=http_client,
        )

    async def transcribe(
        self,
        wav_bytes: bytes,
        language: str = "",
        stats: SegmentStats | None = None,
        token: RequestCancellationToken | None = None,
    ) -> TranscriptResult:
        """Upload one segment and return its transcript.

        Args:
            wav_bytes: Encoded WAV container
            language: Source-language hint (empty for auto-detect)
            stats: Optional segment diagnostics forwarded to the server
            token: Cancellation token for this segment

        Returns:
            TranscriptResult; text is empty when nothing was recognized

        Raises:
            TranscriptionError: If every attempt fails
            asyncio.CancelledError: If the token is cancelled
        """
        data = {"inputLang": language, "sttModel": self.model}
        if stats is not None:
            data["stats"] = json.dumps(stats.to_payload())

        logger.debug(
            "Uploading segment: %d bytes (language=%s)", len(wav_bytes), language or "auto"
        )
        body = await self._post_with_retry(
            "/api/transcribe",
            token=token,
            data=data,
            files={"audio": ("segment.wav", wav_bytes, "audio/wav")},
        )
        text = _normalize_text(str(body.get("text") or ""))
        logger.info("Transcription completed: %d characters", len(text))
        return TranscriptResult(text=text)

    async def warmup(self, stt_model: str, llm_model: str, language: str) -> bool:
        """Ask the backend to preload models. Best effort; never raises.

        Returns:
            True if the backend acknowledged the request
        """
        try:
            client = await self._get_client()
            response = await client.post(
                "/api/warmup",
                json={
                    "sttModel": stt_model,
                    "llmModel": llm_model,
                    "warmupLanguage": language,
                },
                headers=self._get_headers(),
            )
            return response.is_success
        except httpx.HTTPError as e:
            logger.debug("Warmup request failed: %s", e)
            return False


def _normalize_text(text: str) -> str:
    """Collapse whitespace in a transcript."""
    return re.sub(r"\s+", " ", text).strip()
