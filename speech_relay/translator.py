"""Translation client and bounded fan-out dispatcher."""

import asyncio
import logging
from collections import deque
from collections.abc import Sequence

import httpx

from speech_relay._types import TranslationResult
from speech_relay.api import ApiClient, ApiError
from speech_relay.cancellation import RequestCancellationToken
from speech_relay.config import ApiConfig, TranslationConfig

logger = logging.getLogger(__name__)


class TranslationError(ApiError):
    """Translation failed after all retry attempts."""

    pass


class TranslationClient(ApiClient):
    """Calls the translation endpoint for one target language at a time."""

    error_class = TranslationError

    def __init__(
        self,
        base_url: str = "http://localhost:3000",
        model: str = "gpt-4o-mini",
        temperature: float = 0.0,
        top_p: float = 1.0,
        max_tokens: int = 256,
        api_key: str | None = None,
        timeout: float | None = None,
        max_attempts: int = 2,
        base_delay: float = 0.3,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize translation client.

        Args:
            base_url: Backend base URL
            model: Model hint sent with each request
            temperature: Sampling temperature
            top_p: Nucleus sampling parameter
            max_tokens: Completion length limit
            api_key: Optional bearer token
            timeout: Per-request timeout in seconds (None disables it)
            max_attempts: Total attempts per target
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
        self.temperature = temperature
        self.top_p = top_p
        self.max_tokens = max_tokens

    @classmethod
    def from_config(
        cls,
        api: ApiConfig,
        translation: TranslationConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> "TranslationClient":
        """Create TranslationClient from configuration."""
        return cls(
            base_url=api.base_url,
            model=translation.model,
            temperature=translation.temperature,
            top_p=translation.top_p,
            max_tokens=translation.max_tokens,
            api_key=api.api_key,
            timeout=api.timeout,
            max_attempts=translation.max_attempts,
            base_delay=translation.base_delay,
            http_client=http_client,
        )

    async def translate(
        self,
        text: str,
        target: str,
        source: str = "",
        token: RequestCancellationToken | None = None,
    ) -> str:
        """Translate text into one target language.

        Returns:
            Stripped translation; may be empty

        Raises:
            TranslationError: If every attempt fails
            asyncio.CancelledError: If the token is cancelled
        """
        body = await self._post_with_retry(
            "/api/translate",
            token=token,
            json={
                "text": text,
                "target": target,
                "source": source or "auto",
                "model": self.model,
                "temperature": self.temperature,
                "top_p": self.top_p,
                "max_tokens": self.max_tokens,
            },
        )
        return str(body.get("text") or "").strip()


class TranslationDispatcher:
    """Fans a transcript out to several target languages with a worker pool.

    Workers share one queue. A target that fails or comes back empty is
    left out of the results without affecting the others. Results follow
    the order of the requested targets, not completion order.
    """

    def __init__(self, client: TranslationClient, workers: int | None = None):
        """Initialize dispatcher.

        Args:
            client: Client used for each target
            workers: Upper bound on parallel requests (default: one per target)
        """
        if workers is not None and workers <= 0:
            raise ValueError("workers must be positive")
        self.client = client
        self.workers = workers

    def worker_count(self, num_targets: int) -> int:
        """Number of workers used for a given number of targets."""
        limit = self.workers if self.workers is not None else num_targets
        return max(1, min(limit, num_targets))

    async def dispatch(
        self,
        text: str,
        targets: Sequence[str],
        source: str = "",
        token: RequestCancellationToken | None = None,
    ) -> list[TranslationResult]:
        """Translate text into every target.

        Args:
            text: Transcript to translate
            targets: Target languages in priority order
            source: Source language hint
            token: Cancellation token shared by all workers

        Returns:
            Successful translations ordered by position in ``targets``

        Raises:
            asyncio.CancelledError: If the token is cancelled
        """
        if not targets:
            return []

        queue: deque[tuple[int, str]] = deque(enumerate(targets))
        collected: list[tuple[int, TranslationResult]] = []

        async def worker(worker_id: int) -> None:
            while queue:
                index, target = queue.popleft()
                try:
                    translated = await self.client.translate(
                        text, target, source=source, token=token
                    )
                except Exception as e:
                    logger.warning(
                        "Translation to %s failed in worker %d: %s", target, worker_id, e
                    )
                    continue
                if translated:
                    collected.append((index, TranslationResult(language=target, text=translated)))
                else:
                    logger.debug("Empty translation for %s, skipping", target)

        num_workers = self.worker_count(len(targets))
        logger.debug("Dispatching %d target(s) over %d worker(s)", len(targets), num_workers)
        await asyncio.gather(
            *(worker(i) for i in range(num_workers)), return_exceptions=True
        )
        if token is not None:
            token.raise_if_cancelled()

        collected.sort(key=lambda item: item[0])
        return [result for _, result in collected]
