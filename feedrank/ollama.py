from __future__ import annotations

import logging
import time
from typing import Optional, Protocol

import httpx
from aiolimiter import AsyncLimiter
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)
from tenacity.wait import wait_base

from feedrank.constants import (
    AVAILABILITY_TIMEOUT,
    AVAILABILITY_TTL_SECONDS,
    EMBED_HTTP_TIMEOUT,
    EMBED_PROMPT_MAX_CHARS,
    GENERATE_HTTP_TIMEOUT,
    LLM_MAX_RETRIES,
    LLM_MIN_REQUEST_INTERVAL,
    LLM_TEMPERATURE,
    OLLAMA_DEFAULT_URL,
    OLLAMA_EMBED_MODEL,
    OLLAMA_GENERATE_MODEL,
    RETRY_BACKOFF_BASE,
    RETRY_BACKOFF_MAX,
    RETRYABLE_STATUS_CODES,
)
from feedrank.errors import ProviderError, ProviderRetryableError

logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    async def is_available(self) -> bool: ...

    async def embed(self, text: str) -> Optional[list[float]]: ...


class TextGenerator(Protocol):
    async def is_available(self) -> bool: ...

    async def generate(self, prompt: str) -> Optional[str]: ...


class NullProvider:
    """Stand-in when no AI backend is configured: every stage that needs it is skipped."""

    async def is_available(self) -> bool:
        return False

    async def embed(self, text: str) -> Optional[list[float]]:
        return None

    async def generate(self, prompt: str) -> Optional[str]:
        return None


class OllamaClient:
    """Embedding + generation against a local Ollama server.

    ``is_available`` hits ``/api/tags`` and caches the answer for
    ``availability_ttl`` seconds, so a server that comes up later is picked
    up on a later cycle. Retryable failures (transport errors, 408/429/5xx)
    are retried with backoff; anything else, or running out of attempts,
    yields ``None``.
    """

    def __init__(
        self,
        base_url: str = OLLAMA_DEFAULT_URL,
        embed_model: str = OLLAMA_EMBED_MODEL,
        generate_model: str = OLLAMA_GENERATE_MODEL,
        client: httpx.AsyncClient | None = None,
        *,
        max_retries: int = LLM_MAX_RETRIES,
        retry_wait: wait_base | None = None,
        availability_ttl: float = AVAILABILITY_TTL_SECONDS,
        limiter: AsyncLimiter | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.embed_model = embed_model
        self.generate_model = generate_model
        self.max_retries = max_retries
        self.retry_wait = retry_wait or wait_random_exponential(
            multiplier=RETRY_BACKOFF_BASE, max=RETRY_BACKOFF_MAX
        )
        self.availability_ttl = availability_ttl
        self._owns_client = client is None
        self.client: httpx.AsyncClient = client or httpx.AsyncClient(base_url=self.base_url)
        self._limiter = limiter or AsyncLimiter(1, max(1.0, float(LLM_MIN_REQUEST_INTERVAL)))
        self._available: Optional[bool] = None
        self._checked_at = 0.0

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def is_available(self) -> bool:
        now = time.monotonic()
        if self._available is not None and now - self._checked_at < self.availability_ttl:
            return self._available
        try:
            resp = await self.client.get(self._url("/api/tags"), timeout=AVAILABILITY_TIMEOUT)
            available = resp.status_code == 200
            if not available:
                logger.warning("Ollama health check failed: %d", resp.status_code)
        except httpx.HTTPError as e:
            logger.debug("Ollama not reachable at %s: %s", self.base_url, e)
            available = False
        if available != self._available:
            logger.info("Ollama availability changed | available=%s url=%s", available, self.base_url)
        self._available = available
        self._checked_at = now
        return available

    def invalidate_availability(self) -> None:
        self._available = None

    async def _post_json(self, path: str, payload: dict[str, object], timeout: float) -> dict[str, object]:
        try:
            resp = await self.client.post(self._url(path), json=payload, timeout=timeout)
        except httpx.HTTPError as e:
            raise ProviderRetryableError(f"{path}: {e}") from e

        if resp.status_code == 200:
            try:
                data = resp.json()
            except ValueError as e:
                raise ProviderError(f"{path}: invalid JSON body") from e
            if not isinstance(data, dict):
                raise ProviderError(f"{path}: unexpected response shape")
            return data

        if resp.status_code in RETRYABLE_STATUS_CODES:
            raise ProviderRetryableError(f"{path}: HTTP {resp.status_code}", resp.status_code)
        raise ProviderError(f"{path}: HTTP {resp.status_code} {resp.text[:200]}")

    async def _call(
        self, path: str, payload: dict[str, object], timeout: float, limited: bool = False
    ) -> Optional[dict[str, object]]:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries),
                retry=retry_if_exception_type(ProviderRetryableError),
                wait=self.retry_wait,
                reraise=True,
            ):
                with attempt:
                    if limited:
                        async with self._limiter:
                            return await self._post_json(path, payload, timeout)
                    return await self._post_json(path, payload, timeout)
        except ProviderRetryableError as e:
            logger.warning("Ollama call failed after %d attempts: %s", self.max_retries, e)
            return None
        except ProviderError as e:
            logger.warning("Ollama call failed: %s", e)
            return None
        return None

    async def embed(self, text: str) -> Optional[list[float]]:
        if not text or not text.strip():
            return None
        data = await self._call(
            "/api/embeddings",
            {"model": self.embed_model, "prompt": text[:EMBED_PROMPT_MAX_CHARS]},
            EMBED_HTTP_TIMEOUT,
        )
        if data is None:
            return None
        embedding = data.get("embedding")
        if not isinstance(embedding, list) or not embedding:
            return None
        return [float(x) for x in embedding]

    async def generate(self, prompt: str) -> Optional[str]:
        if not prompt or not prompt.strip():
            return None
        data = await self._call(
            "/api/generate",
            {
                "model": self.generate_model,
                "prompt": prompt,
                "stream": False,
                "options": {"temperature": LLM_TEMPERATURE},
            },
            GENERATE_HTTP_TIMEOUT,
            limited=True,
        )
        if data is None:
            return None
        response = data.get("response")
        return response if isinstance(response, str) else None

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> OllamaClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
