from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from feedrank.constants import (
    EMBED_BACKLOG_FACTOR,
    EMBED_BATCH_DELAY_SECONDS,
    EMBED_BATCH_SIZE,
    EMBED_DESCRIPTION_MAX_CHARS,
    EMBED_TITLE_MAX_CHARS,
)
from feedrank.errors import ProviderError
from feedrank.ollama import EmbeddingProvider
from feedrank.store import Store

logger = logging.getLogger(__name__)


def build_embedding_text(title: str | None, description: str | None) -> str:
    title = (title or "")[:EMBED_TITLE_MAX_CHARS]
    description = (description or "")[:EMBED_DESCRIPTION_MAX_CHARS]
    return f"{title} {description}".strip()


async def get_or_compute_embedding(
    store: Store,
    provider: EmbeddingProvider,
    item_id: int,
    title: str | None = None,
    description: str | None = None,
) -> Optional[NDArray[np.float32]]:
    """Stored embedding for an item, computing and persisting it on a miss.

    The store is re-checked right before the provider call; a concurrent
    writer may still land first, in which case the last write wins.
    """
    existing = store.get_item_embedding(item_id)
    if existing is not None:
        return existing

    if title is None and description is None:
        text_pair = store.get_item_text(item_id)
        if text_pair is None:
            return None
        title, description = text_pair

    text = build_embedding_text(title, description)
    if not text:
        return None

    try:
        vector = await provider.embed(text)
    except ProviderError as e:
        logger.debug("Embedding failed for item %d: %s", item_id, e)
        return None
    if not vector:
        return None

    store.set_item_embedding(item_id, vector)
    return np.asarray(vector, dtype=np.float32)


def _always() -> bool:
    return True


class EmbeddingPipeline:
    def __init__(
        self,
        store: Store,
        provider: EmbeddingProvider,
        batch_size: int = EMBED_BATCH_SIZE,
        batch_delay: float = EMBED_BATCH_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.provider = provider
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay
        self._sleep = sleep

    async def _embed_item(self, item_id: int) -> bool:
        if self.store.get_item_embedding(item_id) is not None:
            return False
        vector = await get_or_compute_embedding(self.store, self.provider, item_id)
        return vector is not None

    async def run(self, should_continue: Callable[[], bool] = _always) -> int:
        """Embed a backlog of items lacking vectors, newest first. Returns how many were stored."""
        if not await self.provider.is_available():
            logger.debug("Embedding provider unavailable, skipping embeddings")
            return 0

        ids = self.store.get_items_without_embeddings(self.batch_size * EMBED_BACKLOG_FACTOR)
        if not ids:
            return 0

        embedded = 0
        for start in range(0, len(ids), self.batch_size):
            if not should_continue():
                break
            if start > 0 and self.batch_delay > 0:
                await self._sleep(self.batch_delay)
            batch = ids[start : start + self.batch_size]
            results = await asyncio.gather(*(self._embed_item(i) for i in batch))
            embedded += sum(1 for ok in results if ok)

        if embedded:
            logger.info("Embedded %d/%d items", embedded, len(ids))
        return embedded
