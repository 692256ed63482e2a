"""Multi-signal feed ranking.

Standard mode scores each unread item as the sum of six terms:

    recency      = 1.0 / (1 + hours_since_published / 24)
    engagement   = 0.6 * ln(1 + positive_engagement_count)
    source_rep   = 0.5 * ln(1 + feed_engagement_rate)
    cluster      = 0.4 * ln(1 + min(cluster_size, 3) - 1)
    affinity     = 1.0 * cosine(item_embedding, interest_profile)
    newsworth    = 0.8 * (score - 5) / 5      (0 when unscored)

"For you" mode ranks by recency + engagement plus similarity to the most
engaged items. "More like this" boosts the top of an already-ranked list by
similarity to a chosen item. The read archive is returned by read time.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Sequence
from typing import Optional, TypeVar

import numpy as np
from numpy.typing import NDArray

from feedrank.constants import (
    AFFINITY_WEIGHT,
    CLUSTER_CAP,
    CLUSTER_WEIGHT,
    EMBED_CONCURRENCY,
    ENGAGEMENT_WEIGHT,
    FOR_YOU_SEED_COUNT,
    FOR_YOU_SIMILARITY_WEIGHT,
    INTEREST_PROFILE_SIZE,
    MORE_LIKE_THIS_WEIGHT,
    MORE_LIKE_THIS_WINDOW,
    NEWSWORTHINESS_NEUTRAL,
    NEWSWORTHINESS_WEIGHT,
    RANKING_POOL_SIZE,
    READ_FILTER_READ,
    READ_FILTER_UNREAD,
    READ_FILTERS,
    RECENCY_HALF_DAY_HOURS,
    RECENCY_WEIGHT,
    SECONDS_PER_HOUR,
    SOURCE_REP_WEIGHT,
    TOPIC_ALL,
    TOPIC_FOR_YOU,
)
from feedrank.embeddings import get_or_compute_embedding
from feedrank.models import PoolItem, RankedPage
from feedrank.ollama import EmbeddingProvider, NullProvider
from feedrank.similarity import average_embeddings, cosine_similarity, similarity_to_many
from feedrank.store import Store

logger = logging.getLogger(__name__)

T = TypeVar("T")


def recency_score(published_at: float, now: float) -> float:
    hours = max(0.0, (now - published_at) / SECONDS_PER_HOUR)
    return RECENCY_WEIGHT / (1.0 + hours / RECENCY_HALF_DAY_HOURS)


def engagement_score(count: int) -> float:
    return ENGAGEMENT_WEIGHT * math.log1p(max(0, count))


def score_item(
    published_at: float,
    now: float,
    engagement_count: int = 0,
    source_reputation: float = 0.0,
    cluster_size: int = 1,
    affinity: float = 0.0,
    newsworthiness: Optional[float] = None,
) -> float:
    """Composite score; every signal except recency defaults to a zero contribution."""
    source = SOURCE_REP_WEIGHT * math.log1p(max(0.0, source_reputation))
    effective_cluster = min(max(1, cluster_size), CLUSTER_CAP)
    cluster = CLUSTER_WEIGHT * math.log1p(effective_cluster - 1)
    nw = 0.0
    if newsworthiness is not None and newsworthiness > 0:
        nw = NEWSWORTHINESS_WEIGHT * (newsworthiness - NEWSWORTHINESS_NEUTRAL) / NEWSWORTHINESS_NEUTRAL
    return (
        recency_score(published_at, now)
        + engagement_score(engagement_count)
        + source
        + cluster
        + AFFINITY_WEIGHT * affinity
        + nw
    )


def paginate(items: Sequence[T], page: int, limit: int) -> tuple[list[T], bool]:
    """Slice ``limit + 1`` at ``page * limit``; the extra element only signals ``has_more``."""
    if page < 0:
        raise ValueError(f"page must be >= 0, got {page}")
    if limit < 1:
        raise ValueError(f"limit must be >= 1, got {limit}")
    offset = page * limit
    window = list(items[offset : offset + limit + 1])
    has_more = len(window) > limit
    return window[:limit], has_more


def _sort_scored(scored: list[tuple[float, PoolItem]]) -> list[tuple[float, PoolItem]]:
    # Stable: equal scores keep pool order (newest first).
    return sorted(scored, key=lambda pair: pair[0], reverse=True)


class FeedRanker:
    def __init__(self, store: Store, embedder: EmbeddingProvider | None = None) -> None:
        self.store = store
        self.embedder: EmbeddingProvider = embedder or NullProvider()

    async def _embeddings_for(self, items: Sequence[PoolItem]) -> dict[int, NDArray[np.float32]]:
        """Stored-or-computed embeddings, ``EMBED_CONCURRENCY`` lookups at a time."""
        out: dict[int, NDArray[np.float32]] = {}
        for start in range(0, len(items), EMBED_CONCURRENCY):
            batch = items[start : start + EMBED_CONCURRENCY]
            results = await asyncio.gather(
                *(
                    get_or_compute_embedding(self.store, self.embedder, it.id, it.title, it.description)
                    for it in batch
                )
            )
            for it, emb in zip(batch, results):
                if emb is not None and len(emb):
                    out[it.id] = emb
        return out

    async def get_ranked_feed(
        self,
        page: int = 0,
        limit: int = 20,
        topic: str = TOPIC_ALL,
        similar_to_item_id: Optional[int] = None,
        read_filter: str = READ_FILTER_UNREAD,
    ) -> RankedPage:
        if read_filter not in READ_FILTERS:
            raise ValueError(f"read_filter must be one of {READ_FILTERS}, got {read_filter!r}")
        # Validate before touching the store.
        paginate([], page, limit)
        topic = topic or TOPIC_ALL

        if read_filter == READ_FILTER_READ:
            pool_topic = TOPIC_ALL if topic == TOPIC_FOR_YOU else topic
            pool = self.store.get_feed_pool(pool_topic, RANKING_POOL_SIZE, READ_FILTER_READ)
            items, has_more = paginate(pool, page, limit)
            return RankedPage(items=items, has_more=has_more)

        if topic == TOPIC_FOR_YOU:
            scored = await self._rank_for_you()
        else:
            scored = await self._rank_standard(topic, similar_to_item_id)

        items, has_more = paginate([item for _, item in scored], page, limit)
        return RankedPage(items=items, has_more=has_more)

    async def _rank_standard(
        self, topic: str, similar_to_item_id: Optional[int]
    ) -> list[tuple[float, PoolItem]]:
        pool = self.store.get_feed_pool(topic, RANKING_POOL_SIZE, READ_FILTER_UNREAD)
        if not pool:
            return []
        now = time.time()
        engagement_counts = self.store.get_engagement_counts_by_item()
        feed_rates = self.store.get_feed_engagement_rates()
        cluster_sizes = self.store.get_cluster_sizes()
        nw_scores = self.store.get_newsworthiness_scores([it.id for it in pool])

        embedder_ok = await self.embedder.is_available()
        profile: Optional[NDArray[np.float32]] = None
        if embedder_ok:
            profile = average_embeddings(
                self.store.get_recent_engagement_embeddings(INTEREST_PROFILE_SIZE)
            )

        scored: list[tuple[float, PoolItem]] = []
        for item in pool:
            affinity = 0.0
            if profile is not None:
                emb = self.store.get_item_embedding(item.id)
                if emb is not None:
                    affinity = cosine_similarity(emb, profile)
            score = score_item(
                item.published_at,
                now,
                engagement_counts.get(item.id, 0),
                feed_rates.get(item.feed_id, 0.0),
                cluster_sizes.get(item.id, 1),
                affinity,
                nw_scores.get(item.id),
            )
            scored.append((score, item))
        scored = _sort_scored(scored)

        if similar_to_item_id is not None and embedder_ok:
            scored = await self._boost_similar(scored, similar_to_item_id)
        return scored

    async def _boost_similar(
        self, scored: list[tuple[float, PoolItem]], similar_to_item_id: int
    ) -> list[tuple[float, PoolItem]]:
        seed = await get_or_compute_embedding(self.store, self.embedder, similar_to_item_id)
        if seed is None or not len(seed):
            logger.debug("No embedding for more-like-this seed %d", similar_to_item_id)
            return scored

        window = scored[:MORE_LIKE_THIS_WINDOW]
        embeddings = await self._embeddings_for([item for _, item in window])
        boosted: list[tuple[float, PoolItem]] = []
        for score, item in window:
            emb = embeddings.get(item.id)
            if emb is not None:
                score += MORE_LIKE_THIS_WEIGHT * cosine_similarity(seed, emb)
            boosted.append((score, item))
        return _sort_scored(boosted) + scored[MORE_LIKE_THIS_WINDOW:]

    def _seed_ids(self, engagement_counts: dict[int, int]) -> list[int]:
        ranked = sorted(engagement_counts.items(), key=lambda kv: (-kv[1], kv[0]))
        return [item_id for item_id, _ in ranked[:FOR_YOU_SEED_COUNT]]

    async def _rank_for_you(self) -> list[tuple[float, PoolItem]]:
        engagement_counts = self.store.get_engagement_counts_by_item()
        seed_ids = self._seed_ids(engagement_counts)
        seed_set = set(seed_ids)
        pool = [
            it
            for it in self.store.get_feed_pool(TOPIC_ALL, RANKING_POOL_SIZE, READ_FILTER_UNREAD)
            if it.id not in seed_set
        ]
        now = time.time()
        scores = [
            recency_score(it.published_at, now) + engagement_score(engagement_counts.get(it.id, 0))
            for it in pool
        ]

        if seed_ids and pool and await self.embedder.is_available():
            seed_embeddings = []
            for seed_id in seed_ids:
                emb = await get_or_compute_embedding(self.store, self.embedder, seed_id)
                if emb is not None and len(emb):
                    seed_embeddings.append(emb)
            if seed_embeddings:
                item_embeddings = await self._embeddings_for(pool)
                for idx, it in enumerate(pool):
                    emb = item_embeddings.get(it.id)
                    if emb is None:
                        continue
                    sims = similarity_to_many(emb, seed_embeddings)
                    scores[idx] += FOR_YOU_SIMILARITY_WEIGHT * float(np.mean(sims))

        return _sort_scored(list(zip(scores, pool)))
