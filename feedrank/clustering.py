"""Greedy single-pass story clustering over recent item embeddings.

Each unclustered candidate is compared against every other embedding in the
recent pool. When the best match clears the threshold the candidate joins
the match's cluster (or the pair starts a new one). The candidate is then
added to the pool, so later candidates can anchor on it. Results depend on
iteration order: earlier pool entries win ties.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from feedrank.constants import (
    CLUSTER_MAX_AGE_SECONDS,
    CLUSTER_POOL_LIMIT,
    CLUSTER_SIMILARITY_THRESHOLD,
    CLUSTER_WORK_LIMIT,
)
from feedrank.models import ClusteringResult
from feedrank.similarity import similarity_to_many
from feedrank.store import Store

logger = logging.getLogger(__name__)


@dataclass
class ArenaEntry:
    embedding: NDArray[np.float32]
    cluster_id: Optional[int] = None


class StoryClusterer:
    def __init__(
        self,
        store: Store,
        threshold: float = CLUSTER_SIMILARITY_THRESHOLD,
        max_age: float = CLUSTER_MAX_AGE_SECONDS,
        pool_limit: int = CLUSTER_POOL_LIMIT,
        work_limit: int = CLUSTER_WORK_LIMIT,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.max_age = max_age
        self.pool_limit = pool_limit
        self.work_limit = work_limit

    def _build_arena(self) -> dict[int, ArenaEntry]:
        arena: dict[int, ArenaEntry] = {}
        for item_id, embedding in self.store.get_recent_items_with_embeddings(
            self.max_age, self.pool_limit
        ):
            arena[item_id] = ArenaEntry(embedding, self.store.get_cluster_for_item(item_id))
        return arena

    def _best_match(
        self, item_id: int, embedding: NDArray[np.float32], arena: dict[int, ArenaEntry]
    ) -> tuple[Optional[int], float]:
        other_ids = [oid for oid in arena if oid != item_id]
        if not other_ids:
            return None, 0.0
        sims = similarity_to_many(embedding, [arena[oid].embedding for oid in other_ids])
        idx = int(np.argmax(sims))  # first maximum wins
        best_sim = float(sims[idx])
        if best_sim <= 0.0:
            return None, 0.0
        return other_ids[idx], best_sim

    def _refresh_representative(self, cluster_id: int) -> None:
        members = self.store.get_cluster_members(cluster_id)
        if members:
            self.store.update_cluster_representative(cluster_id, members[0].item_id)

    def run(self) -> ClusteringResult:
        work = self.store.get_unclustered_item_ids(self.max_age, self.work_limit)
        if not work:
            return ClusteringResult()

        arena = self._build_arena()
        if not arena:
            return ClusteringResult()

        clustered = 0
        for item_id in work:
            entry = arena.get(item_id)
            if entry is not None and entry.cluster_id is not None:
                # Pulled into a cluster as an earlier candidate's match this pass.
                continue
            embedding = entry.embedding if entry is not None else self.store.get_item_embedding(item_id)
            if embedding is None:
                continue

            best_id, best_sim = self._best_match(item_id, embedding, arena)
            cluster_id: Optional[int] = None
            if best_id is not None and best_sim >= self.threshold:
                best_cluster = arena[best_id].cluster_id
                if best_cluster is not None:
                    self.store.add_to_cluster(best_cluster, item_id, best_sim)
                    cluster_id = best_cluster
                else:
                    cluster_id = self.store.create_cluster(
                        best_id, [(best_id, 1.0), (item_id, best_sim)]
                    )
                    arena[best_id].cluster_id = cluster_id
                self._refresh_representative(cluster_id)
                clustered += 1

            arena[item_id] = ArenaEntry(embedding, cluster_id)

        if clustered:
            logger.info("Clustering pass | processed=%d clustered=%d", len(work), clustered)
        return ClusteringResult(processed=len(work), clustered=clustered)
