from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Optional, TypeVar

from feedrank.classifier import classify_topic
from feedrank.clustering import StoryClusterer
from feedrank.constants import (
    CYCLE_INTERVAL_SECONDS,
    EMBED_BATCH_DELAY_SECONDS,
    FEED_BATCH_DELAY_SECONDS,
    STARTUP_DELAY_SECONDS,
)
from feedrank.embeddings import EmbeddingPipeline
from feedrank.fetching import FeedFetcher
from feedrank.logging_config import get_logger
from feedrank.models import ApplyResultDict, ClusteringResult, PendingStatus, ScoringResult
from feedrank.ollama import EmbeddingProvider, NullProvider, TextGenerator
from feedrank.rate_limit import HostRateLimiter
from feedrank.rss import FeedSource
from feedrank.scorer import NewsworthinessScorer
from feedrank.store import Store

logger = get_logger(__name__)

T = TypeVar("T")


class BackgroundScheduler:
    """Runs fetch -> embed -> cluster -> score on a fixed interval.

    All mutable pipeline state lives here: the running flag, the pending set
    of newly inserted item ids and the per-host rate limiter. Stopping is
    cooperative; in-flight requests finish and later stages see the flag.
    """

    def __init__(
        self,
        store: Store,
        feed_source: FeedSource,
        embedder: EmbeddingProvider | None = None,
        generator: TextGenerator | None = None,
        *,
        rate_limiter: HostRateLimiter | None = None,
        cycle_interval: float = CYCLE_INTERVAL_SECONDS,
        startup_delay: float = STARTUP_DELAY_SECONDS,
        feed_batch_delay: float = FEED_BATCH_DELAY_SECONDS,
        embed_batch_delay: float = EMBED_BATCH_DELAY_SECONDS,
        classify: Callable[[str, str], str] = classify_topic,
    ) -> None:
        self.store = store
        self.cycle_interval = cycle_interval
        self.startup_delay = startup_delay
        self.pending: set[int] = set()
        self.rate_limiter = rate_limiter or HostRateLimiter()
        self.fetcher = FeedFetcher(
            store,
            feed_source,
            self.rate_limiter,
            self.pending,
            classify=classify,
            batch_delay=feed_batch_delay,
        )
        self.embeddings = EmbeddingPipeline(
            store, embedder or NullProvider(), batch_delay=embed_batch_delay
        )
        self.clusterer = StoryClusterer(store)
        self.scorer = NewsworthinessScorer(store, generator or NullProvider())
        self._running = False
        self._generation = 0
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._running

    def _should_continue(self) -> bool:
        return self._running

    def _alive(self, generation: int) -> bool:
        # A restarted scheduler bumps the generation, so an older loop sees itself as stopped.
        return self._running and self._generation == generation

    async def run_cycle(self) -> Optional[list[int]]:
        return await self.fetcher.run_cycle(self._should_continue if self._running else lambda: True)

    async def run_embeddings(self) -> int:
        return await self.embeddings.run(self._should_continue if self._running else lambda: True)

    def run_clustering(self) -> ClusteringResult:
        return self.clusterer.run()

    async def run_scoring(self) -> ScoringResult:
        return await self.scorer.run()

    async def run_once(self) -> None:
        """One full pass of every stage, outside the background loop."""
        await self.run_cycle()
        await self.run_embeddings()
        self.run_clustering()
        await self.run_scoring()

    async def _run_stage(self, name: str, stage: Callable[[], Awaitable[T]]) -> Optional[T]:
        try:
            return await stage()
        except Exception:
            logger.exception("background stage failed", stage=name)
            return None

    async def _cluster_async(self) -> ClusteringResult:
        return self.run_clustering()

    async def _sleep(self, wake: asyncio.Event, seconds: float) -> None:
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _loop(
        self, generation: int, wake: asyncio.Event, previous: Optional[asyncio.Task[None]]
    ) -> None:
        if previous is not None and not previous.done():
            # The stopped loop may still be inside a stage; let it drain first.
            await previous

        def alive() -> bool:
            return self._alive(generation)

        logger.info("background loop started", interval=self.cycle_interval, generation=generation)
        await self._sleep(wake, self.startup_delay)
        while alive():
            new_ids = await self._run_stage("fetch", lambda: self.fetcher.run_cycle(alive))
            if new_ids:
                logger.info("fetch cycle complete", new_items=len(new_ids), pending=len(self.pending))
            if not alive():
                break
            await self._run_stage("embed", lambda: self.embeddings.run(alive))
            if not alive():
                break
            clustering = await self._run_stage("cluster", self._cluster_async)
            if clustering and clustering.clustered:
                logger.info("clustering complete", processed=clustering.processed, clustered=clustering.clustered)
            if not alive():
                break
            await self._run_stage("score", self.run_scoring)
            if not alive():
                break
            await self._sleep(wake, self.cycle_interval)
        logger.info("background loop stopped", generation=generation)

    def start_background(self) -> bool:
        """Schedule the loop on the running event loop. False if it is already running.

        A restart right after ``stop_background`` waits for the previous loop
        to finish before its first cycle, so at most one loop runs stages.
        """
        if self._running:
            return False
        self._running = True
        self._generation += 1
        self._wake = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(
            self._loop(self._generation, self._wake, self._task)
        )
        return True

    def stop_background(self) -> None:
        self._running = False
        self._wake.set()

    async def wait_stopped(self) -> None:
        # Each loop awaits its predecessor, so the latest task covers all of them.
        if self._task is not None:
            await self._task
            self._task = None

    def get_pending_status(self) -> PendingStatus:
        return PendingStatus(
            new_item_count=len(self.pending),
            has_changes=bool(self.pending),
            cycle_in_progress=self.fetcher.cycle_in_progress,
            last_cycle_at=self.fetcher.last_cycle_at,
        )

    def apply_pending(self) -> ApplyResultDict:
        applied = len(self.pending)
        self.pending.clear()
        return {"applied": applied}
