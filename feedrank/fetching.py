from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Optional

import httpx

from feedrank.classifier import classify_topic
from feedrank.constants import FEED_BATCH_DELAY_SECONDS, PARALLEL_FEEDS
from feedrank.errors import FeedFetchError
from feedrank.models import Feed, FeedEntry
from feedrank.rate_limit import HostRateLimiter
from feedrank.rss import FeedSource
from feedrank.store import Store

logger = logging.getLogger(__name__)


def _always() -> bool:
    return True


class FeedFetcher:
    """Pulls every subscribed feed in fixed-size concurrent batches.

    Only one cycle runs at a time; a call that arrives while a cycle is in
    progress is dropped. Ids of genuinely new items go into ``pending``,
    which is shared with whoever reports pending status.
    """

    def __init__(
        self,
        store: Store,
        source: FeedSource,
        rate_limiter: HostRateLimiter,
        pending: set[int],
        classify: Callable[[str, str], str] = classify_topic,
        batch_size: int = PARALLEL_FEEDS,
        batch_delay: float = FEED_BATCH_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.source = source
        self.rate_limiter = rate_limiter
        self.pending = pending
        self.classify = classify
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay
        self._sleep = sleep
        self.cycle_in_progress = False
        self.last_cycle_at: Optional[float] = None

    async def fetch_one(self, feed: Feed) -> list[int]:
        """Fetch, classify and upsert one feed. Source failures count as zero new items."""
        await self.rate_limiter.acquire(feed.url)
        try:
            parsed = await self.source.fetch_and_parse(feed.url)
        except (FeedFetchError, httpx.HTTPError) as e:
            logger.warning("Feed fetch failed | feed_id=%d url=%s: %s", feed.id, feed.url, e)
            return []
        except Exception:
            logger.exception("Unexpected feed source error | feed_id=%d url=%s", feed.id, feed.url)
            return []

        if feed.title == feed.url and parsed.title and parsed.title != feed.url:
            self.store.set_feed_title(feed.id, parsed.title)

        if not parsed.items:
            return []

        entries = [
            FeedEntry(
                guid=it.guid,
                link=it.link,
                title=it.title,
                description=it.description,
                published_at=it.published_at,
                thumbnail_url=it.thumbnail_url,
                topic=self.classify(it.title, it.description),
            )
            for it in parsed.items
        ]
        new_ids = self.store.upsert_items_returning_new(feed.id, entries)
        self.store.set_feed_last_fetched(feed.id, time.time())
        self.pending.update(new_ids)
        if new_ids:
            logger.info("Fetched feed | feed_id=%d new=%d total=%d", feed.id, len(new_ids), len(entries))
        return new_ids

    async def run_cycle(self, should_continue: Callable[[], bool] = _always) -> Optional[list[int]]:
        """Fetch all feeds once. Returns new item ids, or None when a cycle was already running."""
        if self.cycle_in_progress:
            logger.debug("Fetch cycle already in progress, skipping")
            return None
        self.cycle_in_progress = True
        new_ids: list[int] = []
        try:
            feeds = self.store.get_feeds()
            for start in range(0, len(feeds), self.batch_size):
                if not should_continue():
                    logger.info("Fetch cycle stopped early after %d feeds", start)
                    break
                if start > 0 and self.batch_delay > 0:
                    await self._sleep(self.batch_delay)
                batch = feeds[start : start + self.batch_size]
                # Source failures are absorbed per feed; anything else (store errors)
                # cancels the rest of the batch and surfaces as an ExceptionGroup.
                async with asyncio.TaskGroup() as tg:
                    tasks = [tg.create_task(self.fetch_one(f)) for f in batch]
                for task in tasks:
                    new_ids.extend(task.result())
            self.last_cycle_at = time.time()
        finally:
            self.cycle_in_progress = False
        return new_ids
