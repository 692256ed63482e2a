from __future__ import annotations

from pathlib import Path
from typing import Optional

from feedrank.config import get_cycle_interval, get_db_path, get_setting
from feedrank.constants import EVENT_OPEN, READ_FILTER_UNREAD, TOPIC_ALL
from feedrank.errors import StoreError
from feedrank.logging_config import get_logger
from feedrank.models import ApplyResultDict, Feed, PendingStatus, RankedPage, StoryCluster
from feedrank.ollama import NullProvider, OllamaClient
from feedrank.rerank import FeedRanker
from feedrank.rss import FeedSource, HttpFeedSource
from feedrank.scheduler import BackgroundScheduler
from feedrank.store import Store
from feedrank.url_utils import normalize_url

logger = get_logger(__name__)


class FeedService:
    """Wires store, feed source, AI provider, scheduler and ranker together."""

    def __init__(
        self,
        store: Store,
        feed_source: FeedSource,
        provider: OllamaClient | NullProvider | None = None,
        *,
        cycle_interval: Optional[float] = None,
        startup_delay: Optional[float] = None,
    ) -> None:
        self.store = store
        self.feed_source = feed_source
        self.provider = provider or NullProvider()
        kwargs: dict[str, float] = {}
        if cycle_interval is not None:
            kwargs["cycle_interval"] = cycle_interval
        if startup_delay is not None:
            kwargs["startup_delay"] = startup_delay
        self.scheduler = BackgroundScheduler(
            store, feed_source, self.provider, self.provider, **kwargs
        )
        self.ranker = FeedRanker(store, self.provider)

    @classmethod
    def from_config(cls, db_path: Path | str | None = None, use_ai: bool = True) -> FeedService:
        store = Store(db_path or get_db_path())
        provider: OllamaClient | NullProvider = NullProvider()
        if use_ai:
            provider = OllamaClient(
                base_url=str(get_setting("ollama_url")),
                embed_model=str(get_setting("embed_model")),
                generate_model=str(get_setting("generate_model")),
            )
        return cls(store, HttpFeedSource(), provider, cycle_interval=get_cycle_interval())

    # --- subscriptions ---

    def subscribe(self, url: str, title: str = "") -> Feed:
        normalized = normalize_url(url)
        if not normalized.startswith(("http://", "https://")):
            raise StoreError(f"not an http(s) url: {url!r}")
        return self.store.add_feed(normalized, title)

    def unsubscribe(self, feed_id: int) -> bool:
        removed = self.store.remove_feed(feed_id)
        if removed:
            logger.info("feed removed", feed_id=feed_id)
        return removed

    def list_feeds(self) -> list[Feed]:
        return self.store.get_feeds()

    # --- user actions ---

    def mark_read(self, item_id: int, read: bool = True) -> bool:
        if self.store.get_item(item_id) is None:
            return False
        if read:
            self.store.mark_read(item_id)
            self.store.record_engagement(item_id, EVENT_OPEN)
        else:
            self.store.mark_unread(item_id)
        return True

    def record_engagement(self, item_id: int, event_type: str, duration_ms: int | None = None) -> bool:
        if self.store.get_item(item_id) is None:
            return False
        self.store.record_engagement(item_id, event_type, duration_ms)
        return True

    def get_cluster(self, cluster_id: int) -> Optional[StoryCluster]:
        return self.store.get_cluster(cluster_id)

    def get_cluster_for_item(self, item_id: int) -> Optional[StoryCluster]:
        cluster_id = self.store.get_cluster_for_item(item_id)
        return self.store.get_cluster(cluster_id) if cluster_id is not None else None

    async def ai_available(self) -> bool:
        return await self.provider.is_available()

    # --- ranking ---

    async def get_ranked_feed(
        self,
        page: int = 0,
        limit: int = 20,
        topic: str = TOPIC_ALL,
        similar_to_item_id: Optional[int] = None,
        read_filter: str = READ_FILTER_UNREAD,
    ) -> RankedPage:
        return await self.ranker.get_ranked_feed(page, limit, topic, similar_to_item_id, read_filter)

    # --- background ---

    def get_pending_status(self) -> PendingStatus:
        return self.scheduler.get_pending_status()

    def apply_pending(self) -> ApplyResultDict:
        return self.scheduler.apply_pending()

    def start_background(self) -> bool:
        return self.scheduler.start_background()

    def stop_background(self) -> None:
        self.scheduler.stop_background()

    async def run_once(self) -> None:
        await self.scheduler.run_once()

    async def aclose(self) -> None:
        self.scheduler.stop_background()
        await self.scheduler.wait_stopped()
        close = getattr(self.feed_source, "close", None)
        if close is not None:
            await close()
        if isinstance(self.provider, OllamaClient):
            await self.provider.close()
        self.store.close()
