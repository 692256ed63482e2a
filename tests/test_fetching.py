import asyncio

import httpx
import pytest

from conftest import FakeFeedSource, make_entry
from feedrank.errors import StoreError
from feedrank.fetching import FeedFetcher
from feedrank.models import ParsedFeed
from feedrank.rate_limit import HostRateLimiter


async def _no_sleep(_: float) -> None:
    return None


def _fetcher(store, source, pending=None, **kw):
    return FeedFetcher(
        store,
        source,
        HostRateLimiter(min_interval=0.0),
        pending if pending is not None else set(),
        sleep=_no_sleep,
        **kw,
    )


@pytest.mark.asyncio
async def test_cycle_inserts_and_classifies(store, feed):
    source = FakeFeedSource({
        feed.url: ParsedFeed("Example", [
            make_entry("a", title="NBA finals game tonight"),
            make_entry("b", title="Stock market rally"),
        ])
    })
    pending: set[int] = set()
    fetcher = _fetcher(store, source, pending)
    new_ids = await fetcher.run_cycle()
    assert len(new_ids) == 2
    assert pending == set(new_ids)
    topics = sorted(store.get_item(i).topic for i in new_ids)
    assert topics == ["business", "sports"]
    assert store.get_feed(feed.id).last_fetched_at is not None
    assert fetcher.last_cycle_at is not None


@pytest.mark.asyncio
async def test_repeated_cycles_do_not_duplicate(store, feed):
    source = FakeFeedSource({feed.url: ParsedFeed("Example", [make_entry("a"), make_entry("b")])})
    fetcher = _fetcher(store, source)
    assert len(await fetcher.run_cycle()) == 2
    assert await fetcher.run_cycle() == []
    assert await fetcher.run_cycle() == []
    assert store.count_items() == 2


@pytest.mark.asyncio
async def test_failing_feed_does_not_abort_cycle(store):
    good = store.add_feed("https://good.example.com/rss")
    store.add_feed("https://bad.example.com/rss")
    store.add_feed("https://boom.example.com/rss")
    source = FakeFeedSource({
        good.url: ParsedFeed("Good", [make_entry("a")]),
        "https://boom.example.com/rss": httpx.ReadTimeout("slow"),
    })
    fetcher = _fetcher(store, source)
    new_ids = await fetcher.run_cycle()
    assert len(new_ids) == 1
    assert len(source.calls) == 3


@pytest.mark.asyncio
async def test_empty_feed_leaves_last_fetched_unset(store, feed):
    fetcher = _fetcher(store, FakeFeedSource({feed.url: ParsedFeed("Example", [])}))
    assert await fetcher.run_cycle() == []
    assert store.get_feed(feed.id).last_fetched_at is None


@pytest.mark.asyncio
async def test_feed_title_filled_from_source(store):
    f = store.add_feed("https://example.org/rss")
    source = FakeFeedSource({f.url: ParsedFeed("Real Title", [make_entry("a")])})
    await _fetcher(store, source).run_cycle()
    assert store.get_feed(f.id).title == "Real Title"


@pytest.mark.asyncio
async def test_overlapping_cycle_is_noop(store, feed):
    gate = asyncio.Event()

    class SlowSource(FakeFeedSource):
        async def fetch_and_parse(self, url):
            await gate.wait()
            return await super().fetch_and_parse(url)

    source = SlowSource({feed.url: ParsedFeed("Example", [make_entry("a")])})
    fetcher = _fetcher(store, source)
    first = asyncio.create_task(fetcher.run_cycle())
    await asyncio.sleep(0)
    assert fetcher.cycle_in_progress
    assert await fetcher.run_cycle() is None
    gate.set()
    assert len(await first) == 1
    assert not fetcher.cycle_in_progress
    assert source.calls == [feed.url]


@pytest.mark.asyncio
async def test_batches_and_stop_check(store):
    for i in range(8):
        store.add_feed(f"https://h{i}.example.com/rss")
    source = FakeFeedSource()
    sleeps: list[float] = []

    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    checks = iter([True, False])
    fetcher = FeedFetcher(
        store,
        source,
        HostRateLimiter(min_interval=0.0),
        set(),
        batch_size=6,
        batch_delay=0.5,
        sleep=record_sleep,
    )
    await fetcher.run_cycle(lambda: next(checks))
    # second batch never started
    assert len(source.calls) == 6
    assert sleeps == []

    source.calls.clear()
    await fetcher.run_cycle()
    assert len(source.calls) == 8
    assert sleeps == [0.5]


@pytest.mark.asyncio
async def test_rate_limiter_used_per_feed(store, feed):
    calls: list[str] = []

    class RecordingLimiter(HostRateLimiter):
        async def acquire(self, url):
            calls.append(url)
            return 0.0

    fetcher = FeedFetcher(
        store, FakeFeedSource(), RecordingLimiter(), set(), sleep=_no_sleep
    )
    await fetcher.run_cycle()
    assert calls == [feed.url]


@pytest.mark.asyncio
async def test_store_error_cancels_batch_and_propagates(store, monkeypatch):
    good = store.add_feed("https://good.example.com/rss")
    slow = store.add_feed("https://slow.example.com/rss")
    cancelled = []

    class MixedSource(FakeFeedSource):
        async def fetch_and_parse(self, url):
            if url == slow.url:
                try:
                    await asyncio.sleep(10)
                except asyncio.CancelledError:
                    cancelled.append(url)
                    raise
            return await super().fetch_and_parse(url)

    def broken_upsert(feed_id, entries):
        raise StoreError("disk full")

    monkeypatch.setattr(store, "upsert_items_returning_new", broken_upsert)
    source = MixedSource({good.url: ParsedFeed("Good", [make_entry("a")])})
    fetcher = _fetcher(store, source)

    with pytest.raises(ExceptionGroup) as exc:
        await fetcher.run_cycle()

    assert exc.value.subgroup(StoreError) is not None
    assert cancelled == [slow.url]
    assert not fetcher.cycle_in_progress
