import time
from typing import Optional

import pytest

from feedrank.errors import FeedFetchError
from feedrank.models import FeedEntry, ParsedFeed
from feedrank.store import Store


class FakeEmbedder:
    """Returns a fixed vector for any text containing a registered keyword."""

    def __init__(self, vectors: Optional[dict[str, list[float]]] = None, available: bool = True):
        self.vectors = vectors or {}
        self.available = available
        self.calls: list[str] = []

    async def is_available(self) -> bool:
        return self.available

    async def embed(self, text: str) -> Optional[list[float]]:
        self.calls.append(text)
        for key, vec in self.vectors.items():
            if key in text:
                return list(vec)
        return None


class FakeGenerator:
    def __init__(self, responses: Optional[list[Optional[str]]] = None, available: bool = True):
        self.responses = list(responses or [])
        self.available = available
        self.prompts: list[str] = []

    async def is_available(self) -> bool:
        return self.available

    async def generate(self, prompt: str) -> Optional[str]:
        self.prompts.append(prompt)
        if not self.responses:
            return None
        return self.responses.pop(0)


class FakeFeedSource:
    """Serves canned ParsedFeeds per URL; an Exception value is raised instead."""

    def __init__(self, feeds: Optional[dict[str, object]] = None):
        self.feeds = feeds or {}
        self.calls: list[str] = []

    async def fetch_and_parse(self, url: str) -> ParsedFeed:
        self.calls.append(url)
        result = self.feeds.get(url)
        if result is None:
            raise FeedFetchError(url, "HTTP 404")
        if isinstance(result, Exception):
            raise result
        return result


def make_entry(guid: str, title: str = "", description: str = "", age_hours: float = 1.0, **kw) -> FeedEntry:
    return FeedEntry(
        guid=guid,
        link=kw.pop("link", f"https://example.com/{guid}"),
        title=title or f"Title {guid}",
        description=description,
        published_at=kw.pop("published_at", time.time() - age_hours * 3600),
        **kw,
    )


@pytest.fixture
def store(tmp_path):
    s = Store(tmp_path / "feedrank.db")
    yield s
    s.close()


@pytest.fixture
def feed(store):
    return store.add_feed("https://example.com/rss", "Example")


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def feed_source():
    return FakeFeedSource()
