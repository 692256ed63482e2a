"""Typed data models for feed ingestion, clustering and ranking."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, TypedDict


class PoolItemDict(TypedDict):
    """Serialized PoolItem payload for API boundaries."""

    id: int
    feed_id: int
    feed_title: str
    guid: str
    title: str
    link: str
    description: str
    published_at: float
    thumbnail_url: Optional[str]
    topic: Optional[str]
    read_at: Optional[float]


class RankedPageDict(TypedDict):
    items: list[PoolItemDict]
    has_more: bool


class PendingStatusDict(TypedDict):
    new_item_count: int
    has_changes: bool
    cycle_in_progress: bool
    last_cycle_at: Optional[float]


class ApplyResultDict(TypedDict):
    applied: int


@dataclass
class Feed:
    """A subscribed RSS/Atom feed."""

    id: int
    url: str
    title: str
    added_at: float
    last_fetched_at: Optional[float] = None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "added_at": self.added_at,
            "last_fetched_at": self.last_fetched_at,
        }


@dataclass
class FeedEntry:
    """An item as returned by the feed source, before persistence."""

    guid: str
    link: str
    title: str
    description: str
    published_at: float
    thumbnail_url: Optional[str] = None
    topic: Optional[str] = None


@dataclass
class ParsedFeed:
    title: str
    items: list[FeedEntry] = field(default_factory=list)


@dataclass
class Item:
    """A persisted feed item."""

    id: int
    feed_id: int
    guid: str
    link: str
    title: str
    description: str
    published_at: float
    created_at: float
    thumbnail_url: Optional[str] = None
    topic: Optional[str] = None


@dataclass
class PoolItem:
    """Item joined with its feed title and read state; the unit the ranker returns."""

    id: int
    feed_id: int
    feed_title: str
    guid: str
    title: str
    link: str
    description: str
    published_at: float
    thumbnail_url: Optional[str] = None
    topic: Optional[str] = None
    read_at: Optional[float] = None

    def to_dict(self) -> PoolItemDict:
        return {
            "id": self.id,
            "feed_id": self.feed_id,
            "feed_title": self.feed_title,
            "guid": self.guid,
            "title": self.title,
            "link": self.link,
            "description": self.description,
            "published_at": self.published_at,
            "thumbnail_url": self.thumbnail_url,
            "topic": self.topic,
            "read_at": self.read_at,
        }


@dataclass
class ClusterMember:
    item_id: int
    similarity: float
    title: str
    feed_title: str
    link: str
    published_at: float
    thumbnail_url: Optional[str] = None


@dataclass
class StoryCluster:
    id: int
    representative_item_id: Optional[int]
    created_at: float
    updated_at: float
    members: list[ClusterMember] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "representative_item_id": self.representative_item_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "members": [
                {
                    "item_id": m.item_id,
                    "similarity": m.similarity,
                    "title": m.title,
                    "feed_title": m.feed_title,
                    "link": m.link,
                    "published_at": m.published_at,
                    "thumbnail_url": m.thumbnail_url,
                }
                for m in self.members
            ],
        }


@dataclass
class ScoreResult:
    """Parsed newsworthiness rating."""

    score: float
    reason: str = ""


@dataclass
class ClusteringResult:
    processed: int = 0
    clustered: int = 0


@dataclass
class ScoringResult:
    scored: int = 0


@dataclass
class RankedPage:
    items: list[PoolItem]
    has_more: bool

    def to_dict(self) -> RankedPageDict:
        return {
            "items": [item.to_dict() for item in self.items],
            "has_more": self.has_more,
        }


@dataclass
class PendingStatus:
    new_item_count: int
    has_changes: bool
    cycle_in_progress: bool
    last_cycle_at: Optional[float]

    def to_dict(self) -> PendingStatusDict:
        return {
            "new_item_count": self.new_item_count,
            "has_changes": self.has_changes,
            "cycle_in_progress": self.cycle_in_progress,
            "last_cycle_at": self.last_cycle_at,
        }
