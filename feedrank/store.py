"""SQLite persistence for feeds, items, engagement, embeddings, clusters and scores.

Schema:
    feeds                  one row per subscription (url is unique)
    items                  UNIQUE(feed_id, guid); topic from the classifier
    read_state             item_id -> read_at
    engagement_events      append-only open/view/more_like/less_like log
    item_embeddings        item_id -> float32 BLOB
    story_clusters         representative_item_id is nulled when the item goes
    cluster_members        PK(cluster_id, item_id), indexed by item_id
    newsworthiness_scores  item_id -> score, reason, scored_at

Deleting a feed cascades to its items and everything hanging off them.
Timestamps are REAL Unix epoch seconds.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from feedrank.constants import (
    EVENT_TYPES,
    POSITIVE_EVENT_TYPES,
    READ_FILTER_READ,
    READ_FILTERS,
    TOPIC_ALL,
    TOPIC_GENERAL,
    TOPIC_OTHER,
)
from feedrank.errors import StoreError
from feedrank.models import ClusterMember, Feed, FeedEntry, Item, PoolItem, StoryCluster

logger = logging.getLogger(__name__)


def _embedding_to_blob(embedding: Sequence[float] | NDArray[np.float32]) -> bytes:
    return np.asarray(embedding, dtype=np.float32).tobytes()


def _blob_to_embedding(blob: bytes) -> NDArray[np.float32]:
    return np.frombuffer(blob, dtype=np.float32)


def _placeholders(values: Sequence[object]) -> str:
    return ",".join("?" * len(values))


class Store:
    """SQLite store used by the background pipeline and the ranker.

    Example:
        >>> with Store("feedrank.db") as store:
        ...     feed = store.add_feed("https://example.com/rss")
        ...     new_ids = store.upsert_items_returning_new(feed.id, entries)
    """

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS feeds (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        url TEXT NOT NULL UNIQUE,
        title TEXT NOT NULL DEFAULT '',
        added_at REAL NOT NULL,
        last_fetched_at REAL
    );

    CREATE TABLE IF NOT EXISTS items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        feed_id INTEGER NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
        guid TEXT NOT NULL,
        link TEXT NOT NULL,
        title TEXT NOT NULL DEFAULT '',
        description TEXT NOT NULL DEFAULT '',
        published_at REAL NOT NULL,
        thumbnail_url TEXT,
        created_at REAL NOT NULL,
        topic TEXT DEFAULT 'general',
        UNIQUE(feed_id, guid)
    );
    CREATE INDEX IF NOT EXISTS idx_items_feed_published ON items(feed_id, published_at DESC);
    CREATE INDEX IF NOT EXISTS idx_items_published ON items(published_at DESC);
    CREATE INDEX IF NOT EXISTS idx_items_topic ON items(topic);

    CREATE TABLE IF NOT EXISTS read_state (
        item_id INTEGER PRIMARY KEY REFERENCES items(id) ON DELETE CASCADE,
        read_at REAL NOT NULL
    );

    CREATE TABLE IF NOT EXISTS engagement_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        item_id INTEGER NOT NULL REFERENCES items(id) ON DELETE CASCADE,
        event_type TEXT NOT NULL,
        duration_ms INTEGER,
        at REAL NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_engagement_item ON engagement_events(item_id);
    CREATE INDEX IF NOT EXISTS idx_engagement_type ON engagement_events(event_type);

    CREATE TABLE IF NOT EXISTS item_embeddings (
        item_id INTEGER PRIMARY KEY REFERENCES items(id) ON DELETE CASCADE,
        embedding BLOB NOT NULL
    );

    CREATE TABLE IF NOT EXISTS story_clusters (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        representative_item_id INTEGER REFERENCES items(id) ON DELETE SET NULL,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    );

    CREATE TABLE IF NOT EXISTS cluster_members (
        cluster_id INTEGER NOT NULL REFERENCES story_clusters(id) ON DELETE CASCADE,
        item_id INTEGER NOT NULL REFERENCES items(id) ON DELETE CASCADE,
        similarity REAL NOT NULL DEFAULT 0,
        PRIMARY KEY (cluster_id, item_id)
    );
    CREATE INDEX IF NOT EXISTS idx_cluster_members_item ON cluster_members(item_id);

    CREATE TABLE IF NOT EXISTS newsworthiness_scores (
        item_id INTEGER PRIMARY KEY REFERENCES items(id) ON DELETE CASCADE,
        score REAL NOT NULL,
        reason TEXT,
        scored_at REAL NOT NULL
    );
    """

    path: Path
    conn: sqlite3.Connection

    def __init__(self, path: Path | str):
        self.path = Path(path)
        if str(path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        # The scheduler and HTTP handlers share one connection on the event loop thread;
        # uvicorn's threadpool may touch it from other threads.
        self.conn = sqlite3.connect(str(path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self.conn.executescript(self.SCHEMA)
        self.conn.commit()
        logger.debug("Store initialized | path=%s", self.path)

    # --- feeds ---

    def add_feed(self, url: str, title: str = "") -> Feed:
        url = url.strip()
        if not url:
            raise StoreError("feed url must not be empty")
        try:
            cur = self.conn.execute(
                "INSERT INTO feeds (url, title, added_at) VALUES (?, ?, ?)",
                (url, title or url, time.time()),
            )
        except sqlite3.IntegrityError as e:
            raise StoreError(f"already subscribed: {url}") from e
        self.conn.commit()
        feed = self.get_feed(int(cur.lastrowid or 0))
        assert feed is not None
        logger.info("Feed added | id=%d url=%s", feed.id, url)
        return feed

    def remove_feed(self, feed_id: int) -> bool:
        cur = self.conn.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
        self.conn.commit()
        return cur.rowcount > 0

    def get_feeds(self) -> list[Feed]:
        rows = self.conn.execute(
            "SELECT id, url, title, added_at, last_fetched_at FROM feeds ORDER BY added_at DESC, id DESC"
        ).fetchall()
        return [Feed(**dict(row)) for row in rows]

    def get_feed(self, feed_id: int) -> Optional[Feed]:
        row = self.conn.execute(
            "SELECT id, url, title, added_at, last_fetched_at FROM feeds WHERE id = ?",
            (feed_id,),
        ).fetchone()
        return Feed(**dict(row)) if row else None

    def set_feed_title(self, feed_id: int, title: str) -> None:
        self.conn.execute("UPDATE feeds SET title = ? WHERE id = ?", (title, feed_id))
        self.conn.commit()

    def set_feed_last_fetched(self, feed_id: int, fetched_at: float | None = None) -> None:
        self.conn.execute(
            "UPDATE feeds SET last_fetched_at = ? WHERE id = ?",
            (fetched_at if fetched_at is not None else time.time(), feed_id),
        )
        self.conn.commit()

    # --- items ---

    def upsert_items_returning_new(self, feed_id: int, entries: Iterable[FeedEntry]) -> list[int]:
        """Insert or refresh entries keyed on (feed_id, guid).

        Returns ids of rows that did not exist before this call. Existing rows
        get their mutable fields (link, title, description, published_at,
        thumbnail, topic) updated.
        """
        now = time.time()
        new_ids: list[int] = []
        for entry in entries:
            existing = self.conn.execute(
                "SELECT id FROM items WHERE feed_id = ? AND guid = ?",
                (feed_id, entry.guid),
            ).fetchone()
            self.conn.execute(
                """
                INSERT INTO items
                (feed_id, guid, link, title, description, published_at, thumbnail_url, created_at, topic)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(feed_id, guid) DO UPDATE SET
                    link = excluded.link,
                    title = excluded.title,
                    description = excluded.description,
                    published_at = excluded.published_at,
                    thumbnail_url = excluded.thumbnail_url,
                    topic = excluded.topic
                """,
                (
                    feed_id,
                    entry.guid,
                    entry.link,
                    entry.title,
                    entry.description,
                    entry.published_at,
                    entry.thumbnail_url,
                    now,
                    entry.topic or TOPIC_GENERAL,
                ),
            )
            if existing is None:
                row = self.conn.execute(
                    "SELECT id FROM items WHERE feed_id = ? AND guid = ?",
                    (feed_id, entry.guid),
                ).fetchone()
                new_ids.append(int(row["id"]))
        self.conn.commit()
        return new_ids

    def get_item(self, item_id: int) -> Optional[Item]:
        row = self.conn.execute(
            """
            SELECT id, feed_id, guid, link, title, description, published_at,
                   created_at, thumbnail_url, topic
            FROM items WHERE id = ?
            """,
            (item_id,),
        ).fetchone()
        return Item(**dict(row)) if row else None

    def get_item_text(self, item_id: int) -> Optional[tuple[str, str]]:
        row = self.conn.execute(
            "SELECT title, description FROM items WHERE id = ?", (item_id,)
        ).fetchone()
        return (row["title"] or "", row["description"] or "") if row else None

    def count_items(self) -> int:
        return int(self.conn.execute("SELECT COUNT(*) FROM items").fetchone()[0])

    # --- embeddings ---

    def get_item_embedding(self, item_id: int) -> Optional[NDArray[np.float32]]:
        row = self.conn.execute(
            "SELECT embedding FROM item_embeddings WHERE item_id = ?", (item_id,)
        ).fetchone()
        return _blob_to_embedding(row["embedding"]) if row else None

    def set_item_embedding(self, item_id: int, embedding: Sequence[float] | NDArray[np.float32]) -> None:
        self.conn.execute(
            """
            INSERT INTO item_embeddings (item_id, embedding) VALUES (?, ?)
            ON CONFLICT(item_id) DO UPDATE SET embedding = excluded.embedding
            """,
            (item_id, _embedding_to_blob(embedding)),
        )
        self.conn.commit()

    def get_items_without_embeddings(self, limit: int) -> list[int]:
        rows = self.conn.execute(
            """
            SELECT i.id FROM items i
            LEFT JOIN item_embeddings e ON e.item_id = i.id
            WHERE e.item_id IS NULL
            ORDER BY i.published_at DESC, i.id DESC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [int(r["id"]) for r in rows]

    def get_recent_items_with_embeddings(
        self, max_age: float, limit: int
    ) -> list[tuple[int, NDArray[np.float32]]]:
        cutoff = time.time() - max_age
        rows = self.conn.execute(
            """
            SELECT i.id, e.embedding FROM items i
            JOIN item_embeddings e ON e.item_id = i.id
            WHERE i.published_at > ?
            ORDER BY i.published_at DESC, i.id DESC
            LIMIT ?
            """,
            (cutoff, limit),
        ).fetchall()
        return [(int(r["id"]), _blob_to_embedding(r["embedding"])) for r in rows]

    # --- clusters ---

    def get_unclustered_item_ids(self, max_age: float, limit: int) -> list[int]:
        """Recent embedded items that are not in any cluster, newest first."""
        cutoff = time.time() - max_age
        rows = self.conn.execute(
            """
            SELECT i.id FROM items i
            JOIN item_embeddings e ON e.item_id = i.id
            LEFT JOIN cluster_members cm ON cm.item_id = i.id
            WHERE i.published_at > ? AND cm.item_id IS NULL
            ORDER BY i.published_at DESC, i.id DESC
            LIMIT ?
            """,
            (cutoff, limit),
        ).fetchall()
        return [int(r["id"]) for r in rows]

    def get_cluster_for_item(self, item_id: int) -> Optional[int]:
        row = self.conn.execute(
            "SELECT cluster_id FROM cluster_members WHERE item_id = ? LIMIT 1", (item_id,)
        ).fetchone()
        return int(row["cluster_id"]) if row else None

    def create_cluster(self, representative_item_id: int, members: Sequence[tuple[int, float]]) -> int:
        now = time.time()
        cur = self.conn.execute(
            "INSERT INTO story_clusters (representative_item_id, created_at, updated_at) VALUES (?, ?, ?)",
            (representative_item_id, now, now),
        )
        cluster_id = int(cur.lastrowid or 0)
        self.conn.executemany(
            "INSERT OR IGNORE INTO cluster_members (cluster_id, item_id, similarity) VALUES (?, ?, ?)",
            [(cluster_id, item_id, sim) for item_id, sim in members],
        )
        self.conn.commit()
        return cluster_id

    def add_to_cluster(self, cluster_id: int, item_id: int, similarity: float) -> None:
        self.conn.execute(
            "INSERT OR IGNORE INTO cluster_members (cluster_id, item_id, similarity) VALUES (?, ?, ?)",
            (cluster_id, item_id, similarity),
        )
        self.conn.execute(
            "UPDATE story_clusters SET updated_at = ? WHERE id = ?", (time.time(), cluster_id)
        )
        self.conn.commit()

    def update_cluster_representative(self, cluster_id: int, item_id: int) -> None:
        self.conn.execute(
            "UPDATE story_clusters SET representative_item_id = ?, updated_at = ? WHERE id = ?",
            (item_id, time.time(), cluster_id),
        )
        self.conn.commit()

    def get_cluster_members(self, cluster_id: int) -> list[ClusterMember]:
        rows = self.conn.execute(
            """
            SELECT cm.item_id, cm.similarity, i.title, f.title AS feed_title,
                   i.link, i.published_at, i.thumbnail_url
            FROM cluster_members cm
            JOIN items i ON i.id = cm.item_id
            JOIN feeds f ON f.id = i.feed_id
            WHERE cm.cluster_id = ?
            ORDER BY i.published_at DESC, i.id DESC
            """,
            (cluster_id,),
        ).fetchall()
        return [ClusterMember(**dict(r)) for r in rows]

    def get_cluster(self, cluster_id: int) -> Optional[StoryCluster]:
        row = self.conn.execute(
            "SELECT id, representative_item_id, created_at, updated_at FROM story_clusters WHERE id = ?",
            (cluster_id,),
        ).fetchone()
        if row is None:
            return None
        return StoryCluster(**dict(row), members=self.get_cluster_members(cluster_id))

    def get_cluster_sizes(self) -> dict[int, int]:
        """Member count per cluster, keyed by the cluster's representative item id."""
        rows = self.conn.execute(
            """
            SELECT sc.representative_item_id AS item_id, COUNT(cm.item_id) AS cnt
            FROM story_clusters sc
            JOIN cluster_members cm ON cm.cluster_id = sc.id
            WHERE sc.representative_item_id IS NOT NULL
            GROUP BY sc.id
            """
        ).fetchall()
        sizes: dict[int, int] = {}
        for r in rows:
            item_id = int(r["item_id"])
            sizes[item_id] = max(sizes.get(item_id, 0), int(r["cnt"]))
        return sizes

    # --- engagement ---

    def record_engagement(
        self, item_id: int, event_type: str, duration_ms: int | None = None
    ) -> None:
        if event_type not in EVENT_TYPES:
            raise StoreError(f"unknown engagement type: {event_type!r}")
        self.conn.execute(
            "INSERT INTO engagement_events (item_id, event_type, duration_ms, at) VALUES (?, ?, ?, ?)",
            (item_id, event_type, duration_ms, time.time()),
        )
        self.conn.commit()

    def get_engagement_counts_by_item(self, since: float = 0.0) -> dict[int, int]:
        """Positive (open/view/more_like) event counts per item."""
        types = sorted(POSITIVE_EVENT_TYPES)
        rows = self.conn.execute(
            f"""
            SELECT item_id, COUNT(*) AS cnt FROM engagement_events
            WHERE event_type IN ({_placeholders(types)}) AND at >= ?
            GROUP BY item_id
            """,
            (*types, since),
        ).fetchall()
        return {int(r["item_id"]): int(r["cnt"]) for r in rows}

    def get_feed_engagement_rates(self) -> dict[int, float]:
        """Engagement events per item for each feed that has any engagement."""
        rows = self.conn.execute(
            """
            SELECT i.feed_id,
                   COUNT(*) AS events,
                   (SELECT COUNT(*) FROM items i2 WHERE i2.feed_id = i.feed_id) AS items
            FROM engagement_events e
            JOIN items i ON i.id = e.item_id
            GROUP BY i.feed_id
            """
        ).fetchall()
        return {
            int(r["feed_id"]): int(r["events"]) / max(1, int(r["items"]))
            for r in rows
        }

    def get_recent_engagement_embeddings(self, limit: int) -> list[NDArray[np.float32]]:
        """Embeddings of the most recently positively-engaged distinct items."""
        types = sorted(POSITIVE_EVENT_TYPES)
        rows = self.conn.execute(
            f"""
            SELECT e.item_id, ie.embedding, MAX(e.at) AS last_at
            FROM engagement_events e
            JOIN item_embeddings ie ON ie.item_id = e.item_id
            WHERE e.event_type IN ({_placeholders(types)})
            GROUP BY e.item_id
            ORDER BY last_at DESC, e.item_id DESC
            LIMIT ?
            """,
            (*types, limit),
        ).fetchall()
        return [_blob_to_embedding(r["embedding"]) for r in rows]

    # --- read state ---

    def mark_read(self, item_id: int) -> None:
        self.conn.execute(
            """
            INSERT INTO read_state (item_id, read_at) VALUES (?, ?)
            ON CONFLICT(item_id) DO UPDATE SET read_at = excluded.read_at
            """,
            (item_id, time.time()),
        )
        self.conn.commit()

    def mark_unread(self, item_id: int) -> None:
        self.conn.execute("DELETE FROM read_state WHERE item_id = ?", (item_id,))
        self.conn.commit()

    # --- newsworthiness ---

    def set_newsworthiness_score(self, item_id: int, score: float, reason: str = "") -> None:
        self.conn.execute(
            """
            INSERT INTO newsworthiness_scores (item_id, score, reason, scored_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(item_id) DO UPDATE SET
                score = excluded.score, reason = excluded.reason, scored_at = excluded.scored_at
            """,
            (item_id, score, reason, time.time()),
        )
        self.conn.commit()

    def get_newsworthiness_scores(self, item_ids: Sequence[int]) -> dict[int, float]:
        if not item_ids:
            return {}
        ids = list(item_ids)
        rows = self.conn.execute(
            f"SELECT item_id, score FROM newsworthiness_scores WHERE item_id IN ({_placeholders(ids)})",
            ids,
        ).fetchall()
        return {int(r["item_id"]): float(r["score"]) for r in rows}

    def get_newsworthiness_reason(self, item_id: int) -> Optional[str]:
        row = self.conn.execute(
            "SELECT reason FROM newsworthiness_scores WHERE item_id = ?", (item_id,)
        ).fetchone()
        return row["reason"] if row else None

    def get_items_without_newsworthiness_score(
        self, max_age: float, limit: int
    ) -> list[tuple[int, str, str]]:
        cutoff = time.time() - max_age
        rows = self.conn.execute(
            """
            SELECT i.id, i.title, i.description FROM items i
            LEFT JOIN newsworthiness_scores ns ON ns.item_id = i.id
            WHERE i.published_at > ? AND ns.item_id IS NULL
            ORDER BY i.published_at DESC, i.id DESC
            LIMIT ?
            """,
            (cutoff, limit),
        ).fetchall()
        return [(int(r["id"]), r["title"] or "", r["description"] or "") for r in rows]

    # --- ranking pool ---

    def get_feed_pool(
        self, topic: str | None, pool_size: int, read_filter: str = "unread"
    ) -> list[PoolItem]:
        """Unread (newest first) or read (most recently read first) items for a topic.

        ``all`` (or empty) applies no topic filter; ``other`` matches
        general/other/NULL topics; anything else is an exact match.
        """
        if read_filter not in READ_FILTERS:
            raise StoreError(f"unknown read filter: {read_filter!r}")
        clauses: list[str] = []
        params: list[object] = []
        if topic and topic != TOPIC_ALL:
            if topic == TOPIC_OTHER:
                clauses.append("(i.topic IN (?, ?) OR i.topic IS NULL)")
                params.extend([TOPIC_GENERAL, TOPIC_OTHER])
            else:
                clauses.append("i.topic = ?")
                params.append(topic)
        if read_filter == READ_FILTER_READ:
            clauses.append("r.read_at IS NOT NULL")
            order = "r.read_at DESC, i.id DESC"
        else:
            clauses.append("r.read_at IS NULL")
            order = "i.published_at DESC, i.id DESC"
        where = " AND ".join(clauses)
        rows = self.conn.execute(
            f"""
            SELECT i.id, i.feed_id, f.title AS feed_title, i.guid, i.title, i.link,
                   i.description, i.published_at, i.thumbnail_url, i.topic,
                   r.read_at
            FROM items i
            JOIN feeds f ON f.id = i.feed_id
            LEFT JOIN read_state r ON r.item_id = i.id
            WHERE {where}
            ORDER BY {order}
            LIMIT ?
            """,
            (*params, pool_size),
        ).fetchall()
        return [PoolItem(**dict(r)) for r in rows]

    # --- lifecycle ---

    def close(self) -> None:
        self.conn.close()
        logger.debug("Store closed | path=%s", self.path)

    def __enter__(self) -> Store:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
