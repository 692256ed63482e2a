import time

import numpy as np
import pytest

from conftest import make_entry
from feedrank.errors import StoreError
from feedrank.store import Store


def test_add_and_list_feeds(store):
    a = store.add_feed("https://a.example.com/rss", "A")
    b = store.add_feed("https://b.example.com/rss")
    feeds = store.get_feeds()
    assert {f.id for f in feeds} == {a.id, b.id}
    assert store.get_feed(b.id).title == "https://b.example.com/rss"


def test_duplicate_feed_rejected(store):
    store.add_feed("https://a.example.com/rss")
    with pytest.raises(StoreError):
        store.add_feed("https://a.example.com/rss")


def test_upsert_returns_only_new_ids(store, feed):
    first = store.upsert_items_returning_new(feed.id, [make_entry("g1"), make_entry("g2")])
    assert len(first) == 2
    again = store.upsert_items_returning_new(
        feed.id, [make_entry("g1", title="Updated"), make_entry("g3")]
    )
    assert len(again) == 1
    assert store.count_items() == 3
    assert store.get_item(first[0]).title == "Updated"


def test_same_guid_in_different_feeds_is_distinct(store, feed):
    other = store.add_feed("https://other.example.com/rss")
    store.upsert_items_returning_new(feed.id, [make_entry("g1")])
    assert len(store.upsert_items_returning_new(other.id, [make_entry("g1")])) == 1


def test_embedding_roundtrip_is_float32(store, feed):
    [item_id] = store.upsert_items_returning_new(feed.id, [make_entry("g1")])
    assert store.get_item_embedding(item_id) is None
    store.set_item_embedding(item_id, [0.25, -1.5, 3.0])
    emb = store.get_item_embedding(item_id)
    assert emb.dtype == np.float32
    np.testing.assert_allclose(emb, [0.25, -1.5, 3.0])
    assert store.get_items_without_embeddings(10) == []


def test_items_without_embeddings_newest_first(store, feed):
    ids = store.upsert_items_returning_new(
        feed.id, [make_entry("old", age_hours=10), make_entry("new", age_hours=1)]
    )
    assert store.get_items_without_embeddings(10) == [ids[1], ids[0]]
    assert store.get_items_without_embeddings(1) == [ids[1]]


def test_remove_feed_cascades(store, feed):
    [a, b] = store.upsert_items_returning_new(feed.id, [make_entry("a"), make_entry("b")])
    store.set_item_embedding(a, [1.0, 0.0])
    store.mark_read(a)
    store.record_engagement(a, "open")
    store.set_newsworthiness_score(a, 7, "x")
    cid = store.create_cluster(a, [(a, 1.0), (b, 0.9)])
    assert store.remove_feed(feed.id)
    assert store.count_items() == 0
    assert store.get_item_embedding(a) is None
    assert store.get_newsworthiness_scores([a]) == {}
    assert store.get_cluster_members(cid) == []
    assert store.get_engagement_counts_by_item() == {}


def test_deleting_representative_nulls_it(store, feed):
    [a, b] = store.upsert_items_returning_new(feed.id, [make_entry("a"), make_entry("b")])
    cid = store.create_cluster(a, [(a, 1.0), (b, 0.9)])
    store.conn.execute("DELETE FROM items WHERE id = ?", (a,))
    store.conn.commit()
    cluster = store.get_cluster(cid)
    assert cluster.representative_item_id is None
    assert [m.item_id for m in cluster.members] == [b]


def test_cluster_members_ordered_newest_first(store, feed):
    [old, new] = store.upsert_items_returning_new(
        feed.id, [make_entry("old", age_hours=5), make_entry("new", age_hours=1)]
    )
    cid = store.create_cluster(old, [(old, 1.0), (new, 0.9)])
    members = store.get_cluster_members(cid)
    assert [m.item_id for m in members] == [new, old]
    assert members[0].feed_title == "Example"
    assert store.get_cluster_for_item(new) == cid


def test_cluster_sizes_keyed_by_representative(store, feed):
    ids = store.upsert_items_returning_new(feed.id, [make_entry(f"g{i}") for i in range(3)])
    cid = store.create_cluster(ids[0], [(ids[0], 1.0), (ids[1], 0.9)])
    store.add_to_cluster(cid, ids[2], 0.85)
    store.update_cluster_representative(cid, ids[2])
    assert store.get_cluster_sizes() == {ids[2]: 3}


def test_record_engagement_rejects_unknown_type(store, feed):
    [a] = store.upsert_items_returning_new(feed.id, [make_entry("a")])
    with pytest.raises(StoreError):
        store.record_engagement(a, "like")


def test_engagement_counts_only_positive(store, feed):
    [a, b] = store.upsert_items_returning_new(feed.id, [make_entry("a"), make_entry("b")])
    store.record_engagement(a, "open")
    store.record_engagement(a, "view", duration_ms=1200)
    store.record_engagement(b, "less_like")
    assert store.get_engagement_counts_by_item() == {a: 2}
    assert store.get_engagement_counts_by_item(since=time.time() + 60) == {}


def test_feed_engagement_rate(store, feed):
    ids = store.upsert_items_returning_new(feed.id, [make_entry(f"g{i}") for i in range(4)])
    store.record_engagement(ids[0], "open")
    store.record_engagement(ids[1], "view")
    assert store.get_feed_engagement_rates() == {feed.id: pytest.approx(0.5)}


def test_recent_engagement_embeddings_distinct_and_positive(store, feed):
    [a, b, c] = store.upsert_items_returning_new(
        feed.id, [make_entry("a"), make_entry("b"), make_entry("c")]
    )
    for item_id, vec in ((a, [1.0, 0.0]), (b, [0.0, 1.0]), (c, [1.0, 1.0])):
        store.set_item_embedding(item_id, vec)
    store.record_engagement(a, "open")
    store.record_engagement(a, "view")
    store.record_engagement(b, "more_like")
    store.record_engagement(c, "less_like")
    embeddings = store.get_recent_engagement_embeddings(30)
    assert len(embeddings) == 2


def test_newsworthiness_candidates(store, feed):
    [fresh, stale] = store.upsert_items_returning_new(
        feed.id, [make_entry("fresh", age_hours=2), make_entry("stale", age_hours=30)]
    )
    assert [i for i, _, _ in store.get_items_without_newsworthiness_score(24 * 3600, 5)] == [fresh]
    store.set_newsworthiness_score(fresh, 8, "big")
    assert store.get_items_without_newsworthiness_score(24 * 3600, 5) == []
    assert store.get_newsworthiness_scores([fresh, stale]) == {fresh: 8.0}
    assert store.get_newsworthiness_reason(fresh) == "big"


def test_feed_pool_topic_filters(store, feed):
    ids = store.upsert_items_returning_new(
        feed.id,
        [
            make_entry("t", topic="tech"),
            make_entry("o", topic="other"),
            make_entry("g", topic="general"),
            make_entry("s", topic="sports"),
        ],
    )
    store.conn.execute("UPDATE items SET topic = NULL WHERE id = ?", (ids[3],))
    store.conn.commit()
    assert len(store.get_feed_pool("all", 300)) == 4
    assert [p.id for p in store.get_feed_pool("tech", 300)] == [ids[0]]
    assert {p.id for p in store.get_feed_pool("other", 300)} == {ids[1], ids[2], ids[3]}


def test_feed_pool_read_filter(store, feed):
    [a, b, c] = store.upsert_items_returning_new(
        feed.id, [make_entry("a"), make_entry("b"), make_entry("c")]
    )
    store.mark_read(b)
    store.conn.execute("UPDATE read_state SET read_at = read_at - 100 WHERE item_id = ?", (b,))
    store.mark_read(c)
    store.conn.commit()
    assert [p.id for p in store.get_feed_pool("all", 300, "unread")] == [a]
    read = store.get_feed_pool("all", 300, "read")
    assert [p.id for p in read] == [c, b]
    assert read[0].read_at is not None
    store.mark_unread(c)
    assert {p.id for p in store.get_feed_pool("all", 300, "unread")} == {a, c}
    with pytest.raises(StoreError):
        store.get_feed_pool("all", 300, "archived")


def test_context_manager(tmp_path):
    with Store(tmp_path / "x.db") as s:
        s.add_feed("https://a.example.com/rss")
    with Store(tmp_path / "x.db") as s:
        assert len(s.get_feeds()) == 1
