"""Keyword-based topic classification for feed items."""

from __future__ import annotations

from feedrank.constants import TOPIC_OTHER

TOPIC_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("sports", (
        "sport", "football", "soccer", "basketball", "baseball", "nfl", "nba",
        "mlb", "game", "match", "score", "league", "championship", "olympics",
        "tennis", "golf", "hockey",
    )),
    ("business", (
        "stock", "market", "trading", "earnings", "economy", "business",
        "finance", "invest", "wall street", "fed", "inflation", "recession",
        "ceo", "merger", "ipo",
    )),
    ("tech", (
        "tech", "software", "apple", "google", "microsoft", "ai", "android",
        "iphone", "startup", "coding", "developer", "app", "digital", "gadget",
    )),
    ("science", (
        "science", "research", "study", "climate", "space", "nasa", "health",
        "medical", "vaccine", "physics", "biology", "discovery",
    )),
    ("entertainment", (
        "movie", "film", "music", "celebrity", "tv", "netflix", "album", "band",
        "actor", "oscar", "grammy", "entertainment",
    )),
    ("news", (
        "news", "breaking", "politics", "election", "government", "world",
        "today", "reuters", "ap ", "bbc", "cnn", "reported", "said",
    )),
)

# Fixed list for UI tabs ("all" and "for_you" are handled separately)
TOPIC_TABS = ["news", "business", "sports", "tech", "entertainment", "science", "other"]


def keyword_counts(title: str | None, description: str | None) -> dict[str, int]:
    text = f"{title or ''} {description or ''}".lower()
    return {
        topic: sum(1 for word in words if word in text)
        for topic, words in TOPIC_KEYWORDS
    }


def classify_topic(title: str | None, description: str | None) -> str:
    """Pick the topic with the most keyword hits; first rule wins ties, 'other' if none."""
    best_topic = TOPIC_OTHER
    best_count = 0
    for topic, count in keyword_counts(title, description).items():
        if count > best_count:
            best_topic, best_count = topic, count
    return best_topic
