from __future__ import annotations

import calendar
import html
import logging
import re
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional, Protocol

import feedparser
import httpx
from bs4 import BeautifulSoup
from bs4.element import Tag

from feedrank.constants import DESCRIPTION_MAX_CHARS, FEED_HTTP_TIMEOUT, FEED_USER_AGENT
from feedrank.errors import FeedFetchError
from feedrank.models import FeedEntry, ParsedFeed
from feedrank.url_utils import resolve_url

logger = logging.getLogger(__name__)

IMAGE_EXT = re.compile(r"\.(jpg|jpeg|png|gif|webp|avif)(\?|$)", re.IGNORECASE)
TRACKING_OR_TINY = re.compile(
    r"(pixel|tracking|analytics|1x1|spacer|blank\.(gif|png)|data:image/gif)",
    re.IGNORECASE,
)


class FeedSource(Protocol):
    async def fetch_and_parse(self, url: str) -> ParsedFeed: ...


def _strip_html(txt: str) -> str:
    if not txt:
        return ""
    clean = BeautifulSoup(txt, "html.parser").get_text(" ", strip=True)
    clean = html.unescape(clean)
    clean = re.sub(r"\s+([.,;:!?])", r"\1", clean)
    clean = re.sub(r"\s+", " ", clean).strip()
    return clean


def _parse_date(text: str) -> Optional[float]:
    if not text:
        return None
    try:
        dt = parsedate_to_datetime(text)
        if dt is not None:
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.timestamp()
    except (TypeError, ValueError):
        pass
    try:
        iso = text.strip().replace("Z", "+00:00")
        dt = datetime.fromisoformat(iso)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    except ValueError:
        return None


def _entry_timestamp(entry: Any, now: float) -> float:
    for key in ("published_parsed", "updated_parsed", "created_parsed"):
        parsed_time = entry.get(key)
        if parsed_time:
            return float(calendar.timegm(parsed_time))
    date_text = entry.get("published") or entry.get("updated") or ""
    return _parse_date(str(date_text)) or now


def _entry_content_html(entry: Any) -> str:
    content_list = entry.get("content") or []
    if isinstance(content_list, list) and content_list:
        value = content_list[0].get("value")
        if isinstance(value, str):
            return value
    return ""


def _entry_description(entry: Any) -> str:
    raw = _entry_content_html(entry) or entry.get("summary") or entry.get("description") or ""
    return _strip_html(str(raw))[:DESCRIPTION_MAX_CHARS]


def clean_thumbnail_url(url: object) -> Optional[str]:
    """Reject data: URLs and obvious tracking pixels."""
    if not url or not isinstance(url, str):
        return None
    u = url.strip()
    if not u or u.startswith("data:"):
        return None
    if TRACKING_OR_TINY.search(u):
        return None
    return u


def _dimension(tag: Tag, attr: str) -> int:
    value = tag.get(attr)
    if isinstance(value, str):
        digits = re.match(r"\d+", value.strip())
        if digits:
            return int(digits.group(0))
    return 0


def first_image_from_html(markup: str) -> Optional[str]:
    """Largest declared <img> in the markup, else the first usable one."""
    if not markup or "<img" not in markup.lower():
        return None
    soup = BeautifulSoup(markup, "html.parser")
    best: Optional[str] = None
    best_pixels = 0
    for img in soup.find_all("img"):
        if not isinstance(img, Tag):
            continue
        url = clean_thumbnail_url(img.get("src"))
        if not url:
            continue
        pixels = _dimension(img, "width") * _dimension(img, "height")
        if pixels > best_pixels or (best is None and pixels == 0):
            best = url
            best_pixels = pixels or 1
    return best


def _url_from_media(media: object) -> Optional[str]:
    if not media:
        return None
    entries = media if isinstance(media, list) else [media]
    for m in entries:
        if not isinstance(m, dict):
            continue
        medium = str(m.get("medium") or "")
        mime = str(m.get("type") or "")
        if medium and medium != "image":
            continue
        if mime and not mime.startswith("image/"):
            continue
        url = clean_thumbnail_url(m.get("url") or m.get("href"))
        if url:
            return url
    return None


def extract_thumbnail(entry: Any) -> Optional[str]:
    """Pick a thumbnail for a feedparser entry.

    Order: image enclosure, Media RSS content/thumbnail, iTunes episode
    image, Atom ``rel=enclosure`` image link, first image in the content
    HTML, first image in the summary HTML. Images found in HTML resolve
    against the entry link.
    """
    for enc in entry.get("enclosures") or []:
        href = enc.get("href") or enc.get("url")
        if not href:
            continue
        mime = str(enc.get("type") or "").lower()
        if mime.startswith("image/") or (not mime and IMAGE_EXT.search(href)):
            url = clean_thumbnail_url(href)
            if url:
                return url

    for key in ("media_content", "media_thumbnail"):
        url = _url_from_media(entry.get(key))
        if url:
            return url

    image = entry.get("image")
    if isinstance(image, dict):
        url = clean_thumbnail_url(image.get("href") or image.get("url"))
        if url:
            return url

    for link in entry.get("links") or []:
        rel = str(link.get("rel") or "").lower()
        mime = str(link.get("type") or "").lower()
        if "enclosure" in rel and mime.startswith("image/"):
            url = clean_thumbnail_url(link.get("href"))
            if url:
                return url

    base = entry.get("link")
    from_content = first_image_from_html(_entry_content_html(entry))
    if from_content:
        return resolve_url(from_content, base)

    summary = entry.get("summary") or entry.get("description") or ""
    from_summary = first_image_from_html(str(summary))
    if from_summary:
        return resolve_url(from_summary, base)

    return None


def parse_feed_document(document: bytes | str, url: str) -> ParsedFeed:
    parsed = feedparser.parse(document)
    if parsed.bozo and not parsed.entries and not parsed.feed.get("title"):
        raise FeedFetchError(url, f"unparseable feed: {parsed.get('bozo_exception')}")

    now = time.time()
    items: list[FeedEntry] = []
    for entry in parsed.entries:
        link = str(entry.get("link") or entry.get("id") or "").strip()
        guid = str(entry.get("id") or link).strip()
        if not guid:
            continue
        items.append(
            FeedEntry(
                guid=guid,
                link=link,
                title=str(entry.get("title") or "").strip(),
                description=_entry_description(entry),
                published_at=_entry_timestamp(entry, now),
                thumbnail_url=extract_thumbnail(entry),
            )
        )

    title = parsed.feed.get("title") or parsed.feed.get("link") or url
    return ParsedFeed(title=str(title), items=items)


class HttpFeedSource:
    """Fetches feeds over HTTP and parses them with feedparser."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._owns_client = client is None
        self.client: httpx.AsyncClient = client or httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": FEED_USER_AGENT},
            timeout=httpx.Timeout(FEED_HTTP_TIMEOUT),
        )

    async def fetch_and_parse(self, url: str) -> ParsedFeed:
        try:
            resp = await self.client.get(url)
        except httpx.HTTPError as e:
            raise FeedFetchError(url, f"request failed: {e}") from e
        if resp.status_code != 200:
            raise FeedFetchError(url, f"HTTP {resp.status_code}")
        if not resp.content:
            raise FeedFetchError(url, "empty response")
        return parse_feed_document(resp.content, url)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> HttpFeedSource:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
