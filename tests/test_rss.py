import calendar

import pytest
import respx
from httpx import ConnectError, Response

from feedrank.errors import FeedFetchError
from feedrank.rss import (
    HttpFeedSource,
    clean_thumbnail_url,
    extract_thumbnail,
    first_image_from_html,
    parse_feed_document,
)

RSS = """<?xml version="1.0"?>
<rss version="2.0" xmlns:media="http://search.yahoo.com/mrss/">
  <channel>
    <title>Example News</title>
    <link>https://example.com/</link>
    <item>
      <title>Post One</title>
      <link>https://example.com/post-1</link>
      <guid>urn:post-1</guid>
      <pubDate>Mon, 02 Feb 2026 12:00:00 GMT</pubDate>
      <description><![CDATA[<p>Hello <b>world</b>.</p>]]></description>
      <enclosure url="https://cdn.example.com/one.jpg" type="image/jpeg" length="1"/>
    </item>
    <item>
      <title>Post Two</title>
      <link>https://example.com/post-2</link>
      <description>No guid here</description>
      <media:thumbnail url="https://cdn.example.com/two.png"/>
    </item>
  </channel>
</rss>
"""


def test_parse_rss_document():
    parsed = parse_feed_document(RSS, "https://example.com/rss")
    assert parsed.title == "Example News"
    assert len(parsed.items) == 2

    one, two = parsed.items
    assert one.guid == "urn:post-1"
    assert one.link == "https://example.com/post-1"
    assert one.description == "Hello world."
    assert one.published_at == calendar.timegm((2026, 2, 2, 12, 0, 0))
    assert one.thumbnail_url == "https://cdn.example.com/one.jpg"

    # guid falls back to the link
    assert two.guid == "https://example.com/post-2"
    assert two.thumbnail_url == "https://cdn.example.com/two.png"
    assert two.published_at > 0


def test_description_is_capped():
    long_desc = "word " * 3000
    xml = RSS.replace("No guid here", long_desc)
    parsed = parse_feed_document(xml, "https://example.com/rss")
    assert len(parsed.items[1].description) == 5000


def test_parse_atom_entries():
    xml = """<?xml version="1.0" encoding="utf-8"?>
    <feed xmlns="http://www.w3.org/2005/Atom">
      <title>Atom Blog</title>
      <entry>
        <title>Atom Post</title>
        <id>tag:example.com,2026:1</id>
        <link href="https://example.com/atom-1"/>
        <updated>2026-02-03T08:30:00Z</updated>
        <content type="html">&lt;p&gt;Body &lt;img src="/img/a.jpg" width="600" height="400"&gt;&lt;/p&gt;</content>
      </entry>
    </feed>
    """
    parsed = parse_feed_document(xml, "https://example.com/atom")
    assert parsed.title == "Atom Blog"
    [entry] = parsed.items
    assert entry.guid == "tag:example.com,2026:1"
    assert entry.description == "Body"
    assert entry.published_at == calendar.timegm((2026, 2, 3, 8, 30, 0))
    assert entry.thumbnail_url == "https://example.com/img/a.jpg"


def test_feed_title_falls_back_to_url():
    xml = "<rss version='2.0'><channel><item><title>x</title><link>https://e.com/1</link></item></channel></rss>"
    assert parse_feed_document(xml, "https://e.com/rss").title == "https://e.com/rss"


def test_unparseable_document_raises():
    with pytest.raises(FeedFetchError):
        parse_feed_document(b"\x00\x01 not xml at all <<<", "https://e.com/rss")


@pytest.mark.parametrize(
    "url,expected",
    [
        ("https://cdn.example.com/a.jpg", "https://cdn.example.com/a.jpg"),
        ("  https://cdn.example.com/a.jpg  ", "https://cdn.example.com/a.jpg"),
        ("data:image/png;base64,AAAA", None),
        ("https://t.example.com/pixel.gif", None),
        ("https://example.com/1x1.png", None),
        ("", None),
        (None, None),
    ],
)
def test_clean_thumbnail_url(url, expected):
    assert clean_thumbnail_url(url) == expected


def test_first_image_prefers_largest():
    html = (
        '<img src="https://e.com/small.jpg" width="10" height="10">'
        '<img src="https://e.com/tracking/pixel.gif">'
        '<img src="https://e.com/big.jpg" width="800" height="600">'
    )
    assert first_image_from_html(html) == "https://e.com/big.jpg"
    assert first_image_from_html('<p><img src="https://e.com/x.jpg"></p>') == "https://e.com/x.jpg"
    assert first_image_from_html("<p>no images</p>") is None


def test_thumbnail_from_summary_resolves_relative():
    entry = dict(
        link="https://example.com/posts/1",
        summary='<img src="../img/cover.webp">',
    )
    assert extract_thumbnail(entry) == "https://example.com/img/cover.webp"


def test_thumbnail_prefers_enclosure_over_html():
    entry = dict(
        link="https://example.com/posts/1",
        enclosures=[{"href": "https://cdn.example.com/e.png", "type": "image/png"}],
        summary='<img src="https://example.com/inline.jpg">',
    )
    assert extract_thumbnail(entry) == "https://cdn.example.com/e.png"


def test_thumbnail_skips_audio_enclosure():
    entry = dict(
        link="https://example.com/ep/1",
        enclosures=[{"href": "https://cdn.example.com/ep.mp3", "type": "audio/mpeg"}],
        image={"href": "https://cdn.example.com/art.jpg"},
    )
    assert extract_thumbnail(entry) == "https://cdn.example.com/art.jpg"


@pytest.mark.asyncio
@respx.mock
async def test_http_feed_source_fetches_and_parses():
    respx.get("https://example.com/rss").mock(return_value=Response(200, text=RSS))
    async with HttpFeedSource() as source:
        parsed = await source.fetch_and_parse("https://example.com/rss")
    assert parsed.title == "Example News"
    assert len(parsed.items) == 2


@pytest.mark.asyncio
@respx.mock
async def test_http_feed_source_non_200_raises():
    respx.get("https://example.com/rss").mock(return_value=Response(503))
    async with HttpFeedSource() as source:
        with pytest.raises(FeedFetchError) as exc:
            await source.fetch_and_parse("https://example.com/rss")
    assert "503" in str(exc.value)


@pytest.mark.asyncio
@respx.mock
async def test_http_feed_source_transport_error_raises():
    respx.get("https://example.com/rss").mock(side_effect=ConnectError("boom"))
    async with HttpFeedSource() as source:
        with pytest.raises(FeedFetchError):
            await source.fetch_and_parse("https://example.com/rss")
