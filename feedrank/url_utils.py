from __future__ import annotations

from urllib.parse import urljoin, urlsplit, urlunsplit

from url_normalize import url_normalize

from feedrank.constants import DEFAULT_HOST_BUCKET


def normalize_url(url: str) -> str:
    """Canonical form of a subscription URL (scheme/host case, no fragment)."""
    url = (url or "").strip()
    if not url:
        return ""
    try:
        normalized = url_normalize(url)
    except Exception:
        normalized = url

    parts = urlsplit(normalized)
    if not parts.scheme or not parts.netloc:
        return normalized
    # Feed servers can be picky about trailing slashes, so the path is kept.
    return urlunsplit((parts.scheme, parts.netloc, parts.path, parts.query, ""))


def host_key(url: str) -> str:
    """Hostname used for per-host rate limiting; unparsable URLs share one bucket."""
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return DEFAULT_HOST_BUCKET
    return host or DEFAULT_HOST_BUCKET


def resolve_url(url: str, base: str | None) -> str:
    if not url or not base or url.startswith(("http://", "https://")):
        return url
    try:
        return urljoin(base, url)
    except ValueError:
        return url
