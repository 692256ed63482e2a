"""Exception types shared across the feedrank engine."""

from __future__ import annotations


class FeedrankError(Exception):
    """Base class for feedrank errors."""


class FeedFetchError(FeedrankError):
    """A feed could not be fetched or parsed. Treated as zero items."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class ProviderError(FeedrankError):
    """An embedding or generation provider call failed."""


class ProviderRetryableError(ProviderError):
    """Transient provider failure (transport error, 408/429/5xx)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StoreError(FeedrankError):
    """Invalid arguments passed to a store operation."""
