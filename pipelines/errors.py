"""Exception types shared by the ingestion and search pipelines."""

from typing import Optional


class SiteCorpusError(Exception):
    """Base class for all SiteCorpus errors."""


class FetchError(SiteCorpusError):
    """Transport failure, timeout or non-2xx response while fetching a URL."""

    def __init__(self, url: str, reason: str = "", status: Optional[int] = None):
        self.url = url
        self.reason = reason
        self.status = status
        message = f"Failed to fetch data from {url}"
        if status is not None:
            message += f" (HTTP {status})"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class StoreError(SiteCorpusError):
    """A write to the document/queue store failed."""

    def __init__(self, message: str, url: Optional[str] = None):
        self.url = url
        super().__init__(f"{message} [{url}]" if url else message)


class FallbackProviderError(SiteCorpusError):
    """The generative fallback provider failed or returned an unusable answer."""
