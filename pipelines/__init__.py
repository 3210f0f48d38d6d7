"""Pipelines package for SiteCorpus.

Provides fetching, extraction, link discovery and crawl coordination.
The coordinator lives in ``pipelines.crawler`` and is imported from there.
"""

from .errors import SiteCorpusError, FetchError, StoreError, FallbackProviderError
from .fetcher import PageFetcher
from .extractor import ExtractedPage, extract
from .links import LinkReport, discover, build_link_report

__all__ = [
    # Errors
    'SiteCorpusError',
    'FetchError',
    'StoreError',
    'FallbackProviderError',

    # Fetching and extraction
    'PageFetcher',
    'ExtractedPage',
    'extract',

    # Links
    'LinkReport',
    'discover',
    'build_link_report'
]
