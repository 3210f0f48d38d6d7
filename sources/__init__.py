"""Sources package for SiteCorpus.

Provides seed source list loading.
"""

from .loader import (
    DEFAULT_SOURCES_FILE,
    SourceLoader,
    load_sources
)

__all__ = [
    'DEFAULT_SOURCES_FILE',
    'SourceLoader',
    'load_sources'
]
