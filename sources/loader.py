"""Seed source loader for SiteCorpus.

Loads and validates seed source lists from YAML files of the form::

    sources:
      - url: https://example.org/news
        type: news
        description: Town news
        selectors:
          content: article .body
"""

import yaml
from pathlib import Path
from typing import Dict, List, Optional, Union
import logging

from pydantic import ValidationError

from indexer.models import DataSource, DocumentType

logger = logging.getLogger(__name__)

DEFAULT_SOURCES_FILE = Path(__file__).parent / "sources.yaml"


class SourceLoader:
    """Loads seed sources from a YAML file."""

    def __init__(self, sources_file: Optional[Union[str, Path]] = None):
        """Initialize source loader.

        Args:
            sources_file: YAML file with a top-level ``sources`` list.
                          Defaults to ``sources.yaml`` beside this module.
        """
        self.sources_file = Path(sources_file) if sources_file else DEFAULT_SOURCES_FILE
        self._cache: Optional[List[DataSource]] = None
        self._last_modified: float = 0.0

    def load_sources(self) -> List[DataSource]:
        """Load every valid source; invalid entries are logged and skipped.

        Returns:
            List of DataSource objects, empty when the file is missing or unreadable
        """
        if not self.sources_file.exists():
            logger.warning(f"Sources file not found: {self.sources_file}")
            return []

        current_mtime = self.sources_file.stat().st_mtime
        if self._cache is not None and self._last_modified >= current_mtime:
            return list(self._cache)

        try:
            with open(self.sources_file, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Failed to parse YAML file {self.sources_file}: {e}")
            return []
        except OSError as e:
            logger.error(f"Could not read {self.sources_file}: {e}")
            return []

        if not isinstance(data, dict) or not isinstance(data.get('sources'), list):
            logger.error(f"No 'sources' list in {self.sources_file}")
            return []

        sources = []
        for i, item in enumerate(data['sources']):
            if not isinstance(item, dict):
                logger.warning(f"Skipping source #{i} in {self.sources_file}: not a mapping")
                continue
            try:
                sources.append(DataSource.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Invalid source #{i} in {self.sources_file}: {e}")

        self._cache = sources
        self._last_modified = current_mtime
        logger.info(f"Loaded {len(sources)} sources from {self.sources_file}")
        return list(sources)

    def sources_by_type(self) -> Dict[DocumentType, List[DataSource]]:
        grouped: Dict[DocumentType, List[DataSource]] = {}
        for source in self.load_sources():
            grouped.setdefault(source.type, []).append(source)
        return grouped

    def reload_cache(self):
        """Clear cache to force a re-read of the file."""
        self._cache = None
        self._last_modified = 0.0
        logger.info("Source list cache cleared")


def load_sources(sources_file: Optional[Union[str, Path]] = None) -> List[DataSource]:
    """Convenience function to load a source list."""
    return SourceLoader(sources_file).load_sources()
