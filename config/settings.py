"""Runtime settings for SiteCorpus, read from environment variables."""

import os
import logging
from typing import Optional

from pydantic import BaseModel, Field

from pipelines.fetcher import DEFAULT_USER_AGENT

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Application settings."""
    # Storage
    db_path: str = Field(default="data/sitecorpus.db", description="SQLite database path")

    # Fetching
    fetch_timeout: float = Field(default=10.0, gt=0, description="Per-request timeout in seconds")
    user_agent: str = Field(default=DEFAULT_USER_AGENT, description="User-Agent header sent with fetches")
    verify_tls: bool = Field(default=False, description="Verify TLS certificates of sources")

    # Crawling
    crawl_delay: float = Field(default=1.0, ge=0, description="Pause after each fetched entry in seconds")
    max_depth: int = Field(default=3, ge=0, description="Last crawl depth for which a pass runs")
    sources_file: str = Field(default="sources/sources.yaml", description="Seed source list")
    scheduled_source_limit: int = Field(default=100, gt=0, description="Seeds per scheduled run")
    retention_days: int = Field(default=30, gt=0, description="Document retention for cleanup")

    # Generative fallback
    openai_api_key: Optional[str] = Field(default=None, description="Enables the generative fallback when set")
    fallback_model: str = Field(default="gpt-4o-mini", description="Chat model for the generative fallback")

    # Logging
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)
    log_file: Optional[str] = Field(default=None)

    @classmethod
    def from_env(cls) -> 'Settings':
        """Create settings from environment variables."""
        return cls(
            db_path=os.getenv('SITECORPUS_DB_PATH', 'data/sitecorpus.db'),
            fetch_timeout=float(os.getenv('SITECORPUS_FETCH_TIMEOUT', '10')),
            user_agent=os.getenv('SITECORPUS_USER_AGENT', DEFAULT_USER_AGENT),
            verify_tls=_env_bool('SITECORPUS_VERIFY_TLS', False),
            crawl_delay=float(os.getenv('SITECORPUS_CRAWL_DELAY', '1.0')),
            max_depth=int(os.getenv('SITECORPUS_MAX_DEPTH', '3')),
            sources_file=os.getenv('SITECORPUS_SOURCES_FILE', 'sources/sources.yaml'),
            scheduled_source_limit=int(os.getenv('SITECORPUS_SCHEDULED_SOURCE_LIMIT', '100')),
            retention_days=int(os.getenv('SITECORPUS_RETENTION_DAYS', '30')),
            openai_api_key=os.getenv('OPENAI_API_KEY') or None,
            fallback_model=os.getenv('SITECORPUS_FALLBACK_MODEL', 'gpt-4o-mini'),
            log_level=os.getenv('LOG_LEVEL', 'INFO'),
            log_json=_env_bool('LOG_JSON', False),
            log_file=os.getenv('LOG_FILE') or None,
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Process-wide settings, built from the environment on first use."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
        if not _settings.verify_tls:
            logger.info("TLS certificate verification is disabled for source fetches")
    return _settings


def set_settings(settings: Settings) -> None:
    global _settings
    _settings = settings


def reset_settings() -> None:
    global _settings
    _settings = None
