"""Configuration module for SiteCorpus.

Provides runtime settings and the database factory.
"""

from .settings import Settings, get_settings, set_settings, reset_settings
from .database import (
    DatabaseConfig,
    DatabaseFactory,
    db_factory,
    get_db_adapter,
    initialize_database,
    close_database
)

__all__ = [
    'Settings',
    'get_settings',
    'set_settings',
    'reset_settings',
    'DatabaseConfig',
    'DatabaseFactory',
    'db_factory',
    'get_db_adapter',
    'initialize_database',
    'close_database'
]
