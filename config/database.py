"""Process-wide document store for SiteCorpus.

The API opens the store on startup and closes it on shutdown; everything
else asks the factory for the adapter instead of opening its own
connection to the same file.
"""

import os
import logging
from typing import Optional
from pydantic import BaseModel, Field

from indexer.sqlite_adapter import SQLiteAdapter

logger = logging.getLogger(__name__)


class DatabaseConfig(BaseModel):
    sqlite_path: str = Field(default="data/sitecorpus.db", description="SQLite database path")

    @classmethod
    def from_env(cls) -> 'DatabaseConfig':
        return cls(sqlite_path=os.getenv('SITECORPUS_DB_PATH', 'data/sitecorpus.db'))

    @classmethod
    def from_settings(cls, settings) -> 'DatabaseConfig':
        return cls(sqlite_path=settings.db_path)


class DatabaseFactory:
    """Owns the single ``SQLiteAdapter`` of the process."""

    _instance: Optional['DatabaseFactory'] = None
    _adapter: Optional[SQLiteAdapter] = None
    _config: Optional[DatabaseConfig] = None

    def __new__(cls) -> 'DatabaseFactory':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def initialize(self, config: Optional[DatabaseConfig] = None):
        """Open the store at ``config.sqlite_path``, replacing any open one."""
        config = config or DatabaseConfig.from_env()
        if self._adapter is not None:
            logger.info(f"Reopening store, previous path was {self._config.sqlite_path}")
            await self.close()

        adapter = SQLiteAdapter(config.sqlite_path)
        await adapter.initialize()
        self._adapter, self._config = adapter, config

    async def close(self):
        if self._adapter:
            await self._adapter.close()
            self._adapter = None

    def get_adapter(self) -> SQLiteAdapter:
        if self._adapter is None:
            raise RuntimeError("Document store not initialized. Call initialize() first.")
        return self._adapter

    def get_config(self) -> DatabaseConfig:
        if self._config is None:
            raise RuntimeError("Document store not initialized. Call initialize() first.")
        return self._config

    def is_initialized(self) -> bool:
        return self._adapter is not None


db_factory = DatabaseFactory()


async def get_db_adapter() -> SQLiteAdapter:
    return db_factory.get_adapter()


async def initialize_database(config: Optional[DatabaseConfig] = None):
    await db_factory.initialize(config)


async def close_database():
    await db_factory.close()
