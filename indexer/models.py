"""Data model for stored documents and the URL processing queue."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DocumentType(str, Enum):
    """Content class of a source and of everything discovered from it."""
    NEWS = "news"
    PRIVATE = "private"
    GENERAL = "general"


class CamelModel(BaseModel):
    """Base model serialised with camelCase keys for the operator API."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DocumentMetadata(CamelModel):
    author: Optional[str] = None
    published_date: Optional[str] = None
    tags: Optional[List[str]] = None
    summary: Optional[str] = None


class Document(CamelModel):
    """Extracted representation of one fetched page.

    At most one active document exists per ``url``; a re-fetch updates the
    stored row in place and advances ``last_updated``.
    """
    id: Optional[int] = None
    url: str
    title: str
    content: str
    raw_html: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)
    type: DocumentType = DocumentType.GENERAL
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)
    last_updated: datetime = Field(default_factory=utc_now)
    is_active: bool = True

    def public_dict(self) -> dict:
        """Serialise for API responses (raw markup is internal)."""
        return self.model_dump(mode="json", by_alias=True, exclude={"raw_html"})


class QueueEntry(CamelModel):
    """A URL known to the system, pending or completed processing."""
    id: Optional[int] = None
    url: str
    username: Optional[str] = None
    password: Optional[str] = None
    description: Optional[str] = None
    type: DocumentType = DocumentType.GENERAL
    is_processed: bool = False
    last_processed: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)

    def public_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude={"password"})


class SourceSelectors(CamelModel):
    """Per-field CSS selectors overriding the extraction heuristics."""
    title: Optional[str] = None
    content: Optional[str] = None
    author: Optional[str] = None
    date: Optional[str] = None
    tags: Optional[str] = None


class DataSource(CamelModel):
    """A seed source submitted for ingestion."""
    url: str
    username: Optional[str] = None
    password: Optional[str] = None
    type: DocumentType = DocumentType.GENERAL
    description: Optional[str] = None
    selectors: Optional[SourceSelectors] = None

    @property
    def credentials(self) -> Optional[tuple]:
        if self.username and self.password:
            return (self.username, self.password)
        return None


class QueueStats(CamelModel):
    total: int = 0
    processed: int = 0
    unprocessed: int = 0
    by_type: Dict[str, int] = Field(default_factory=dict)


class DatabaseStats(CamelModel):
    total_documents: int = 0
    oldest_document: Optional[datetime] = None
    newest_document: Optional[datetime] = None
