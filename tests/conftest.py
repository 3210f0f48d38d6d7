"""Shared fixtures for the SiteCorpus test suite."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from indexer.models import Document, DocumentType
from indexer.sqlite_adapter import SQLiteAdapter
from pipelines.errors import FetchError

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_page(title: str = "", body: str = "", links: Tuple[str, ...] = ()) -> str:
    """Small HTML page with a title, a main section and anchors."""
    anchors = "".join(f'<a href="{href}">{href}</a>' for href in links)
    return (
        f"<html><head><title>{title}</title></head>"
        f"<body><main><p>{body}</p>{anchors}</main></body></html>"
    )


class StubFetcher:
    """Serves canned markup by URL; unknown URLs fail like a 404."""

    def __init__(self, pages: Optional[Dict[str, str]] = None):
        self.pages = dict(pages or {})
        self.calls: List[Tuple[str, Optional[tuple]]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    async def fetch(self, url: str, credentials: Optional[tuple] = None) -> str:
        self.calls.append((url, credentials))
        if url not in self.pages:
            raise FetchError(url, reason="Not Found", status=404)
        return self.pages[url]

    @property
    def fetched_urls(self) -> List[str]:
        return [url for url, _ in self.calls]


@pytest.fixture
def stub_fetcher_factory():
    return StubFetcher


@pytest.fixture
def page_factory():
    return make_page


@pytest_asyncio.fixture
async def store(tmp_path):
    """Fresh SQLite store in a temporary directory."""
    adapter = SQLiteAdapter(str(tmp_path / "sitecorpus.db"))
    await adapter.initialize()
    yield adapter
    await adapter.close()


@pytest.fixture
def sync_store(tmp_path):
    """Store for synchronous tests (API client, CLI)."""
    adapter = SQLiteAdapter(str(tmp_path / "sitecorpus.db"))
    asyncio.run(adapter.initialize())
    yield adapter
    asyncio.run(adapter.close())


def sample_documents() -> List[Document]:
    return [
        Document(
            url="https://bautzen.example/guide",
            title="Vacation Guide",
            content="Visit Bautzen in summer. The old town sits on a granite plateau above the Spree.",
            type=DocumentType.GENERAL,
            timestamp=NOW - timedelta(days=1),
        ),
        Document(
            url="https://bautzen.example/news/festival",
            title="Town festival announced",
            content="The Bautzen town festival returns to the main square with music and food stalls.",
            type=DocumentType.NEWS,
            timestamp=NOW - timedelta(days=2),
        ),
        Document(
            url="https://bautzen.example/towers",
            title="Towers and gates",
            content="Seventeen towers and gates remain from the medieval fortifications.",
            type=DocumentType.GENERAL,
            timestamp=NOW - timedelta(days=3),
        ),
        Document(
            url="https://bautzen.example/staff/handbook",
            title="Staff handbook",
            content="Opening hours for staff of the tourist office.",
            type=DocumentType.PRIVATE,
            timestamp=NOW - timedelta(days=4),
        ),
    ]


@pytest_asyncio.fixture
async def seeded_store(store):
    """Store holding the sample documents."""
    for document in sample_documents():
        await store.upsert_document(document)
    return store


@pytest.fixture
def sample_docs():
    return sample_documents()
