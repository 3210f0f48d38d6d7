"""Crawl coordinator for SiteCorpus.

Drives Fetcher -> Extractor -> Store -> Link Discoverer over the URL queue.
Work is organised as passes: one pass sweeps every unprocessed queue entry
at a given depth, and a new pass starts only while the previous one
discovered new URLs and the depth bound allows it.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from indexer.models import DataSource, Document, DocumentType, QueueEntry
from indexer.sqlite_adapter import SQLiteAdapter
from observability.logging import get_structured_logger
from observability.prometheus_metrics import (
    record_crawl_pass,
    record_error,
    record_links_discovered,
    record_page_result,
)

from .errors import SiteCorpusError, StoreError
from .extractor import extract
from .fetcher import PageFetcher
from .links import LinkReport, build_link_report, discover

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "No title found"
DEFAULT_CONTENT = "No content found"


class EntryOutcome(str, Enum):
    """Result of handling one queue entry. All three leave it processed."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class PassReport:
    depth: int
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    discovered: int = 0

    def count(self, outcome: EntryOutcome):
        self.processed += 1
        if outcome is EntryOutcome.SUCCESS:
            self.succeeded += 1
        elif outcome is EntryOutcome.FAILED:
            self.failed += 1
        else:
            self.skipped += 1


@dataclass
class CrawlReport:
    passes: List[PassReport] = field(default_factory=list)
    documents: List[Document] = field(default_factory=list)
    stopped_at_depth_limit: bool = False

    @property
    def pass_count(self) -> int:
        return len(self.passes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passes": [vars(p) for p in self.passes],
            "processedCount": sum(p.processed for p in self.passes),
            "fetchedCount": len(self.documents),
            "discovered": sum(p.discovered for p in self.passes),
            "stoppedAtDepthLimit": self.stopped_at_depth_limit,
        }


@dataclass
class IngestReport:
    documents: List[Document] = field(default_factory=list)
    discovered: int = 0
    crawl: Optional[CrawlReport] = None

    @property
    def all_documents(self) -> List[Document]:
        return self.documents + (self.crawl.documents if self.crawl else [])

    def to_dict(self) -> Dict[str, Any]:
        documents = self.all_documents
        return {
            "message": f"Successfully fetched and stored data from {len(documents)} sources",
            "fetchedCount": len(documents),
            "sources": [{"url": d.url, "title": d.title} for d in documents],
            "discovered": self.discovered,
            "crawl": self.crawl.to_dict() if self.crawl else None,
        }


class InFlightUrls:
    """Keyed mutex marking URLs whose fetch-extract-store sequence is running.

    Shared by every coordinator in the process, so concurrent passes or
    ingestions never work on the same URL at once. A lock is dropped as
    soon as nobody holds or waits for it.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    def __contains__(self, url: str) -> bool:
        return url in self._locks

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, url: str) -> AsyncIterator[None]:
        lock = self._locks.get(url)
        if lock is None:
            lock = self._locks[url] = asyncio.Lock()
        self._holders[url] = self._holders.get(url, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[url] -= 1
            if not self._holders[url]:
                del self._holders[url]
                del self._locks[url]


in_flight_urls = InFlightUrls()


def link_description(doc_type: DocumentType) -> str:
    return f"Internal link extracted from {DocumentType(doc_type).value} content"


class CrawlCoordinator:
    """Sequential, depth-bounded crawler over the queue held in the store."""

    def __init__(self,
                 store: SQLiteAdapter,
                 fetcher: PageFetcher,
                 max_depth: int = 3,
                 crawl_delay: float = 1.0,
                 in_flight: Optional[InFlightUrls] = None):
        """Initialize coordinator.

        Args:
            store: Document/queue store
            fetcher: Object with ``async fetch(url, credentials) -> str``
            max_depth: Last depth for which a pass is run (passes 0..max_depth)
            crawl_delay: Pause in seconds after each fetched entry
            in_flight: URL lock registry; the process-wide one by default
        """
        self.store = store
        self.fetcher = fetcher
        self.max_depth = max_depth
        self.crawl_delay = crawl_delay
        self.log = get_structured_logger(__name__)
        self.in_flight = in_flight if in_flight is not None else in_flight_urls

    async def _pause(self):
        if self.crawl_delay > 0:
            await asyncio.sleep(self.crawl_delay)

    async def fetch_document(self, source: DataSource) -> Tuple[Document, str]:
        """Fetch and extract one source without storing it."""
        raw_html = await self.fetcher.fetch(source.url, source.credentials)
        page = extract(raw_html, source.selectors)
        document = Document(
            url=source.url,
            title=page.title or DEFAULT_TITLE,
            content=page.content or DEFAULT_CONTENT,
            raw_html=raw_html,
            type=source.type,
            metadata=page.metadata,
        )
        return document, raw_html

    async def _mark_processed(self, url: str):
        try:
            await self.store.mark_processed(url)
        except StoreError as e:
            self.log.error(f"Could not mark {url} processed: {e}", url=url)
            record_error("StoreError", "crawler")

    async def _record_links(self, url: str, raw_html: str, doc_type: DocumentType) -> Tuple[int, int]:
        """Upsert links found on a page; returns (links found, new entries)."""
        links = discover(url, raw_html)
        created = 0
        for link in sorted(links):
            try:
                if await self.store.upsert_discovered_url(link, doc_type, link_description(doc_type)):
                    created += 1
            except StoreError as e:
                self.log.warning(f"Could not store discovered URL: {e}", url=link)
                record_error("StoreError", "crawler")
        record_links_discovered(created)
        return len(links), created

    async def _process_entry(self, entry: QueueEntry, depth: int) -> Tuple[EntryOutcome, Optional[Document], int]:
        log = self.log.bind(depth=depth, url=entry.url)
        async with self.in_flight.hold(entry.url):
            try:
                existing = await self.store.get_document_by_url(entry.url)
            except Exception as e:
                log.error(f"Store lookup failed: {e}")
                existing = None

            if existing is not None:
                log.info(f"Skipping {entry.url} - already has fetched data")
                await self._mark_processed(entry.url)
                return EntryOutcome.SKIPPED, None, 0

            source = DataSource(
                url=entry.url,
                username=entry.username,
                password=entry.password,
                type=entry.type,
                description=entry.description,
            )
            try:
                document, raw_html = await self.fetch_document(source)
                stored = await self.store.upsert_document(document)
            except SiteCorpusError as e:
                log.warning(f"Error processing URL {entry.url}: {e}")
                record_error(type(e).__name__, "crawler")
                await self._mark_processed(entry.url)
                return EntryOutcome.FAILED, None, 0
            except Exception as e:
                log.exception(f"Unexpected error processing URL {entry.url}: {e}")
                record_error(type(e).__name__, "crawler")
                await self._mark_processed(entry.url)
                return EntryOutcome.FAILED, None, 0

            await self._mark_processed(entry.url)

        try:
            _, created = await self._record_links(entry.url, raw_html, entry.type)
        except Exception as e:
            log.exception(f"Link discovery failed for {entry.url}: {e}")
            created = 0

        log.info(f"Successfully processed: {entry.url}")
        return EntryOutcome.SUCCESS, stored, created

    async def run_pass(self, doc_type: Optional[DocumentType] = None, depth: int = 0) -> Tuple[PassReport, List[Document]]:
        """Sweep every currently unprocessed queue entry once."""
        report = PassReport(depth=depth)
        documents: List[Document] = []

        entries = await self.store.get_unprocessed_entries(doc_type)
        self.log.info(f"Found {len(entries)} unprocessed URLs to process", depth=depth)
        record_crawl_pass()

        for entry in entries:
            outcome, document, created = await self._process_entry(entry, depth)
            report.count(outcome)
            report.discovered += created
            record_page_result(outcome.value)
            if document is not None:
                documents.append(document)
            if outcome is not EntryOutcome.SKIPPED:
                await self._pause()

        return report, documents

    async def process_queue(self, doc_type: Optional[DocumentType] = None, start_depth: int = 0) -> CrawlReport:
        """Run passes from ``start_depth`` until nothing new is discovered or the depth bound is hit."""
        crawl = CrawlReport()
        depth = start_depth
        while True:
            if depth > self.max_depth:
                self.log.info(f"Stopping recursion at depth {depth} to prevent infinite loops", depth=depth)
                crawl.stopped_at_depth_limit = True
                break

            report, documents = await self.run_pass(doc_type, depth)
            crawl.passes.append(report)
            crawl.documents.extend(documents)

            if report.discovered == 0:
                break
            self.log.info(f"Processing {report.discovered} newly discovered URLs", depth=depth + 1)
            depth += 1

        return crawl

    async def enqueue_sources(self, sources: Sequence[DataSource]) -> List[QueueEntry]:
        """Register seed sources in the queue without fetching them."""
        entries = []
        for source in sources:
            try:
                entries.append(await self.store.register_source(source))
            except StoreError as e:
                self.log.error(f"Could not register source: {e}", url=source.url)
        return entries

    async def ingest_sources(self, sources: Sequence[DataSource], follow_links: bool = True) -> IngestReport:
        """Fetch, store and link-scan each seed source, then crawl what was found."""
        await self.enqueue_sources(sources)

        ingest = IngestReport()
        links_found = 0
        for i, source in enumerate(sources, start=1):
            log = self.log.bind(depth=0, url=source.url)
            log.debug(f"Fetching source {i}/{len(sources)}")
            async with self.in_flight.hold(source.url):
                try:
                    document, raw_html = await self.fetch_document(source)
                    stored = await self.store.upsert_document(document)
                except SiteCorpusError as e:
                    log.warning(f"Failed to ingest {source.url}: {e}")
                    record_error(type(e).__name__, "crawler")
                    record_page_result(EntryOutcome.FAILED.value)
                    await self._mark_processed(source.url)
                    await self._pause()
                    continue
                except Exception as e:
                    log.exception(f"Unexpected error ingesting {source.url}: {e}")
                    record_error(type(e).__name__, "crawler")
                    record_page_result(EntryOutcome.FAILED.value)
                    await self._mark_processed(source.url)
                    await self._pause()
                    continue
                await self._mark_processed(source.url)

            record_page_result(EntryOutcome.SUCCESS.value)
            ingest.documents.append(stored)
            try:
                found, created = await self._record_links(source.url, raw_html, source.type)
            except Exception as e:
                log.exception(f"Link discovery failed for {source.url}: {e}")
                found, created = 0, 0
            links_found += found
            ingest.discovered += created
            await self._pause()

        if links_found and follow_links:
            self.log.info(f"Processing newly discovered URLs from {len(sources)} initial sources", depth=0)
            ingest.crawl = await self.process_queue()

        return ingest

    async def debug_link_extraction(self, url: str) -> LinkReport:
        """Fetch ``url`` and classify every anchor on it, for operators."""
        self.log.info(f"Debugging link extraction for: {url}", url=url)
        try:
            raw_html = await self.fetcher.fetch(url)
        except SiteCorpusError as e:
            return LinkReport(errors=[str(e)])
        try:
            return build_link_report(url, raw_html)
        except ValueError as e:
            return LinkReport(errors=[f"Invalid URL: {url} ({e})"])


async def run_scheduled_ingestion(coordinator: CrawlCoordinator,
                                  store: SQLiteAdapter,
                                  limit: int = 100) -> Optional[IngestReport]:
    """Re-ingest every known queue entry (up to ``limit``) as a seed source."""
    try:
        logger.info("Starting scheduled data fetch...")
        # Oldest registrations first
        entries = list(reversed(await store.list_queue_entries()))
        if not entries:
            logger.info("No stored URLs to fetch")
            return None
        sources = [
            DataSource(
                url=entry.url,
                username=entry.username,
                password=entry.password,
                type=entry.type,
                description=entry.description,
            )
            for entry in entries[:limit]
        ]
        report = await coordinator.ingest_sources(sources)
        logger.info(f"Scheduled data fetch completed: {len(report.all_documents)} documents stored")
        return report
    except Exception as e:
        logger.error(f"Scheduled data fetch failed: {e}", exc_info=True)
        record_error(type(e).__name__, "scheduler")
        return None
