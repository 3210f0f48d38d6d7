"""Tests for the crawl coordinator: passes, depth bound, failure isolation."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from indexer.models import DataSource, Document, DocumentType, QueueEntry
from indexer.query import DocumentFilter
from indexer.search import SearchEngine
from indexer.ranking import SearchStage
from pipelines.crawler import (
    CrawlCoordinator,
    EntryOutcome,
    InFlightUrls,
    in_flight_urls,
    link_description,
    run_scheduled_ingestion,
)
from pipelines.errors import FetchError, StoreError

SEED = "https://bautzen.example/guide"
EVENTS = "https://bautzen.example/events"


class ChainFetcher:
    """Every page /n links to /n+1, so the graph never runs out of new URLs."""

    def __init__(self):
        self.fetched = []

    async def fetch(self, url, credentials=None):
        self.fetched.append(url)
        n = int(url.rsplit("/", 1)[1])
        return f'<html><head><title>Page {n}</title></head><body><a href="/{n + 1}">next</a></body></html>'


@pytest.fixture
def guide_fetcher(stub_fetcher_factory, page_factory):
    return stub_fetcher_factory({
        SEED: page_factory("Vacation Guide", "Visit Bautzen in summer", ("/events",)),
    })


class TestCrawlPass:

    @pytest.mark.asyncio
    async def test_end_to_end_single_pass(self, store, guide_fetcher):
        await store.add_queue_entry(QueueEntry(url=SEED))
        coordinator = CrawlCoordinator(store, guide_fetcher, crawl_delay=0)

        report, documents = await coordinator.run_pass(depth=0)

        assert report.processed == 1
        assert report.succeeded == 1
        assert report.discovered == 1
        active = await store.find_documents(DocumentFilter())
        assert [d.title for d in active] == ["Vacation Guide"]
        assert [d.url for d in documents] == [SEED]

        seed = await store.get_queue_entry_by_url(SEED)
        events = await store.get_queue_entry_by_url(EVENTS)
        assert seed.is_processed is True
        assert seed.last_processed is not None
        assert events.is_processed is False
        assert events.description == link_description(DocumentType.GENERAL)

        outcome = await SearchEngine(store).search("Bautzen")
        assert outcome.stage is SearchStage.SEMANTIC
        assert [d.title for d in outcome.documents] == ["Vacation Guide"]

    @pytest.mark.asyncio
    async def test_discovered_links_inherit_type(self, store, guide_fetcher):
        await store.add_queue_entry(QueueEntry(url=SEED, type=DocumentType.NEWS))
        coordinator = CrawlCoordinator(store, guide_fetcher, crawl_delay=0)

        await coordinator.run_pass()

        assert (await store.get_document_by_url(SEED)).type is DocumentType.NEWS
        assert (await store.get_queue_entry_by_url(EVENTS)).type is DocumentType.NEWS

    @pytest.mark.asyncio
    async def test_existing_document_is_skipped(self, store, guide_fetcher):
        await store.upsert_document(Document(url=SEED, title="Stored", content="Stored text"))
        await store.add_queue_entry(QueueEntry(url=SEED))
        coordinator = CrawlCoordinator(store, guide_fetcher, crawl_delay=0)

        report, documents = await coordinator.run_pass()

        assert report.skipped == 1
        assert documents == []
        assert guide_fetcher.calls == []
        assert (await store.get_queue_entry_by_url(SEED)).is_processed is True
        assert (await store.get_document_by_url(SEED)).title == "Stored"

    @pytest.mark.asyncio
    async def test_fetch_failure_marks_processed_and_continues(self, store, guide_fetcher):
        missing = "https://bautzen.example/missing"
        await store.add_queue_entry(QueueEntry(url=missing))
        await store.add_queue_entry(QueueEntry(url=SEED))
        coordinator = CrawlCoordinator(store, guide_fetcher, crawl_delay=0)

        report, _ = await coordinator.run_pass()

        assert report.failed == 1
        assert report.succeeded == 1
        assert (await store.get_queue_entry_by_url(missing)).is_processed is True
        assert await store.get_document_by_url(missing) is None
        assert guide_fetcher.fetched_urls == [missing, SEED]

    @pytest.mark.asyncio
    async def test_store_failure_marks_processed(self, store, guide_fetcher):
        await store.add_queue_entry(QueueEntry(url=SEED))
        coordinator = CrawlCoordinator(store, guide_fetcher, crawl_delay=0)

        with patch.object(store, "upsert_document", AsyncMock(side_effect=StoreError("disk full", url=SEED))):
            report, documents = await coordinator.run_pass()

        assert report.failed == 1
        assert documents == []
        assert (await store.get_queue_entry_by_url(SEED)).is_processed is True
        assert await store.get_queue_entry_by_url(EVENTS) is None

    @pytest.mark.asyncio
    async def test_unexpected_error_is_isolated(self, store, guide_fetcher):
        await store.add_queue_entry(QueueEntry(url=SEED))
        coordinator = CrawlCoordinator(store, guide_fetcher, crawl_delay=0)

        with patch("pipelines.crawler.extract", side_effect=RuntimeError("parser crashed")):
            report, _ = await coordinator.run_pass()

        assert report.failed == 1
        assert (await store.get_queue_entry_by_url(SEED)).is_processed is True

    @pytest.mark.asyncio
    async def test_empty_page_gets_placeholders(self, store, stub_fetcher_factory):
        url = "https://bautzen.example/blank"
        fetcher = stub_fetcher_factory({url: "<html><body></body></html>"})
        await store.add_queue_entry(QueueEntry(url=url))

        await CrawlCoordinator(store, fetcher, crawl_delay=0).run_pass()

        document = await store.get_document_by_url(url)
        assert document.title == "No title found"
        assert document.content == "No content found"

    @pytest.mark.asyncio
    async def test_credentials_are_sent(self, store, guide_fetcher):
        await store.add_queue_entry(QueueEntry(url=SEED, username="reader", password="secret"))
        await CrawlCoordinator(store, guide_fetcher, crawl_delay=0).run_pass()
        assert guide_fetcher.calls == [(SEED, ("reader", "secret"))]

    @pytest.mark.asyncio
    async def test_delay_after_each_fetched_entry(self, store, guide_fetcher):
        await store.upsert_document(Document(url="https://bautzen.example/known", title="K", content="K"))
        await store.add_queue_entry(QueueEntry(url="https://bautzen.example/known"))
        await store.add_queue_entry(QueueEntry(url=SEED))
        await store.add_queue_entry(QueueEntry(url="https://bautzen.example/missing"))
        coordinator = CrawlCoordinator(store, guide_fetcher, crawl_delay=1.0)

        with patch("pipelines.crawler.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await coordinator.run_pass()

        # Skipped entries are not fetched and do not wait
        assert sleep.await_count == 2
        sleep.assert_awaited_with(1.0)


class TestDepthBound:

    @pytest.mark.asyncio
    async def test_unbounded_chain_stops_after_four_passes(self, store):
        fetcher = ChainFetcher()
        await store.add_queue_entry(QueueEntry(url="https://chain.example/0"))
        coordinator = CrawlCoordinator(store, fetcher, crawl_delay=0)

        crawl = await coordinator.process_queue()

        assert crawl.pass_count == 4
        assert [p.depth for p in crawl.passes] == [0, 1, 2, 3]
        assert crawl.stopped_at_depth_limit is True
        assert fetcher.fetched == [f"https://chain.example/{n}" for n in range(4)]
        assert [e.url for e in await store.get_unprocessed_entries()] == ["https://chain.example/4"]

    @pytest.mark.asyncio
    async def test_fully_connected_graph(self, store, stub_fetcher_factory, page_factory):
        urls = [f"https://mesh.example/p{i}" for i in range(12)]
        pages = {
            url: page_factory(f"Page {i}", "Mesh page with links to every other page",
                              tuple(f"/p{j}" for j in range(12) if j != i))
            for i, url in enumerate(urls)
        }
        fetcher = stub_fetcher_factory(pages)
        await store.add_queue_entry(QueueEntry(url=urls[0]))
        coordinator = CrawlCoordinator(store, fetcher, crawl_delay=0)

        crawl = await coordinator.process_queue()

        assert crawl.pass_count <= 4
        assert len(await store.find_documents(DocumentFilter(), limit=50)) == 12
        assert (await store.get_queue_stats()).total == 12
        assert sorted(fetcher.fetched_urls) == sorted(urls)

    @pytest.mark.asyncio
    async def test_no_recursion_without_new_links(self, store, stub_fetcher_factory, page_factory):
        fetcher = stub_fetcher_factory({SEED: page_factory("Vacation Guide", "No links on this page at all")})
        await store.add_queue_entry(QueueEntry(url=SEED))

        crawl = await CrawlCoordinator(store, fetcher, crawl_delay=0).process_queue()

        assert crawl.pass_count == 1
        assert crawl.stopped_at_depth_limit is False

    @pytest.mark.asyncio
    async def test_max_depth_is_configurable(self, store):
        await store.add_queue_entry(QueueEntry(url="https://chain.example/0"))
        crawl = await CrawlCoordinator(store, ChainFetcher(), max_depth=1, crawl_delay=0).process_queue()
        assert crawl.pass_count == 2

    @pytest.mark.asyncio
    async def test_type_filter_limits_pass(self, store, stub_fetcher_factory, page_factory):
        news = "https://bautzen.example/news"
        fetcher = stub_fetcher_factory({
            SEED: page_factory("Guide", "General page"),
            news: page_factory("News", "News page"),
        })
        await store.add_queue_entry(QueueEntry(url=SEED))
        await store.add_queue_entry(QueueEntry(url=news, type=DocumentType.NEWS))

        crawl = await CrawlCoordinator(store, fetcher, crawl_delay=0).process_queue(DocumentType.NEWS)

        assert fetcher.fetched_urls == [news]
        assert crawl.to_dict()["processedCount"] == 1
        assert (await store.get_queue_entry_by_url(SEED)).is_processed is False


class TestIngestion:

    @pytest.mark.asyncio
    async def test_ingest_sources_follows_links(self, store, stub_fetcher_factory, page_factory):
        fetcher = stub_fetcher_factory({
            SEED: page_factory("Vacation Guide", "Visit Bautzen in summer", ("/events",)),
            EVENTS: page_factory("Events", "Concerts on the main square every Friday evening"),
        })
        coordinator = CrawlCoordinator(store, fetcher, crawl_delay=0)

        report = await coordinator.ingest_sources([DataSource(url=SEED, description="Guide")])

        assert [d.url for d in report.all_documents] == [SEED, EVENTS]
        assert report.discovered == 1
        assert report.crawl.passes[0].depth == 0
        data = report.to_dict()
        assert data["fetchedCount"] == 2
        assert data["sources"][0] == {"url": SEED, "title": "Vacation Guide"}
        assert (await store.get_queue_stats()).unprocessed == 0

    @pytest.mark.asyncio
    async def test_follow_up_crawl_gets_full_depth(self, store):
        fetcher = ChainFetcher()
        coordinator = CrawlCoordinator(store, fetcher, crawl_delay=0)

        report = await coordinator.ingest_sources([DataSource(url="https://chain.example/0")])

        assert [p.depth for p in report.crawl.passes] == [0, 1, 2, 3]
        assert report.crawl.stopped_at_depth_limit is True
        assert fetcher.fetched == [f"https://chain.example/{n}" for n in range(5)]

    @pytest.mark.asyncio
    async def test_ingest_without_following(self, store, guide_fetcher):
        report = await CrawlCoordinator(store, guide_fetcher, crawl_delay=0).ingest_sources(
            [DataSource(url=SEED)], follow_links=False
        )
        assert report.crawl is None
        assert (await store.get_queue_entry_by_url(EVENTS)).is_processed is False

    @pytest.mark.asyncio
    async def test_reingest_updates_existing_document(self, store, stub_fetcher_factory, page_factory):
        fetcher = stub_fetcher_factory({SEED: page_factory("Vacation Guide", "Visit Bautzen in summer")})
        coordinator = CrawlCoordinator(store, fetcher, crawl_delay=0)

        await coordinator.ingest_sources([DataSource(url=SEED)])
        fetcher.pages[SEED] = page_factory("Vacation Guide 2024", "Visit Bautzen in summer")
        await coordinator.ingest_sources([DataSource(url=SEED)])

        assert await store.count_documents() == 1
        assert (await store.get_document_by_url(SEED)).title == "Vacation Guide 2024"

    @pytest.mark.asyncio
    async def test_failed_seed_is_reported_and_marked(self, store, stub_fetcher_factory):
        coordinator = CrawlCoordinator(store, stub_fetcher_factory(), crawl_delay=0)
        report = await coordinator.ingest_sources([DataSource(url=SEED)])

        assert report.all_documents == []
        assert report.crawl is None
        assert (await store.get_queue_entry_by_url(SEED)).is_processed is True

    @pytest.mark.asyncio
    async def test_enqueue_sources_only_registers(self, store, guide_fetcher):
        coordinator = CrawlCoordinator(store, guide_fetcher, crawl_delay=0)
        entries = await coordinator.enqueue_sources([DataSource(url=SEED, type=DocumentType.NEWS)])

        assert [e.type for e in entries] == [DocumentType.NEWS]
        assert guide_fetcher.calls == []

    @pytest.mark.asyncio
    async def test_scheduled_ingestion_uses_stored_entries(self, store, guide_fetcher):
        await store.add_queue_entry(QueueEntry(url=SEED, type=DocumentType.NEWS, username="u", password="p"))
        await store.add_queue_entry(QueueEntry(url="https://bautzen.example/missing"))
        await store.mark_processed("https://bautzen.example/missing")
        coordinator = CrawlCoordinator(store, guide_fetcher, crawl_delay=0)

        report = await run_scheduled_ingestion(coordinator, store, limit=1)

        assert guide_fetcher.calls[0] == (SEED, ("u", "p"))
        assert "https://bautzen.example/missing" not in guide_fetcher.fetched_urls
        assert [d.type for d in report.documents] == [DocumentType.NEWS]

    @pytest.mark.asyncio
    async def test_scheduled_ingestion_without_entries(self, store, guide_fetcher):
        coordinator = CrawlCoordinator(store, guide_fetcher, crawl_delay=0)
        assert await run_scheduled_ingestion(coordinator, store) is None

    @pytest.mark.asyncio
    async def test_scheduled_ingestion_never_raises(self, store, guide_fetcher):
        coordinator = CrawlCoordinator(store, guide_fetcher, crawl_delay=0)
        with patch.object(store, "list_queue_entries", AsyncMock(side_effect=RuntimeError("boom"))):
            assert await run_scheduled_ingestion(coordinator, store) is None


class TestDebugLinks:

    @pytest.mark.asyncio
    async def test_report_for_page(self, store, guide_fetcher):
        report = await CrawlCoordinator(store, guide_fetcher).debug_link_extraction(SEED)
        assert report.internal_links == [f"{EVENTS} (/events)"]
        assert report.errors == []

    @pytest.mark.asyncio
    async def test_fetch_error_is_listed(self, store, guide_fetcher):
        report = await CrawlCoordinator(store, guide_fetcher).debug_link_extraction("https://bautzen.example/nope")
        assert report.total_links == 0
        assert len(report.errors) == 1
        assert "https://bautzen.example/nope" in report.errors[0]


def test_entry_outcomes_are_values():
    assert {o.value for o in EntryOutcome} == {"success", "failed", "skipped"}


def test_fetch_error_message():
    error = FetchError("https://x.example/", reason="Not Found", status=404)
    assert str(error) == "Failed to fetch data from https://x.example/ (HTTP 404): Not Found"


class SlowFetcher:
    """Serves one page after a pause, counting fetches per URL."""

    def __init__(self, page):
        self.page = page
        self.counts = {}

    async def fetch(self, url, credentials=None):
        self.counts[url] = self.counts.get(url, 0) + 1
        await asyncio.sleep(0.05)
        return self.page


class TestInFlightUrls:

    @pytest.mark.asyncio
    async def test_concurrent_coordinators_fetch_url_once(self, store, page_factory):
        fetcher = SlowFetcher(page_factory("Vacation Guide", "Visit Bautzen in summer"))
        await store.add_queue_entry(QueueEntry(url=SEED))
        first = CrawlCoordinator(store, fetcher, crawl_delay=0)
        second = CrawlCoordinator(store, fetcher, crawl_delay=0)

        reports = await asyncio.gather(first.process_queue(), second.process_queue())

        assert fetcher.counts == {SEED: 1}
        outcomes = sorted((p.succeeded, p.skipped) for r in reports for p in r.passes)
        assert outcomes == [(0, 1), (1, 0)]
        assert len(in_flight_urls) == 0

    @pytest.mark.asyncio
    async def test_concurrent_ingestion_of_same_seed_is_serialized(self, store, page_factory):
        fetcher = SlowFetcher(page_factory("Vacation Guide", "Visit Bautzen in summer"))
        active = []
        overlapped = []

        async def tracking_fetch(url, credentials=None):
            overlapped.append(bool(active))
            active.append(url)
            try:
                return await SlowFetcher.fetch(fetcher, url, credentials)
            finally:
                active.remove(url)

        fetcher.fetch = tracking_fetch
        coordinators = [CrawlCoordinator(store, fetcher, crawl_delay=0) for _ in range(2)]

        await asyncio.gather(*(c.ingest_sources([DataSource(url=SEED)]) for c in coordinators))

        assert fetcher.counts == {SEED: 2}
        assert overlapped == [False, False]
        assert len(await store.find_documents(DocumentFilter())) == 1

    @pytest.mark.asyncio
    async def test_lock_released_and_dropped(self):
        registry = InFlightUrls()
        async with registry.hold(SEED):
            assert SEED in registry
        assert SEED not in registry
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_waiter_keeps_lock_alive(self):
        registry = InFlightUrls()
        order = []

        async def worker(name):
            async with registry.hold(SEED):
                order.append(f"{name} start")
                await asyncio.sleep(0.01)
                order.append(f"{name} end")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a start", "a end", "b start", "b end"]
        assert len(registry) == 0

    def test_coordinators_share_registry_by_default(self, sync_store):
        first = CrawlCoordinator(sync_store, None)
        second = CrawlCoordinator(sync_store, None)
        own = InFlightUrls()
        assert first.in_flight is second.in_flight is in_flight_urls
        assert CrawlCoordinator(sync_store, None, in_flight=own).in_flight is own
