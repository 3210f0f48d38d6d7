#!/usr/bin/env python3
"""Operator command line for SiteCorpus.

Runs ingestion, queue passes, scheduled re-ingestion, search and store
maintenance against the configured SQLite store.

Usage:
    python -m scripts.crawl_cli ingest --sources sources/sources.yaml
    python -m scripts.crawl_cli process --type news
    python -m scripts.crawl_cli search "Bautzen events"
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Optional

from dotenv import load_dotenv

from config import Settings, get_settings
from indexer.fallback import OpenAIFallback
from indexer.models import DocumentType
from indexer.search import SearchEngine
from indexer.sqlite_adapter import SQLiteAdapter
from observability.logging import setup_logging_from_settings
from pipelines.crawler import CrawlCoordinator, run_scheduled_ingestion
from pipelines.fetcher import PageFetcher
from sources.loader import SourceLoader

logger = logging.getLogger(__name__)

DOCUMENT_TYPES = [t.value for t in DocumentType]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SiteCorpus crawler and search")
    parser.add_argument("--db", help="SQLite database path (overrides SITECORPUS_DB_PATH)")
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Fetch seed sources and crawl their links")
    ingest.add_argument("--sources", help="YAML source list (defaults to SITECORPUS_SOURCES_FILE)")
    ingest.add_argument("--no-follow", action="store_true", help="Do not crawl discovered links")

    process = sub.add_parser("process", help="Run crawl passes over unprocessed URLs")
    process.add_argument("--type", choices=DOCUMENT_TYPES, help="Only process this document type")

    sub.add_parser("stats", help="Show queue and document statistics")

    reset = sub.add_parser("reset", help="Mark queue entries unprocessed again")
    reset.add_argument("--type", choices=DOCUMENT_TYPES, help="Only reset this document type")

    search = sub.add_parser("search", help="Search stored documents")
    search.add_argument("query", help="Search query")
    search.add_argument("--type", choices=DOCUMENT_TYPES, help="Restrict to this document type")

    debug = sub.add_parser("debug-links", help="Classify every link on a page")
    debug.add_argument("url", help="Page to inspect")

    schedule = sub.add_parser("schedule", help="Re-ingest every stored URL once")
    schedule.add_argument("--limit", type=int, help="Maximum number of stored URLs to use")

    cleanup = sub.add_parser("cleanup", help="Delete documents older than the retention window")
    cleanup.add_argument("--days", type=int, help="Days of documents to keep")

    return parser


def _doc_type(value: Optional[str]) -> Optional[DocumentType]:
    return DocumentType(value) if value else None


def _print(data: Any):
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


async def run_command(args: argparse.Namespace, settings: Settings) -> int:
    store = SQLiteAdapter(args.db or settings.db_path)
    await store.initialize()
    try:
        if args.command == "stats":
            queue = await store.get_queue_stats()
            documents = await store.get_database_stats()
            _print({
                "queue": queue.model_dump(by_alias=True),
                "documents": documents.model_dump(mode="json", by_alias=True),
            })
            return 0

        if args.command == "reset":
            count = await store.reset_queue(_doc_type(args.type))
            _print({"reset": count})
            return 0

        if args.command == "cleanup":
            deleted = await store.cleanup_old_documents(args.days or settings.retention_days)
            _print({"deleted": deleted})
            return 0

        if args.command == "search":
            fallback = None
            if settings.openai_api_key:
                fallback = OpenAIFallback(api_key=settings.openai_api_key, model=settings.fallback_model)
            try:
                outcome = await SearchEngine(store, fallback=fallback).search(args.query, _doc_type(args.type))
            finally:
                if fallback is not None:
                    await fallback.close()
            _print({
                "stage": outcome.stage.value,
                "broadened": outcome.broadened,
                "results": [{"url": d.url, "title": d.title, "type": d.type.value} for d in outcome.documents],
            })
            return 0

        async with PageFetcher(timeout=settings.fetch_timeout,
                               user_agent=settings.user_agent,
                               verify_tls=settings.verify_tls) as fetcher:
            coordinator = CrawlCoordinator(store, fetcher,
                                           max_depth=settings.max_depth,
                                           crawl_delay=settings.crawl_delay)

            if args.command == "ingest":
                sources = SourceLoader(args.sources or settings.sources_file).load_sources()
                if not sources:
                    logger.error("No sources to ingest")
                    return 1
                report = await coordinator.ingest_sources(sources, follow_links=not args.no_follow)
                _print(report.to_dict())
            elif args.command == "process":
                report = await coordinator.process_queue(_doc_type(args.type))
                _print(report.to_dict())
            elif args.command == "debug-links":
                _print((await coordinator.debug_link_extraction(args.url)).to_dict())
            elif args.command == "schedule":
                report = await run_scheduled_ingestion(coordinator, store,
                                                       limit=args.limit or settings.scheduled_source_limit)
                if report is None:
                    return 1
                _print(report.to_dict())
        return 0
    finally:
        await store.close()


def main(argv: Optional[list] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging_from_settings(settings)

    try:
        return asyncio.run(run_command(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130
    except Exception as e:
        logger.error(f"Command {args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
