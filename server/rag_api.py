from fastapi import FastAPI, Body, HTTPException, Depends, Query
from pydantic import Field
from typing import AsyncGenerator, List, Optional
import datetime
import logging

from dotenv import load_dotenv

from config import get_settings, get_db_adapter, initialize_database, close_database, DatabaseConfig
from indexer.fallback import OpenAIFallback
from indexer.models import CamelModel, DataSource, DocumentType, QueueEntry
from indexer.search import SearchEngine
from indexer.sqlite_adapter import SQLiteAdapter
from observability.logging import setup_logging_from_settings
from observability.prometheus_metrics import setup_prometheus_metrics
from pipelines.crawler import CrawlCoordinator
from pipelines.errors import StoreError
from pipelines.fetcher import PageFetcher

logger = logging.getLogger(__name__)

app = FastAPI(title="SiteCorpus API", version="0.1.0")
setup_prometheus_metrics(app)

# Process-wide resources, opened on startup
db_adapter: Optional[SQLiteAdapter] = None
search_fallback: Optional[OpenAIFallback] = None

@app.on_event("startup")
async def startup_event():
    """Load settings, configure logging and open the store."""
    global db_adapter, search_fallback

    load_dotenv()
    settings = get_settings()
    setup_logging_from_settings(settings)

    try:
        await initialize_database(DatabaseConfig.from_settings(settings))
        db_adapter = await get_db_adapter()
        logger.info(f"Database initialized: {settings.db_path}")
        if settings.openai_api_key:
            search_fallback = OpenAIFallback(api_key=settings.openai_api_key, model=settings.fallback_model)
            logger.info(f"Generative fallback enabled: {settings.fallback_model}")
    except Exception as e:
        logger.error(f"Failed to initialize application: {e}")
        raise

@app.on_event("shutdown")
async def shutdown_event():
    """Clean up resources on shutdown."""
    global db_adapter, search_fallback
    if search_fallback is not None:
        await search_fallback.close()
        search_fallback = None
    await close_database()
    db_adapter = None

async def get_optional_db() -> Optional[SQLiteAdapter]:
    return db_adapter

async def get_db(db: Optional[SQLiteAdapter] = Depends(get_optional_db)) -> SQLiteAdapter:
    """Dependency to get database adapter."""
    if db is None:
        raise HTTPException(status_code=500, detail="Database not initialized")
    return db

async def get_fallback() -> Optional[OpenAIFallback]:
    return search_fallback

async def get_coordinator(db: SQLiteAdapter = Depends(get_db)) -> AsyncGenerator[CrawlCoordinator, None]:
    """Dependency yielding a coordinator with its own HTTP session."""
    settings = get_settings()
    async with PageFetcher(timeout=settings.fetch_timeout,
                           user_agent=settings.user_agent,
                           verify_tls=settings.verify_tls) as fetcher:
        yield CrawlCoordinator(db, fetcher,
                               max_depth=settings.max_depth,
                               crawl_delay=settings.crawl_delay)

def get_search_engine(db: SQLiteAdapter = Depends(get_db),
                      fallback: Optional[OpenAIFallback] = Depends(get_fallback)) -> SearchEngine:
    return SearchEngine(db, fallback=fallback)

class IngestRequest(CamelModel):
    sources: List[DataSource] = Field(default_factory=list)
    follow_links: bool = True

class UrlCreateRequest(CamelModel):
    url: str = Field(min_length=1)
    username: Optional[str] = None
    password: Optional[str] = None
    description: Optional[str] = None
    type: DocumentType = DocumentType.GENERAL

def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()

@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "message": "SiteCorpus API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics"
    }

@app.get("/health")
def health():
    return {"ok": True, "time": _now()}

@app.get("/health/detailed")
async def detailed_health(db: Optional[SQLiteAdapter] = Depends(get_optional_db),
                          fallback: Optional[OpenAIFallback] = Depends(get_fallback)):
    """Health of the store and the generative fallback."""
    health_status = {
        "status": "healthy",
        "time": _now(),
        "version": app.version,
        "components": {
            "generativeFallback": {"status": "enabled" if fallback else "disabled"},
        },
    }

    if db is None:
        health_status["components"]["database"] = {"status": "unavailable"}
        health_status["status"] = "degraded"
    else:
        try:
            health_status["components"]["database"] = {"status": "healthy", **await db.get_stats()}
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            health_status["components"]["database"] = {"status": "unhealthy", "error": str(e)}
            health_status["status"] = "degraded"

    return health_status

@app.post("/api/ingest")
async def ingest(req: Optional[IngestRequest] = Body(default=None),
                 db: SQLiteAdapter = Depends(get_db),
                 coordinator: CrawlCoordinator = Depends(get_coordinator)):
    """Fetch and store the given sources, or every registered URL when none are given."""
    req = req or IngestRequest()
    sources = req.sources
    if not sources:
        entries = list(reversed(await db.list_queue_entries()))
        if not entries:
            raise HTTPException(status_code=404, detail="No URLs configured")
        sources = [
            DataSource(url=e.url, username=e.username, password=e.password,
                       type=e.type, description=e.description)
            for e in entries
        ]

    try:
        report = await coordinator.ingest_sources(sources, follow_links=req.follow_links)
    except Exception as e:
        logger.error(f"Error in ingest route: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch data")
    return report.to_dict()

@app.post("/api/queue/process")
async def process_queue(type: Optional[DocumentType] = None,
                        coordinator: CrawlCoordinator = Depends(get_coordinator)):
    try:
        report = await coordinator.process_queue(type)
    except Exception as e:
        logger.error(f"Error processing queue: {e}")
        raise HTTPException(status_code=500, detail="Failed to process queue")
    return report.to_dict()

@app.get("/api/queue/stats")
async def queue_stats(db: SQLiteAdapter = Depends(get_db)):
    stats = await db.get_queue_stats()
    return stats.model_dump(by_alias=True)

@app.post("/api/queue/reset")
async def reset_queue(type: Optional[DocumentType] = None, db: SQLiteAdapter = Depends(get_db)):
    try:
        count = await db.reset_queue(type)
    except StoreError as e:
        logger.error(f"Error resetting URL processing status: {e}")
        raise HTTPException(status_code=500, detail="Failed to reset queue")
    logger.info(f"Reset processing status for {count} URLs")
    return {"reset": count}

@app.get("/api/urls")
async def list_urls(type: Optional[DocumentType] = None, db: SQLiteAdapter = Depends(get_db)):
    entries = await db.list_queue_entries(type)
    return {
        "success": True,
        "data": [e.public_dict() for e in entries],
        "count": len(entries),
        "timestamp": _now(),
    }

@app.get("/api/urls/{entry_id}")
async def get_url(entry_id: int, db: SQLiteAdapter = Depends(get_db)):
    entry = await db.get_queue_entry(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="URL not found")
    return {"success": True, "data": entry.public_dict(), "timestamp": _now()}

@app.post("/api/urls", status_code=201)
async def create_url(req: UrlCreateRequest, db: SQLiteAdapter = Depends(get_db)):
    try:
        entry = await db.add_queue_entry(QueueEntry(
            url=req.url,
            username=req.username,
            password=req.password,
            description=req.description,
            type=req.type,
        ))
    except StoreError as e:
        logger.error(f"Error creating URL: {e}")
        raise HTTPException(status_code=500, detail="Failed to create URL")
    logger.info(f"New URL registered: {entry.url}")
    return {
        "success": True,
        "data": entry.public_dict(),
        "message": "URL created successfully",
        "timestamp": _now(),
    }

@app.get("/api/search")
async def search(q: str = "",
                 type: Optional[DocumentType] = None,
                 page: int = Query(default=1, ge=1),
                 limit: int = Query(default=10, ge=1, le=100),
                 engine: SearchEngine = Depends(get_search_engine)):
    """Layered relevance search; an empty ``q`` lists stored documents."""
    try:
        result = await engine.search_page(q, type, page=page, limit=limit)
    except Exception as e:
        logger.error(f"Search error: {e}")
        raise HTTPException(status_code=500, detail="Search failed")
    return result.to_dict()

@app.get("/api/debug/links")
async def debug_links(url: str = Query(min_length=1),
                      coordinator: CrawlCoordinator = Depends(get_coordinator)):
    report = await coordinator.debug_link_extraction(url)
    return report.to_dict()

@app.get("/api/stats")
async def database_stats(db: SQLiteAdapter = Depends(get_db)):
    stats = await db.get_database_stats()
    return stats.model_dump(mode="json", by_alias=True)

@app.post("/api/cleanup")
async def cleanup(days: Optional[int] = Query(default=None, ge=1), db: SQLiteAdapter = Depends(get_db)):
    days = days or get_settings().retention_days
    try:
        deleted = await db.cleanup_old_documents(days)
    except StoreError as e:
        logger.error(f"Cleanup failed: {e}")
        raise HTTPException(status_code=500, detail="Cleanup failed")
    return {"deleted": deleted, "daysToKeep": days}
