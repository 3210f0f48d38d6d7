"""Prometheus metrics integration for SiteCorpus."""

from prometheus_client import Counter, Histogram, Info, generate_latest, CONTENT_TYPE_LATEST
from prometheus_client.core import CollectorRegistry
from fastapi import FastAPI, Request, Response
import re
import time
import logging

logger = logging.getLogger(__name__)

# Custom registry for SiteCorpus metrics
sitecorpus_registry = CollectorRegistry()

# Request metrics
request_count = Counter(
    'sitecorpus_http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=sitecorpus_registry
)

request_duration = Histogram(
    'sitecorpus_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=sitecorpus_registry
)

# Ingestion metrics
pages_fetched = Counter(
    'sitecorpus_pages_fetched_total',
    'Queue entries handled by the crawl coordinator',
    ['status'],
    registry=sitecorpus_registry
)

links_discovered = Counter(
    'sitecorpus_links_discovered_total',
    'Same-origin links discovered on fetched pages',
    registry=sitecorpus_registry
)

crawl_passes = Counter(
    'sitecorpus_crawl_passes_total',
    'Crawl passes executed',
    registry=sitecorpus_registry
)

# Search metrics
search_requests = Counter(
    'sitecorpus_search_requests_total',
    'Search requests by the stage that served them',
    ['stage'],
    registry=sitecorpus_registry
)

search_duration = Histogram(
    'sitecorpus_search_duration_seconds',
    'Search duration in seconds',
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
    registry=sitecorpus_registry
)

app_info = Info(
    'sitecorpus_app',
    'SiteCorpus application information',
    registry=sitecorpus_registry
)

# Error metrics
error_count = Counter(
    'sitecorpus_errors_total',
    'Total number of errors',
    ['error_type', 'component'],
    registry=sitecorpus_registry
)

class PrometheusMiddleware:
    """Middleware to collect Prometheus metrics for HTTP requests."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        method = request.method
        endpoint = self._normalize_endpoint(request.url.path)

        start_time = time.perf_counter()
        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as e:
            logger.error(f"Request processing error: {e}")
            error_count.labels(error_type=type(e).__name__, component="http").inc()
            raise
        finally:
            request_count.labels(
                method=method,
                endpoint=endpoint,
                status_code=str(status_code)
            ).inc()
            request_duration.labels(
                method=method,
                endpoint=endpoint
            ).observe(time.perf_counter() - start_time)

    def _normalize_endpoint(self, path: str) -> str:
        """Collapse queue entry ids so /api/urls/17 and /api/urls/18 share a label."""
        return re.sub(r"/\d+(?=/|$)", "/{id}", path)

def setup_prometheus_metrics(app: FastAPI) -> None:
    """Setup Prometheus metrics collection for FastAPI app."""
    app.add_middleware(PrometheusMiddleware)

    @app.get("/metrics")
    async def metrics_endpoint():
        """Prometheus metrics endpoint."""
        return Response(generate_latest(sitecorpus_registry), media_type=CONTENT_TYPE_LATEST)

    app_info.info({"title": app.title, "version": app.version})

    logger.info("Prometheus metrics configured")

def record_page_result(status: str) -> None:
    """Count a queue entry outcome: success, failed or skipped."""
    pages_fetched.labels(status=status).inc()

def record_links_discovered(count: int) -> None:
    if count:
        links_discovered.inc(count)

def record_crawl_pass() -> None:
    crawl_passes.inc()

def record_search_metrics(stage: str, duration: float) -> None:
    """Record which stage served a search and how long it took."""
    search_requests.labels(stage=stage).inc()
    search_duration.observe(duration)

def record_error(error_type: str, component: str) -> None:
    error_count.labels(error_type=error_type, component=component).inc()
