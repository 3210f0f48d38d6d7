"""Observability package for SiteCorpus."""

from .logging import setup_logging, setup_logging_from_settings, get_logger, get_structured_logger, StructuredLogger
from .prometheus_metrics import (
    setup_prometheus_metrics,
    record_page_result,
    record_links_discovered,
    record_crawl_pass,
    record_search_metrics,
    record_error,
    PrometheusMiddleware,
    sitecorpus_registry
)

__all__ = [
    'setup_logging',
    'setup_logging_from_settings',
    'get_logger',
    'get_structured_logger',
    'StructuredLogger',
    'setup_prometheus_metrics',
    'record_page_result',
    'record_links_discovered',
    'record_crawl_pass',
    'record_search_metrics',
    'record_error',
    'PrometheusMiddleware',
    'sitecorpus_registry'
]
