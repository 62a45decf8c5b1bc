"""Prometheus metrics for the DocManifest pipelines."""

import logging
from typing import Dict, Optional

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from prometheus_client.core import CollectorRegistry

logger = logging.getLogger(__name__)

# Custom registry so pipeline metrics never mix with the process default
docmanifest_registry = CollectorRegistry()

# Crawler metrics
pages_crawled = Counter(
    'docmanifest_crawler_pages_total',
    'Pages processed by the crawler',
    ['outcome'],
    registry=docmanifest_registry
)

chunks_stored = Counter(
    'docmanifest_crawler_chunks_stored_total',
    'Chunks persisted by the crawler',
    registry=docmanifest_registry
)

fetch_retries = Counter(
    'docmanifest_crawler_fetch_retries_total',
    'HTTP fetch attempts that were retried',
    registry=docmanifest_registry
)

fetch_duration = Histogram(
    'docmanifest_crawler_fetch_duration_seconds',
    'Duration of successful page fetches in seconds',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=docmanifest_registry
)

# Manifest metrics
format_detections = Counter(
    'docmanifest_format_detections_total',
    'Format detections by winning format',
    ['format', 'source'],
    registry=docmanifest_registry
)

prompt_attempts = Counter(
    'docmanifest_prompt_attempts_total',
    'Prompt generation attempts by format and outcome',
    ['format', 'outcome'],
    registry=docmanifest_registry
)

# Embedding metrics
embedding_requests = Counter(
    'docmanifest_embedding_requests_total',
    'Embedding provider calls by provider and outcome',
    ['provider', 'outcome'],
    registry=docmanifest_registry
)

embedding_cache_hits = Counter(
    'docmanifest_embedding_cache_hits_total',
    'Texts served from the embedding cache',
    registry=docmanifest_registry
)


def record_page(outcome: str, chunk_count: int = 0) -> None:
    """Record a crawled page outcome (stored, skipped or failed)."""
    pages_crawled.labels(outcome=outcome).inc()
    if chunk_count:
        chunks_stored.inc(chunk_count)


def record_fetch(duration: float) -> None:
    fetch_duration.observe(duration)


def record_fetch_retry() -> None:
    fetch_retries.inc()


def record_format_detection(format_name: str, source: str = 'heuristic') -> None:
    format_detections.labels(format=format_name, source=source).inc()


def record_prompt_attempt(format_name: str, success: bool) -> None:
    prompt_attempts.labels(format=format_name, outcome='success' if success else 'failure').inc()


def record_embedding_request(provider: str, error: Optional[str] = None) -> None:
    """Record one embedding provider call."""
    embedding_requests.labels(provider=provider, outcome='error' if error else 'success').inc()


def record_embedding_cache_hits(count: int) -> None:
    embedding_cache_hits.inc(count)


def get_metrics_text() -> str:
    """Render all pipeline metrics in the Prometheus text exposition format."""
    return generate_latest(docmanifest_registry).decode('utf-8')


def get_metrics_summary() -> Dict[str, float]:
    """Get a summary of current metric totals, keyed by sample name."""
    summary: Dict[str, float] = {}
    try:
        for metric in docmanifest_registry.collect():
            for sample in metric.samples:
                if sample.name.endswith('_total'):
                    summary[sample.name] = summary.get(sample.name, 0.0) + sample.value
    except Exception as e:
        logger.error(f"Error getting metrics summary: {e}")
    return summary


__all__ = [
    'CONTENT_TYPE_LATEST',
    'docmanifest_registry',
    'record_page',
    'record_fetch',
    'record_fetch_retry',
    'record_format_detection',
    'record_prompt_attempt',
    'record_embedding_request',
    'record_embedding_cache_hits',
    'get_metrics_text',
    'get_metrics_summary',
]
