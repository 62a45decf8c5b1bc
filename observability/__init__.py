"""Observability package for DocManifest."""

from .logging import (
    setup_logging,
    get_structured_logger,
    StructuredLogger,
    JSONFormatter,
    ColoredFormatter
)
from .metrics import (
    docmanifest_registry,
    record_page,
    record_fetch,
    record_fetch_retry,
    record_format_detection,
    record_prompt_attempt,
    record_embedding_request,
    record_embedding_cache_hits,
    get_metrics_text,
    get_metrics_summary
)

__all__ = [
    'setup_logging',
    'get_structured_logger',
    'StructuredLogger',
    'JSONFormatter',
    'ColoredFormatter',
    'docmanifest_registry',
    'record_page',
    'record_fetch',
    'record_fetch_retry',
    'record_format_detection',
    'record_prompt_attempt',
    'record_embedding_request',
    'record_embedding_cache_hits',
    'get_metrics_text',
    'get_metrics_summary'
]
