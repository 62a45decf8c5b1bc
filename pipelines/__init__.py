"""Pipelines package for DocManifest.

Provides crawling, URL normalization, parsing, chunking, robots policy
checking and the shared retry and error types.
"""

from .errors import (
    PipelineError,
    ConfigurationError,
    FetchError,
    ContentRejected,
    RobotsDisallowed,
    StorageError,
    EmbeddingError,
    ClassificationError,
    PromptGenerationError
)
from .retry import RetryPolicy, retry_async, is_transient_error
from .url_normalizer import URLNormalizer, normalize_urls
from .parser import DocumentParser, ParsedDocument, parse_document
from .chunker import Chunk, ChunkInput, DocumentChunker, chunk_document, estimate_token_count
from .policy import DocumentationUrlFilter, RobotsCache, RobotsPolicy
from .crawler import (
    CrawlerConfig,
    CrawlResult,
    CrawlStats,
    DocumentCrawler,
    crawl_documentation
)

__all__ = [
    # Errors
    'PipelineError',
    'ConfigurationError',
    'FetchError',
    'ContentRejected',
    'RobotsDisallowed',
    'StorageError',
    'EmbeddingError',
    'ClassificationError',
    'PromptGenerationError',

    # Retry
    'RetryPolicy',
    'retry_async',
    'is_transient_error',

    # URLs and parsing
    'URLNormalizer',
    'normalize_urls',
    'DocumentParser',
    'ParsedDocument',
    'parse_document',

    # Chunker
    'Chunk',
    'ChunkInput',
    'DocumentChunker',
    'chunk_document',
    'estimate_token_count',

    # Policy
    'DocumentationUrlFilter',
    'RobotsCache',
    'RobotsPolicy',

    # Crawler
    'CrawlerConfig',
    'CrawlResult',
    'CrawlStats',
    'DocumentCrawler',
    'crawl_documentation'
]
