"""Indexer package for DocManifest.

Provides chunk and tool storage, embedding generation and similarity search.
"""

from .store import (
    StoreResult,
    ToolRecord,
    ChunkStore,
    ToolStore,
    InMemoryChunkStore,
    InMemoryToolStore,
    InMemoryStore,
    SQLiteStore
)
from .embeddings import (
    EmbeddableChunk,
    EmbeddingResult,
    EmbeddingCache,
    EmbeddingService,
    OpenRouterEmbeddingProvider,
    OpenAIEmbeddingProvider,
    embed_pending_chunks
)
from .search import SearchHit, VectorSearch

__all__ = [
    # Storage
    'StoreResult',
    'ToolRecord',
    'ChunkStore',
    'ToolStore',
    'InMemoryChunkStore',
    'InMemoryToolStore',
    'InMemoryStore',
    'SQLiteStore',

    # Embeddings
    'EmbeddableChunk',
    'EmbeddingResult',
    'EmbeddingCache',
    'EmbeddingService',
    'OpenRouterEmbeddingProvider',
    'OpenAIEmbeddingProvider',
    'embed_pending_chunks',

    # Search
    'SearchHit',
    'VectorSearch'
]
