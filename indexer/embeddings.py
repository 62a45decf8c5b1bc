# DocManifest Embeddings Module
# Generates chunk embeddings through hosted embedding APIs

import hashlib
import logging
import re
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import aiohttp

from pipelines.errors import EmbeddingError, FetchError
from pipelines.retry import RETRYABLE_STATUS_CODES, RetryPolicy, describe_error_response, retry_async
from observability.metrics import record_embedding_cache_hits, record_embedding_request

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 25
OPENROUTER_EMBEDDINGS_URL = 'https://openrouter.ai/api/v1/embeddings'
OPENAI_EMBEDDINGS_URL = 'https://api.openai.com/v1/embeddings'
DEFAULT_OPENROUTER_MODEL = 'openai/text-embedding-3-small'
DEFAULT_OPENAI_MODEL = 'text-embedding-3-small'

WHITESPACE = re.compile(r'\s+')


@dataclass
class EmbeddableChunk:
    id: str
    text: str


@dataclass
class EmbeddingResult:
    id: str
    embedding: List[float]


def normalize_text(text: str) -> str:
    return WHITESPACE.sub(' ', text).strip()


def cache_key(text: str) -> str:
    """SHA-256 of the whitespace-normalized text."""
    return hashlib.sha256(normalize_text(text).encode('utf-8')).hexdigest()


class EmbeddingCache:
    """In-process embedding cache keyed by normalized-text hash."""

    def __init__(self):
        self._entries: Dict[str, List[float]] = {}

    def get(self, key: str) -> Optional[List[float]]:
        return self._entries.get(key)

    def set(self, key: str, embedding: List[float]):
        self._entries[key] = embedding

    def clear(self):
        self._entries.clear()

    def __len__(self):
        return len(self._entries)


class EmbeddingProvider:
    """An OpenAI-compatible ``/embeddings`` endpoint."""

    name = 'provider'

    def __init__(self,
                 api_key: str,
                 model: str,
                 endpoint: str,
                 session: Optional[aiohttp.ClientSession] = None,
                 timeout: float = 60.0):
        self.api_key = api_key
        self.model = model
        self.endpoint = endpoint
        self.session = session
        self.timeout = timeout

    def headers(self) -> Dict[str, str]:
        return {
            'Content-Type': 'application/json',
            'Authorization': f"Bearer {self.api_key}",
        }

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed ``texts`` in one request, preserving order.

        Raises:
            FetchError: On a non-200 response (retryable for 408/429/5xx)
            EmbeddingError: If the response body is malformed
        """
        owns_session = self.session is None
        session = self.session or aiohttp.ClientSession()
        try:
            async with session.post(self.endpoint, json={'model': self.model, 'input': list(texts)},
                                    headers=self.headers(),
                                    timeout=aiohttp.ClientTimeout(total=self.timeout)) as response:
                if response.status != 200:
                    detail = await describe_error_response(response)
                    raise FetchError(
                        f"{self.name} embeddings failed with status {response.status}: {detail}",
                        status_code=response.status,
                        retryable=response.status in RETRYABLE_STATUS_CODES,
                    )
                payload = await response.json()
        finally:
            if owns_session:
                await session.close()

        data = payload.get('data') if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise EmbeddingError(f"{self.name} embeddings response is malformed")

        embeddings = []
        for item in data:
            vector = item.get('embedding') if isinstance(item, dict) else None
            if not isinstance(vector, list):
                raise EmbeddingError(f"{self.name} embedding result missing embedding")
            embeddings.append([float(value) for value in vector])

        if len(embeddings) != len(texts):
            raise EmbeddingError(f"{self.name} returned {len(embeddings)} embeddings for {len(texts)} inputs")
        return embeddings


class OpenRouterEmbeddingProvider(EmbeddingProvider):
    name = 'openrouter'

    def __init__(self, api_key: str, model: str = DEFAULT_OPENROUTER_MODEL,
                 app_url: Optional[str] = None, app_name: Optional[str] = None, **kwargs):
        kwargs.setdefault('endpoint', OPENROUTER_EMBEDDINGS_URL)
        super().__init__(api_key, model, **kwargs)
        self.app_url = app_url
        self.app_name = app_name

    def headers(self) -> Dict[str, str]:
        headers = super().headers()
        if self.app_url:
            headers['HTTP-Referer'] = self.app_url
        if self.app_name:
            headers['X-Title'] = self.app_name
        return headers


class OpenAIEmbeddingProvider(EmbeddingProvider):
    name = 'openai'

    def __init__(self, api_key: str, model: str = DEFAULT_OPENAI_MODEL, **kwargs):
        kwargs.setdefault('endpoint', OPENAI_EMBEDDINGS_URL)
        super().__init__(api_key, model, **kwargs)


class EmbeddingService:
    """Batches chunk texts through the configured providers with caching and failover."""

    def __init__(self,
                 providers: Sequence[EmbeddingProvider],
                 batch_size: int = DEFAULT_BATCH_SIZE,
                 cache: Optional[EmbeddingCache] = None,
                 retry_policy: Optional[RetryPolicy] = None):
        """
        Initialize embedding service

        Args:
            providers: Providers tried in order for every batch
            batch_size: Maximum texts per provider request
            cache: Shared embedding cache (a private one is created when omitted)
            retry_policy: Retry policy applied to each provider call
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.providers = list(providers)
        self.batch_size = batch_size
        self.cache = cache if cache is not None else EmbeddingCache()
        self.retry_policy = retry_policy or RetryPolicy(base_delay=0.75, jitter_fraction=0.2)

    async def generate_embeddings(self, chunks: Sequence[EmbeddableChunk]) -> List[EmbeddingResult]:
        """Embed chunks, returning results in input order.

        Chunks with blank text are skipped. Cached texts are not sent to a provider.

        Raises:
            EmbeddingError: If every provider failed for some batch
        """
        if not chunks:
            return []

        start_time = time.time()
        resolved: Dict[str, List[float]] = {}
        pending = []
        cache_hits = 0

        for chunk in chunks:
            text = (chunk.text or '').strip()
            if not text:
                continue
            key = cache_key(text)
            cached = self.cache.get(key)
            if cached:
                resolved[chunk.id] = cached
                cache_hits += 1
                continue
            pending.append((chunk.id, text, key))

        for i in range(0, len(pending), self.batch_size):
            batch = pending[i:i + self.batch_size]
            embeddings = await self._embed_batch([text for _, text, _ in batch])
            for (chunk_id, _, key), embedding in zip(batch, embeddings):
                self.cache.set(key, embedding)
                resolved[chunk_id] = embedding

        results = [EmbeddingResult(id=chunk.id, embedding=resolved[chunk.id])
                   for chunk in chunks if resolved.get(chunk.id)]
        if cache_hits:
            record_embedding_cache_hits(cache_hits)

        logger.info(f"Generated embeddings for {len(results)}/{len(chunks)} chunks "
                    f"({cache_hits} cached) in {time.time() - start_time:.2f}s")
        return results

    async def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not self.providers:
            raise EmbeddingError('No embedding provider configured. '
                                 'Set OPENROUTER_API_KEY or OPENAI_API_KEY.')

        provider_errors = []
        for provider in self.providers:
            try:
                embeddings = await retry_async(
                    lambda: provider.embed(texts),
                    policy=self.retry_policy,
                    description=f"{provider.name} embeddings",
                )
            except Exception as e:
                provider_errors.append(str(e))
                record_embedding_request(provider.name, error=str(e))
                logger.warning(f"Embedding provider {provider.name} failed: {e}")
                continue

            record_embedding_request(provider.name)
            return embeddings

        raise EmbeddingError(f"Embedding generation failed: {' | '.join(provider_errors)}")


def providers_from_keys(openrouter_api_key: Optional[str] = None,
                        openai_api_key: Optional[str] = None,
                        openrouter_model: str = DEFAULT_OPENROUTER_MODEL,
                        openai_model: str = DEFAULT_OPENAI_MODEL,
                        app_url: Optional[str] = None,
                        app_name: Optional[str] = None,
                        session: Optional[aiohttp.ClientSession] = None) -> List[EmbeddingProvider]:
    """Providers in failover order (OpenRouter first) for whichever keys are set."""
    providers: List[EmbeddingProvider] = []
    if openrouter_api_key:
        providers.append(OpenRouterEmbeddingProvider(openrouter_api_key, openrouter_model,
                                                     app_url=app_url, app_name=app_name, session=session))
    if openai_api_key:
        providers.append(OpenAIEmbeddingProvider(openai_api_key, openai_model, session=session))
    return providers


async def embed_pending_chunks(store, service: EmbeddingService, tool_id: Optional[str] = None) -> int:
    """Attach embeddings to stored chunks that have none. Returns the number updated."""
    chunks = await store.query_without_embedding(tool_id)
    if not chunks:
        logger.info("No chunks need embedding updates")
        return 0

    logger.info(f"Generating embeddings for {len(chunks)} chunks")
    results = await service.generate_embeddings([EmbeddableChunk(id=chunk.id, text=chunk.text) for chunk in chunks])

    updated = 0
    for result in results:
        outcome = await store.update_embedding(result.id, result.embedding)
        if outcome.error:
            logger.error(f"Error updating embedding for chunk {result.id}: {outcome.error}")
            continue
        updated += 1

    logger.info(f"Successfully updated embeddings for {updated} chunks")
    return updated
