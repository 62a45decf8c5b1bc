import pytest

from indexer.embeddings import (
    OPENAI_EMBEDDINGS_URL,
    OPENROUTER_EMBEDDINGS_URL,
    EmbeddableChunk,
    EmbeddingCache,
    EmbeddingService,
    OpenAIEmbeddingProvider,
    OpenRouterEmbeddingProvider,
    cache_key,
    embed_pending_chunks,
    providers_from_keys,
)
from indexer.store import InMemoryStore
from pipelines.chunker import Chunk
from pipelines.errors import EmbeddingError, FetchError
from pipelines.retry import RetryPolicy

NO_WAIT = RetryPolicy(max_attempts=2, base_delay=0, jitter_fraction=0)


def embedding_payload(*vectors):
    return {'data': [{'embedding': list(vector), 'index': i} for i, vector in enumerate(vectors)]}


class FakeProvider:
    """Provider returning one vector per text: [len(text), batch number]."""

    def __init__(self, name='fake', error=None):
        self.name = name
        self.error = error
        self.batches = []

    async def embed(self, texts):
        self.batches.append(list(texts))
        if self.error:
            raise self.error
        return [[float(len(text)), float(len(self.batches))] for text in texts]


class TestEmbeddingService:
    """Batching, caching and provider failover"""

    @pytest.mark.asyncio
    async def test_results_in_input_order_skipping_blank_text(self):
        provider = FakeProvider()
        service = EmbeddingService([provider], batch_size=2, retry_policy=NO_WAIT)

        results = await service.generate_embeddings([
            EmbeddableChunk('a', 'one'),
            EmbeddableChunk('b', '   '),
            EmbeddableChunk('c', 'three'),
            EmbeddableChunk('d', 'four!'),
        ])

        assert [result.id for result in results] == ['a', 'c', 'd']
        assert provider.batches == [['one', 'three'], ['four!']]
        assert results[2].embedding == [5.0, 2.0]

    @pytest.mark.asyncio
    async def test_cache_avoids_repeat_requests(self):
        provider = FakeProvider()
        cache = EmbeddingCache()
        service = EmbeddingService([provider], cache=cache, retry_policy=NO_WAIT)

        await service.generate_embeddings([EmbeddableChunk('a', 'same  text')])
        results = await service.generate_embeddings([EmbeddableChunk('b', 'same text\n')])

        assert len(provider.batches) == 1
        assert results[0].id == 'b'
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_falls_back_to_next_provider(self):
        broken = FakeProvider('openrouter', error=FetchError('HTTP 401', 401))
        backup = FakeProvider('openai')
        service = EmbeddingService([broken, backup], retry_policy=NO_WAIT)

        results = await service.generate_embeddings([EmbeddableChunk('a', 'text')])

        assert len(results) == 1
        assert len(broken.batches) == 1
        assert len(backup.batches) == 1

    @pytest.mark.asyncio
    async def test_transient_errors_retried_before_failover(self):
        flaky = FakeProvider('openrouter', error=FetchError('HTTP 503', 503, retryable=True))
        service = EmbeddingService([flaky], retry_policy=NO_WAIT)

        with pytest.raises(EmbeddingError) as excinfo:
            await service.generate_embeddings([EmbeddableChunk('a', 'text')])

        assert len(flaky.batches) == NO_WAIT.max_attempts
        assert str(excinfo.value) == 'Embedding generation failed: HTTP 503'

    @pytest.mark.asyncio
    async def test_all_providers_failing_lists_every_error(self):
        service = EmbeddingService([
            FakeProvider('openrouter', error=FetchError('bad key')),
            FakeProvider('openai', error=EmbeddingError('malformed')),
        ], retry_policy=NO_WAIT)

        with pytest.raises(EmbeddingError, match=r'bad key \| malformed'):
            await service.generate_embeddings([EmbeddableChunk('a', 'text')])

    @pytest.mark.asyncio
    async def test_no_providers(self):
        with pytest.raises(EmbeddingError, match='No embedding provider configured'):
            await EmbeddingService([]).generate_embeddings([EmbeddableChunk('a', 'text')])

    @pytest.mark.asyncio
    async def test_empty_input(self):
        assert await EmbeddingService([]).generate_embeddings([]) == []

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            EmbeddingService([FakeProvider()], batch_size=0)


class TestProviders:
    """HTTP providers against an in-process session"""

    @pytest.mark.asyncio
    async def test_openrouter_request(self, fake_session):
        fake_session.add_json(OPENROUTER_EMBEDDINGS_URL, embedding_payload([1, 2], [3, 4]))
        provider = OpenRouterEmbeddingProvider('or-key', session=fake_session, app_url='https://x.dev', app_name='X')

        embeddings = await provider.embed(['a', 'b'])

        assert embeddings == [[1.0, 2.0], [3.0, 4.0]]
        request = fake_session.requests[0]
        assert request['json'] == {'model': 'openai/text-embedding-3-small', 'input': ['a', 'b']}
        assert request['headers']['Authorization'] == 'Bearer or-key'
        assert request['headers']['X-Title'] == 'X'

    @pytest.mark.asyncio
    async def test_error_status(self, fake_session):
        fake_session.add_json(OPENAI_EMBEDDINGS_URL, {'error': {'message': 'Rate limit reached'}}, status=429)
        provider = OpenAIEmbeddingProvider('oa-key', session=fake_session)

        with pytest.raises(FetchError) as excinfo:
            await provider.embed(['a'])

        assert excinfo.value.retryable
        assert str(excinfo.value) == 'openai embeddings failed with status 429: Rate limit reached'

    @pytest.mark.asyncio
    @pytest.mark.parametrize('payload', [
        {'unexpected': True},
        {'data': [{'index': 0}]},
        embedding_payload([1, 2], [3, 4]),
    ])
    async def test_malformed_payloads(self, fake_session, payload):
        fake_session.add_json(OPENAI_EMBEDDINGS_URL, payload)
        with pytest.raises(EmbeddingError):
            await OpenAIEmbeddingProvider('k', session=fake_session).embed(['only one'])

    def test_providers_from_keys(self):
        assert providers_from_keys() == []
        providers = providers_from_keys(openrouter_api_key='a', openai_api_key='b')
        assert [provider.name for provider in providers] == ['openrouter', 'openai']


def test_cache_key_normalizes_whitespace():
    assert cache_key('a  b\n') == cache_key('a b')
    assert cache_key('a b') != cache_key('a c')


@pytest.mark.asyncio
async def test_embed_pending_chunks_updates_store():
    store = InMemoryStore()
    await store.bulk_insert([
        Chunk(tool_id='cursor', text='first', id='1'),
        Chunk(tool_id='cursor', text='second', id='2', embedding=[1.0]),
        Chunk(tool_id='windsurf', text='third', id='3'),
    ])
    service = EmbeddingService([FakeProvider()], retry_policy=NO_WAIT)

    assert await embed_pending_chunks(store, service, tool_id='cursor') == 1
    assert store.chunks['1'].embedding == [5.0, 1.0]
    assert store.chunks['3'].embedding is None
    assert await embed_pending_chunks(store, service, tool_id='cursor') == 0
