import numpy as np
import pytest

from indexer.search import VectorSearch, cosine_similarities
from indexer.store import InMemoryStore
from pipelines.chunker import Chunk


async def seeded_store(*chunks):
    store = InMemoryStore()
    await store.bulk_insert(list(chunks))
    return store


def test_cosine_similarities_handles_zero_vectors():
    scores = cosine_similarities(np.array([1.0, 0.0]), np.array([[1.0, 0.0], [0.0, 1.0], [0.0, 0.0]]))
    assert scores.tolist() == [1.0, 0.0, 0.0]


@pytest.mark.asyncio
async def test_search_orders_by_similarity_and_applies_threshold():
    store = await seeded_store(
        Chunk(tool_id='cursor', text='exact', id='a', embedding=[1.0, 0.0]),
        Chunk(tool_id='cursor', text='close', id='b', embedding=[0.8, 0.6]),
        Chunk(tool_id='cursor', text='orthogonal', id='c', embedding=[0.0, 1.0]),
        Chunk(tool_id='windsurf', text='other tool', id='d', embedding=[1.0, 0.0]),
    )

    hits = await VectorSearch(store).search([1.0, 0.0], tool_filter='cursor')

    assert [hit.chunk_id for hit in hits] == ['a', 'b']
    assert hits[0].similarity == pytest.approx(1.0)
    assert hits[1].similarity == pytest.approx(0.8)
    assert hits[0].to_dict()['tool_id'] == 'cursor'


@pytest.mark.asyncio
async def test_search_limit_and_ties_keep_store_order():
    store = await seeded_store(*[
        Chunk(tool_id='t', text=str(i), id=str(i), embedding=[1.0, 1.0]) for i in range(5)
    ])
    hits = await VectorSearch(store).search([2.0, 2.0], limit=3)
    assert [hit.chunk_id for hit in hits] == ['0', '1', '2']


@pytest.mark.asyncio
async def test_mismatched_dimensions_skipped():
    store = await seeded_store(
        Chunk(tool_id='t', text='3d', id='a', embedding=[1.0, 0.0, 0.0]),
        Chunk(tool_id='t', text='2d', id='b', embedding=[1.0, 0.0]),
    )
    hits = await VectorSearch(store).search([1.0, 0.0])
    assert [hit.chunk_id for hit in hits] == ['b']

    assert await VectorSearch(store).search([1.0, 0.0, 0.0, 0.0]) == []


@pytest.mark.asyncio
async def test_text_fallback_without_embeddings():
    store = await seeded_store(
        Chunk(tool_id='t', text='Install the CLI with npm', id='a'),
        Chunk(tool_id='t', text='Configure rules for the project', id='b'),
        Chunk(tool_id='t', text='Install rules quickly', id='c'),
    )
    search = VectorSearch(store)

    hits = await search.search([0.1, 0.2], query_text='install rules')
    assert [hit.chunk_id for hit in hits] == ['c', 'a', 'b']
    assert hits[0].similarity == 1.0
    assert hits[1].similarity == 0.5

    hits = await search.search([0.1, 0.2], limit=2)
    assert [hit.chunk_id for hit in hits] == ['a', 'b']
    assert {hit.similarity for hit in hits} == {0.5}
