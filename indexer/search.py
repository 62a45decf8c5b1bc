"""Similarity search over stored chunk embeddings."""

import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
DEFAULT_THRESHOLD = 0.5
# Similarity reported for keyword matches when no query text is available
TEXT_FALLBACK_SIMILARITY = 0.5

TERM = re.compile(r'\w+')


@dataclass
class SearchHit:
    chunk_id: str
    similarity: float
    text: str
    source_url: Optional[str] = None
    section: Optional[str] = None
    tool_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _hit(chunk, similarity: float) -> SearchHit:
    return SearchHit(
        chunk_id=chunk.id,
        similarity=float(similarity),
        text=chunk.text,
        source_url=chunk.source_url,
        section=chunk.section,
        tool_id=chunk.tool_id,
    )


def cosine_similarities(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against every row of ``matrix``. Zero vectors score 0."""
    query_norm = np.linalg.norm(query)
    row_norms = np.linalg.norm(matrix, axis=1)
    denominator = row_norms * query_norm
    dots = matrix @ query
    return np.divide(dots, denominator, out=np.zeros_like(dots, dtype=float), where=denominator != 0)


class VectorSearch:
    """Cosine-similarity search over a chunk store, with a keyword fallback."""

    def __init__(self, store):
        self.store = store

    async def search(self,
                     query_embedding: Sequence[float],
                     tool_filter: Optional[str] = None,
                     limit: int = DEFAULT_LIMIT,
                     threshold: float = DEFAULT_THRESHOLD,
                     query_text: Optional[str] = None) -> List[SearchHit]:
        """Find chunks similar to ``query_embedding``.

        Args:
            query_embedding: Query vector, same dimension as stored embeddings
            tool_filter: Restrict results to one tool
            limit: Maximum number of hits
            threshold: Minimum cosine similarity
            query_text: Used for keyword matching when no chunk has an embedding

        Returns:
            Hits ordered by descending similarity
        """
        chunks = await self.store.list_chunks(tool_filter)
        embedded = [chunk for chunk in chunks if chunk.embedding]

        if not embedded:
            logger.warning("No chunks with embeddings found, falling back to text search")
            return self.text_search(chunks, query_text, limit)

        query = np.asarray(query_embedding, dtype=float)
        dimension = query.shape[0]
        comparable = [chunk for chunk in embedded if len(chunk.embedding) == dimension]
        if len(comparable) < len(embedded):
            logger.warning(f"Skipping {len(embedded) - len(comparable)} chunks with mismatched embedding dimension")
        if not comparable:
            return []

        matrix = np.asarray([chunk.embedding for chunk in comparable], dtype=float)
        scores = cosine_similarities(query, matrix)

        order = np.argsort(-scores, kind='stable')
        hits = [_hit(comparable[i], scores[i]) for i in order if scores[i] >= threshold]
        return hits[:limit]

    @staticmethod
    def text_search(chunks, query_text: Optional[str], limit: int = DEFAULT_LIMIT) -> List[SearchHit]:
        """Rank chunks by the share of query terms they contain."""
        if not query_text or not query_text.strip():
            return [_hit(chunk, TEXT_FALLBACK_SIMILARITY) for chunk in chunks[:limit]]

        terms = set(TERM.findall(query_text.lower()))
        if not terms:
            return []

        scored = []
        for chunk in chunks:
            words = set(TERM.findall(chunk.text.lower()))
            overlap = len(terms & words) / len(terms)
            if overlap > 0:
                scored.append(_hit(chunk, overlap))

        scored.sort(key=lambda hit: hit.similarity, reverse=True)
        return scored[:limit]
