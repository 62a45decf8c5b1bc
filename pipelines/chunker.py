"""Document chunking pipeline for DocManifest.

Splits normalized document text into token-bounded, overlapping chunks aligned
to Markdown heading boundaries.
"""

import hashlib
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

import tiktoken

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = 'text-embedding-3-small'
FALLBACK_ENCODING = 'cl100k_base'
CHARS_PER_TOKEN = 4

HEADING_PATTERN = re.compile(r'^#{1,6}\s+\S')


@dataclass
class ChunkInput:
    """Text of one document plus the attribution carried onto its chunks."""
    tool_id: str
    text: str
    source_url: Optional[str] = None
    section: Optional[str] = None
    version: Optional[str] = None


@dataclass
class Chunk:
    """A token-bounded slice of a document, as persisted by the chunk store."""
    tool_id: str
    text: str
    source_url: Optional[str] = None
    section: Optional[str] = None
    version: str = 'latest'
    embedding: Optional[List[float]] = None
    token_count: int = 0
    chunk_index: int = 0
    total_chunks: int = 0
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Chunk':
        known = {name: data[name] for name in cls.__dataclass_fields__ if name in data}
        return cls(**known)


@dataclass
class Section:
    title: Optional[str]
    content: str


class CharacterTokenizer:
    """Deterministic stand-in tokenizer: one token per four characters."""

    def encode(self, text: str) -> List[str]:
        return [text[i:i + CHARS_PER_TOKEN] for i in range(0, len(text), CHARS_PER_TOKEN)]

    def decode(self, tokens: Sequence[str]) -> str:
        return ''.join(tokens)


class TiktokenTokenizer:
    """Adapter around a tiktoken encoding."""

    def __init__(self, encoding: 'tiktoken.Encoding'):
        self.encoding = encoding

    def encode(self, text: str) -> List[int]:
        return self.encoding.encode(text, disallowed_special=())

    def decode(self, tokens: Sequence[int]) -> str:
        return self.encoding.decode(list(tokens))


class TokenizerCache:
    """Lazily loads and holds the tiktoken encoder for one model.

    A failed load is remembered (cached as None) until clear() is called.
    """

    _UNSET = object()

    def __init__(self, model: str = DEFAULT_MODEL):
        self.model = model
        self._tokenizer = self._UNSET

    def get(self) -> Optional[TiktokenTokenizer]:
        if self._tokenizer is self._UNSET:
            self._tokenizer = self._load()
        return self._tokenizer

    def clear(self) -> None:
        self._tokenizer = self._UNSET

    def _load(self) -> Optional[TiktokenTokenizer]:
        try:
            return TiktokenTokenizer(tiktoken.encoding_for_model(self.model))
        except Exception as e:
            logger.debug(f"No tiktoken encoding for model {self.model}: {e}")

        try:
            return TiktokenTokenizer(tiktoken.get_encoding(FALLBACK_ENCODING))
        except Exception as e:
            logger.warning(f"Failed to initialize tiktoken encoder, using character fallback: {e}")
            return None


def split_into_sections(text: str, fallback_title: Optional[str] = None) -> List[Section]:
    """Split text at Markdown headings, labelling each part with its latest heading."""
    sections: List[Section] = []
    current_title = fallback_title
    buffer: List[str] = []

    def push_section():
        content = '\n'.join(buffer).strip()
        if content:
            sections.append(Section(title=current_title, content=content))
        buffer.clear()

    for raw_line in text.split('\n'):
        line = raw_line.rstrip()
        if HEADING_PATTERN.match(line):
            if buffer:
                push_section()
            current_title = re.sub(r'^#{1,6}\s*', '', line).strip() or current_title
        buffer.append(raw_line)

    if buffer:
        push_section()

    return sections


class DocumentChunker:
    """Chunks documents into token windows of [min_tokens, max_tokens].

    Windows advance by ``max_tokens - overlap_tokens``. A trailing window that
    is shorter than ``min_tokens`` is appended to the previous chunk of the
    same section instead of being emitted on its own.
    """

    def __init__(self,
                 min_tokens: int = 300,
                 max_tokens: int = 1000,
                 overlap_tokens: int = 100,
                 model: str = DEFAULT_MODEL,
                 tokenizer=None,
                 tokenizer_cache: Optional[TokenizerCache] = None):
        """Initialize chunker.

        Args:
            min_tokens: Minimum tokens per chunk
            max_tokens: Maximum tokens per chunk
            overlap_tokens: Tokens shared by consecutive chunks of a section
            model: Model whose tiktoken encoding is used for counting
            tokenizer: Explicit tokenizer (anything with encode/decode); skips tiktoken
            tokenizer_cache: Shared encoder cache, created per chunker when omitted

        Raises:
            ConfigurationError: If the token limits are inconsistent
        """
        if min_tokens < 0 or max_tokens <= 0:
            raise ConfigurationError("Token limits must be positive")
        if min_tokens >= max_tokens:
            raise ConfigurationError("min_tokens must be less than max_tokens")
        if overlap_tokens < 0 or overlap_tokens >= max_tokens:
            raise ConfigurationError("overlap_tokens must be between 0 and max_tokens")

        self.min_tokens = min_tokens
        self.max_tokens = max_tokens
        self.overlap_tokens = overlap_tokens
        self.model = model
        self.tokenizer = tokenizer
        self.tokenizer_cache = tokenizer_cache or TokenizerCache(model)

    def _resolve_tokenizer(self):
        if self.tokenizer is not None:
            return self.tokenizer
        return self.tokenizer_cache.get() or CharacterTokenizer()

    def estimate_token_count(self, text: str) -> int:
        tokenizer = self._resolve_tokenizer()
        if isinstance(tokenizer, CharacterTokenizer):
            return max(round(len(text) / CHARS_PER_TOKEN), 1)
        return len(tokenizer.encode(text))

    def chunk_document(self, document: ChunkInput) -> List[Chunk]:
        """Chunk a single document.

        Returns:
            Chunks with contiguous ``chunk_index`` values and a shared ``total_chunks``
        """
        if not document.text or not document.text.strip():
            return []

        tokenizer = self._resolve_tokenizer()
        version = document.version or 'latest'
        chunks: List[Chunk] = []

        for section in split_into_sections(document.text, document.section):
            tokens = tokenizer.encode(section.content)
            section_label = section.title or document.section
            section_chunks = 0
            start = 0

            while start < len(tokens):
                end = min(start + self.max_tokens, len(tokens))
                window = tokens[start:end]

                if end >= len(tokens) and len(window) < self.min_tokens and section_chunks > 0:
                    unique = window[min(self.overlap_tokens, len(window)):]
                    if unique:
                        previous = chunks[-1]
                        previous.text = f"{previous.text}\n\n{tokenizer.decode(unique).strip()}".strip()
                        previous.token_count += len(unique)
                    break

                text = tokenizer.decode(window).strip()
                if not text:
                    break

                chunks.append(Chunk(
                    tool_id=document.tool_id,
                    text=text,
                    source_url=document.source_url,
                    section=section_label,
                    version=version,
                    token_count=len(window),
                    chunk_index=len(chunks),
                ))
                section_chunks += 1

                if end >= len(tokens):
                    break
                start = max(end - self.overlap_tokens, start + 1)

        total_chunks = len(chunks)
        for chunk in chunks:
            chunk.total_chunks = total_chunks
            chunk.id = self._stable_chunk_id(chunk)

        logger.debug(f"Created {total_chunks} chunks for {document.source_url or document.tool_id}")
        return chunks

    def chunk_documents(self, documents: Iterable[ChunkInput]) -> List[Chunk]:
        """Chunk multiple documents, skipping any that fail."""
        all_chunks = []
        count = 0

        for document in documents:
            count += 1
            try:
                all_chunks.extend(self.chunk_document(document))
            except Exception as e:
                logger.error(f"Failed to chunk document {document.source_url or 'unknown'}: {e}")

        logger.info(f"Created {len(all_chunks)} chunks from {count} documents")
        return all_chunks

    @staticmethod
    def _stable_chunk_id(chunk: Chunk) -> str:
        content_hash = hashlib.sha256(chunk.text.encode()).hexdigest()[:12]
        key = f"{chunk.tool_id}#{chunk.source_url or ''}#{chunk.section or 'root'}#{chunk.chunk_index}#{content_hash}"
        return hashlib.md5(key.encode()).hexdigest()[:16]


# Convenience functions
def chunk_document(document: ChunkInput, **options) -> List[Chunk]:
    """Convenience function to chunk a single document."""
    return DocumentChunker(**options).chunk_document(document)


def estimate_token_count(text: str, **options) -> int:
    return DocumentChunker(**options).estimate_token_count(text)
