"""Chunk and tool storage for DocManifest.

Provides the storage interfaces the pipelines talk to, plus in-memory and
SQLite implementations. The SQLite adapter keeps the async interface of the
other stores while running statements on a plain ``sqlite3`` connection.
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError

from manifests.models import IDEManifest
from pipelines.chunker import Chunk
from pipelines.errors import StorageError

logger = logging.getLogger(__name__)


@dataclass
class StoreResult:
    """Outcome of a write. ``error`` is None on success."""
    error: Optional[str] = None
    count: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ToolRecord:
    id: str
    name: str
    manifest: Optional[IDEManifest] = None


class ChunkStore(ABC):
    """Persistence of document chunks."""

    @abstractmethod
    async def bulk_insert(self, chunks: List[Chunk]) -> StoreResult:
        pass

    @abstractmethod
    async def query_without_embedding(self, tool_id: Optional[str] = None) -> List[Chunk]:
        pass

    @abstractmethod
    async def delete_by_tool(self, tool_id: str) -> StoreResult:
        pass

    @abstractmethod
    async def delete_chunks(self, chunk_ids: List[str]) -> StoreResult:
        """Delete chunks by id; unknown ids are ignored."""
        pass

    @abstractmethod
    async def update_embedding(self, chunk_id: str, embedding: List[float]) -> StoreResult:
        pass

    @abstractmethod
    async def list_chunks(self, tool_id: Optional[str] = None, limit: Optional[int] = None) -> List[Chunk]:
        pass


class ToolStore(ABC):
    """Persistence of tools and their manifests."""

    @abstractmethod
    async def get_tool(self, tool_id: str) -> Optional[ToolRecord]:
        pass

    @abstractmethod
    async def list_tool_ids(self) -> List[str]:
        """Ids of every registered tool, sorted."""
        pass

    @abstractmethod
    async def register_tool(self, tool_id: str, name: str) -> StoreResult:
        """Create the tool if needed and set its display name."""
        pass

    @abstractmethod
    async def save_manifest(self, tool_id: str, manifest: IDEManifest, name: Optional[str] = None) -> StoreResult:
        pass


def _load_manifest(raw, tool_id: str) -> Optional[IDEManifest]:
    if raw is None:
        return None
    try:
        if isinstance(raw, str):
            return IDEManifest.from_json(raw)
        return IDEManifest.from_dict(raw)
    except (ValidationError, ValueError) as e:
        raise StorageError(f"Stored manifest for {tool_id} is invalid: {e}") from e


class InMemoryChunkStore(ChunkStore):
    """Dictionary-backed chunk store keyed by chunk id, in insertion order."""

    def __init__(self):
        self.chunks: Dict[str, Chunk] = {}

    async def bulk_insert(self, chunks: List[Chunk]) -> StoreResult:
        if any(not chunk.id for chunk in chunks):
            return StoreResult(error='Chunk is missing an id')
        for chunk in chunks:
            self.chunks[chunk.id] = chunk
        return StoreResult(count=len(chunks))

    async def query_without_embedding(self, tool_id: Optional[str] = None) -> List[Chunk]:
        return [chunk for chunk in self.chunks.values()
                if chunk.embedding is None and (tool_id is None or chunk.tool_id == tool_id)]

    async def delete_by_tool(self, tool_id: str) -> StoreResult:
        doomed = [chunk_id for chunk_id, chunk in self.chunks.items() if chunk.tool_id == tool_id]
        for chunk_id in doomed:
            del self.chunks[chunk_id]
        return StoreResult(count=len(doomed))

    async def delete_chunks(self, chunk_ids: List[str]) -> StoreResult:
        doomed = [chunk_id for chunk_id in set(chunk_ids) if chunk_id in self.chunks]
        for chunk_id in doomed:
            del self.chunks[chunk_id]
        return StoreResult(count=len(doomed))

    async def update_embedding(self, chunk_id: str, embedding: List[float]) -> StoreResult:
        chunk = self.chunks.get(chunk_id)
        if chunk is None:
            return StoreResult(error=f"Chunk not found: {chunk_id}")
        chunk.embedding = list(embedding)
        return StoreResult(count=1)

    async def list_chunks(self, tool_id: Optional[str] = None, limit: Optional[int] = None) -> List[Chunk]:
        found = [chunk for chunk in self.chunks.values() if tool_id is None or chunk.tool_id == tool_id]
        return found[:limit] if limit is not None else found


class InMemoryToolStore(ToolStore):
    """Tool store that keeps manifests as JSON, so loads re-validate like the SQLite store."""

    def __init__(self, tools: Optional[Iterable[ToolRecord]] = None):
        self._names: Dict[str, str] = {}
        self._manifests: Dict[str, Optional[str]] = {}
        for tool in tools or []:
            self.add_tool(tool.id, tool.name, tool.manifest)

    def add_tool(self, tool_id: str, name: str, manifest: Optional[IDEManifest] = None):
        self._names[tool_id] = name
        self._manifests[tool_id] = manifest.to_json() if manifest else None

    async def list_tool_ids(self) -> List[str]:
        return sorted(self._names)

    async def register_tool(self, tool_id: str, name: str) -> StoreResult:
        self._names[tool_id] = name
        self._manifests.setdefault(tool_id, None)
        return StoreResult(count=1)

    async def get_tool(self, tool_id: str) -> Optional[ToolRecord]:
        if tool_id not in self._names:
            return None
        return ToolRecord(id=tool_id, name=self._names[tool_id],
                          manifest=_load_manifest(self._manifests[tool_id], tool_id))

    async def save_manifest(self, tool_id: str, manifest: IDEManifest, name: Optional[str] = None) -> StoreResult:
        self._names[tool_id] = name or self._names.get(tool_id) or manifest.name
        self._manifests[tool_id] = manifest.to_json()
        return StoreResult(count=1)


SCHEMA = """
CREATE TABLE IF NOT EXISTS tools (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    manifest TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS chunks (
    id TEXT PRIMARY KEY,
    tool_id TEXT NOT NULL,
    text TEXT NOT NULL,
    source_url TEXT,
    section TEXT,
    version TEXT NOT NULL DEFAULT 'latest',
    embedding TEXT,
    token_count INTEGER DEFAULT 0,
    chunk_index INTEGER DEFAULT 0,
    total_chunks INTEGER DEFAULT 0,
    created_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_chunks_tool ON chunks(tool_id);
"""


class SQLiteStore(ChunkStore, ToolStore):
    """SQLite-backed chunk and tool store. Embeddings and manifests are JSON columns."""

    def __init__(self, db_path: str = 'docmanifest.db'):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None

    async def initialize(self):
        """Open the connection and ensure the schema exists."""
        if self.conn is not None:
            return
        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.executescript(SCHEMA)
            self.conn.commit()
            logger.info(f"SQLite store initialized: {self.db_path}")
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize SQLite store: {e}")
            raise StorageError(f"Failed to initialize SQLite store: {e}") from e

    async def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("SQLite connection closed")

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _connection(self) -> sqlite3.Connection:
        if self.conn is None:
            raise StorageError('SQLite store is not initialized')
        return self.conn

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row) -> Chunk:
        return Chunk(
            id=row['id'],
            tool_id=row['tool_id'],
            text=row['text'],
            source_url=row['source_url'],
            section=row['section'],
            version=row['version'],
            embedding=json.loads(row['embedding']) if row['embedding'] else None,
            token_count=row['token_count'],
            chunk_index=row['chunk_index'],
            total_chunks=row['total_chunks'],
        )

    async def bulk_insert(self, chunks: List[Chunk]) -> StoreResult:
        conn = self._connection()
        now = datetime.now(timezone.utc).isoformat()
        rows = [
            (chunk.id, chunk.tool_id, chunk.text, chunk.source_url, chunk.section, chunk.version,
             json.dumps(chunk.embedding) if chunk.embedding is not None else None,
             chunk.token_count, chunk.chunk_index, chunk.total_chunks, now)
            for chunk in chunks
        ]
        try:
            conn.executemany(
                """
                INSERT OR REPLACE INTO chunks (id, tool_id, text, source_url, section, version,
                                               embedding, token_count, chunk_index, total_chunks, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"Error inserting chunks: {e}")
            return StoreResult(error=str(e))
        return StoreResult(count=len(rows))

    async def query_without_embedding(self, tool_id: Optional[str] = None) -> List[Chunk]:
        query = "SELECT * FROM chunks WHERE embedding IS NULL"
        params: list = []
        if tool_id is not None:
            query += " AND tool_id = ?"
            params.append(tool_id)
        query += " ORDER BY rowid"
        return [self._row_to_chunk(row) for row in self._connection().execute(query, params).fetchall()]

    async def delete_by_tool(self, tool_id: str) -> StoreResult:
        conn = self._connection()
        try:
            cursor = conn.execute("DELETE FROM chunks WHERE tool_id = ?", (tool_id,))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            return StoreResult(error=str(e))
        return StoreResult(count=cursor.rowcount)

    async def delete_chunks(self, chunk_ids: List[str]) -> StoreResult:
        conn = self._connection()
        deleted = 0
        try:
            for chunk_id in set(chunk_ids):
                deleted += conn.execute("DELETE FROM chunks WHERE id = ?", (chunk_id,)).rowcount
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            return StoreResult(error=str(e))
        return StoreResult(count=deleted)

    async def update_embedding(self, chunk_id: str, embedding: List[float]) -> StoreResult:
        conn = self._connection()
        try:
            cursor = conn.execute("UPDATE chunks SET embedding = ? WHERE id = ?",
                                  (json.dumps([float(value) for value in embedding]), chunk_id))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            return StoreResult(error=str(e))
        if cursor.rowcount == 0:
            return StoreResult(error=f"Chunk not found: {chunk_id}")
        return StoreResult(count=1)

    async def list_chunks(self, tool_id: Optional[str] = None, limit: Optional[int] = None) -> List[Chunk]:
        query = "SELECT * FROM chunks"
        params: list = []
        if tool_id is not None:
            query += " WHERE tool_id = ?"
            params.append(tool_id)
        query += " ORDER BY rowid"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        return [self._row_to_chunk(row) for row in self._connection().execute(query, params).fetchall()]

    async def list_tool_ids(self) -> List[str]:
        rows = self._connection().execute("SELECT id FROM tools ORDER BY id").fetchall()
        return [row['id'] for row in rows]

    async def register_tool(self, tool_id: str, name: str) -> StoreResult:
        conn = self._connection()
        conn.execute(
            "INSERT INTO tools (id, name, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET name = excluded.name",
            (tool_id, name, datetime.now(timezone.utc).isoformat()),
        )
        conn.commit()
        return StoreResult(count=1)

    async def get_tool(self, tool_id: str) -> Optional[ToolRecord]:
        row = self._connection().execute(
            "SELECT id, name, manifest FROM tools WHERE id = ?", (tool_id,)
        ).fetchone()
        if row is None:
            return None
        return ToolRecord(id=row['id'], name=row['name'], manifest=_load_manifest(row['manifest'], tool_id))

    async def save_manifest(self, tool_id: str, manifest: IDEManifest, name: Optional[str] = None) -> StoreResult:
        conn = self._connection()
        try:
            conn.execute(
                """
                INSERT INTO tools (id, name, manifest, updated_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET manifest = excluded.manifest,
                                              name = COALESCE(?, tools.name),
                                              updated_at = excluded.updated_at
                """,
                (tool_id, name or manifest.name, manifest.to_json(),
                 datetime.now(timezone.utc).isoformat(), name),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"Error saving manifest for {tool_id}: {e}")
            return StoreResult(error=str(e))
        logger.info(f"Saved manifest for {tool_id}")
        return StoreResult(count=1)


class InMemoryStore(InMemoryChunkStore, InMemoryToolStore):
    """Chunk and tool store in one process-local object."""

    def __init__(self, tools: Optional[Iterable[ToolRecord]] = None):
        InMemoryChunkStore.__init__(self)
        InMemoryToolStore.__init__(self, tools)

    async def initialize(self):
        pass

    async def close(self):
        pass
