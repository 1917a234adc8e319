"""SQLite storage for files, chunks, and vectors."""

import json
import logging
import os
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import numpy as np

from vecgrep.indexer.errors import (
    ConstraintViolationError,
    EngineMismatchError,
    StorageError,
)
from vecgrep.indexer.models import (
    Chunk,
    EngineDescriptor,
    EngineStatus,
    FileBundle,
    HarvestedChunk,
    IndexedFile,
    IndexStatus,
    SearchHit,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0"

SCHEMA_SQL = """
-- vecgrep Index Schema v1.0
-- This index is disposable: it regenerates from the indexed files

PRAGMA journal_mode = WAL;

-- Files table
CREATE TABLE IF NOT EXISTS files (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    path         TEXT NOT NULL UNIQUE,
    size         INTEGER NOT NULL,
    mtime        REAL NOT NULL,
    content_hash TEXT NOT NULL,
    file_type    TEXT NOT NULL,
    indexed_at   TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_files_hash ON files(content_hash);

-- Chunks table
CREATE TABLE IF NOT EXISTS chunks (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    file_id     INTEGER NOT NULL,
    content     TEXT NOT NULL,
    start_line  INTEGER NOT NULL,
    end_line    INTEGER NOT NULL,
    chunk_type  TEXT NOT NULL,
    name        TEXT,
    metadata    TEXT,
    chunk_order INTEGER NOT NULL,
    FOREIGN KEY (file_id) REFERENCES files(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_chunks_file_order ON chunks(file_id, chunk_order);

-- Embedding engines, one fixed dimensionality each
CREATE TABLE IF NOT EXISTS engines (
    name        TEXT PRIMARY KEY,
    dimensions  INTEGER NOT NULL CHECK (dimensions > 0),
    created_at  TEXT NOT NULL DEFAULT (datetime('now'))
);

-- One vector per (chunk, engine), stored as little-endian float32
CREATE TABLE IF NOT EXISTS vectors (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    chunk_id    INTEGER NOT NULL,
    engine      TEXT NOT NULL,
    embedding   BLOB NOT NULL,
    created_at  TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE (chunk_id, engine),
    FOREIGN KEY (chunk_id) REFERENCES chunks(id) ON DELETE CASCADE,
    FOREIGN KEY (engine) REFERENCES engines(name)
);

CREATE INDEX IF NOT EXISTS idx_vectors_engine ON vectors(engine);

-- Keep every engine's vectors dimension-homogeneous
CREATE TRIGGER IF NOT EXISTS vectors_dimension_insert BEFORE INSERT ON vectors
WHEN length(NEW.embedding) != 4 * (SELECT dimensions FROM engines WHERE name = NEW.engine)
BEGIN
    SELECT RAISE(ABORT, 'vector dimension does not match engine');
END;

CREATE TRIGGER IF NOT EXISTS vectors_dimension_update BEFORE UPDATE OF embedding ON vectors
WHEN length(NEW.embedding) != 4 * (SELECT dimensions FROM engines WHERE name = NEW.engine)
BEGIN
    SELECT RAISE(ABORT, 'vector dimension does not match engine');
END;

-- Metadata table for index versioning
CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value TEXT
);

INSERT OR REPLACE INTO meta (key, value) VALUES ('schema_version', '1.0');
INSERT OR IGNORE INTO meta (key, value) VALUES ('created_at', datetime('now'));
"""


def _to_blob(vector) -> bytes:
    return np.asarray(vector, dtype="<f4").tobytes()


def _from_blob(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype="<f4")


def _scope_prefix(scope: str) -> str:
    """Scope with exactly one trailing separator, for component-wise matching."""
    return scope.rstrip(os.sep) + os.sep


class IndexStore:
    """
    SQLite store for the vecgrep index.

    Every thread gets its own connection. Writes are serialized by a lock
    and each public write method runs in one transaction; write_file()
    replaces a file's whole chunk and vector state atomically. WAL mode
    lets readers proceed while a write is in flight without ever seeing a
    half-committed file.
    """

    def __init__(self, db_path: Path):
        """Initialize the store (no connection is opened yet)."""
        self.db_path = Path(db_path)
        self._local = threading.local()
        self._write_lock = threading.Lock()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if getattr(self._local, "conn", None) is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), timeout=30.0, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return self._local.conn

    @contextmanager
    def _read_cursor(self) -> Iterator[sqlite3.Cursor]:
        """Get a cursor for read operations."""
        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            yield cursor
        finally:
            cursor.close()

    @contextmanager
    def _write_cursor(self) -> Iterator[sqlite3.Cursor]:
        """Get a cursor for write operations with locking."""
        with self._write_lock:
            conn = self._get_connection()
            cursor = conn.cursor()
            try:
                yield cursor
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def initialize(self) -> None:
        """
        Create the schema if needed.

        Raises:
            StorageError: The database cannot be opened or written.
        """
        try:
            with self._write_cursor() as cursor:
                cursor.executescript(SCHEMA_SQL)
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Cannot open index database {self.db_path}: {e}") from e

    def close_thread_connection(self) -> None:
        """Close the calling thread's connection, if it has one.

        Short-lived threads call this before exiting so their connection
        does not stay open until close().
        """
        conn = getattr(self._local, "conn", None)
        if conn is None:
            return
        with self._connections_lock:
            if conn in self._connections:
                self._connections.remove(conn)
        conn.close()
        self._local.conn = None

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    # File operations

    def get_file(self, path: str) -> IndexedFile | None:
        """Get a file by its absolute path."""
        with self._read_cursor() as cursor:
            cursor.execute("SELECT * FROM files WHERE path = ?", (path,))
            row = cursor.fetchone()
            return self._row_to_file(row) if row else None

    def list_files(self, prefix: str | None = None) -> list[IndexedFile]:
        """List files, optionally only those at or under a path prefix."""
        query = "SELECT * FROM files"
        params: list = []
        if prefix:
            query += " WHERE path = ? OR substr(path, 1, length(?)) = ?"
            scoped = _scope_prefix(prefix)
            params += [prefix.rstrip(os.sep), scoped, scoped]
        query += " ORDER BY path"
        with self._read_cursor() as cursor:
            cursor.execute(query, params)
            return [self._row_to_file(row) for row in cursor.fetchall()]

    def indexed_paths(self, prefix: str | None = None) -> set[str]:
        """Get all indexed paths, optionally under a prefix."""
        return {f.path for f in self.list_files(prefix)}

    def upsert_file(self, file: IndexedFile) -> int:
        """Insert or update a file, returning its ID."""
        with self._write_cursor() as cursor:
            return self._upsert_file(cursor, file)

    def touch_file(self, path: str, size: int, mtime: float) -> None:
        """Update only size/mtime bookkeeping for an unchanged file."""
        with self._write_cursor() as cursor:
            cursor.execute(
                "UPDATE files SET size = ?, mtime = ? WHERE path = ?",
                (size, mtime, path),
            )

    def delete_file(self, path: str) -> bool:
        """Delete a file by path; its chunks and vectors cascade."""
        with self._write_cursor() as cursor:
            cursor.execute("DELETE FROM files WHERE path = ?", (path,))
            return cursor.rowcount > 0

    def _upsert_file(self, cursor: sqlite3.Cursor, file: IndexedFile) -> int:
        cursor.execute(
            """INSERT INTO files (path, size, mtime, content_hash, file_type)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(path) DO UPDATE SET
                size = excluded.size,
                mtime = excluded.mtime,
                content_hash = excluded.content_hash,
                file_type = excluded.file_type,
                indexed_at = datetime('now')
            """,
            (file.path, file.size, file.mtime, file.content_hash, file.file_type),
        )
        cursor.execute("SELECT id FROM files WHERE path = ?", (file.path,))
        return cursor.fetchone()["id"]

    def _row_to_file(self, row: sqlite3.Row) -> IndexedFile:
        """Convert a database row to an IndexedFile."""
        return IndexedFile(
            id=row["id"],
            path=row["path"],
            size=row["size"],
            mtime=row["mtime"],
            content_hash=row["content_hash"],
            file_type=row["file_type"],
            indexed_at=datetime.fromisoformat(row["indexed_at"]),
        )

    # Chunk operations

    def get_chunks(self, file_id: int) -> list[Chunk]:
        """Get all chunks for a file in harvest order."""
        with self._read_cursor() as cursor:
            cursor.execute(
                """SELECT * FROM chunks
                WHERE file_id = ?
                ORDER BY chunk_order""",
                (file_id,),
            )
            return [
                Chunk(
                    id=row["id"],
                    file_id=row["file_id"],
                    content=row["content"],
                    start_line=row["start_line"],
                    end_line=row["end_line"],
                    chunk_type=row["chunk_type"],
                    name=row["name"],
                    metadata=json.loads(row["metadata"]) if row["metadata"] else {},
                    chunk_order=row["chunk_order"],
                )
                for row in cursor.fetchall()
            ]

    def insert_chunks(self, file_id: int, chunks: list[HarvestedChunk]) -> list[int]:
        """Insert chunks for a file, returning their IDs in order."""
        with self._write_cursor() as cursor:
            return self._insert_chunks(cursor, file_id, chunks)

    def delete_chunks_for_file(self, file_id: int) -> None:
        """Delete all chunks (and their vectors) for a file."""
        with self._write_cursor() as cursor:
            cursor.execute("DELETE FROM chunks WHERE file_id = ?", (file_id,))

    def _insert_chunks(
        self, cursor: sqlite3.Cursor, file_id: int, chunks: list[HarvestedChunk]
    ) -> list[int]:
        ids: list[int] = []
        for order, chunk in enumerate(chunks):
            cursor.execute(
                """INSERT INTO chunks
                (file_id, content, start_line, end_line, chunk_type, name, metadata, chunk_order)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    file_id,
                    chunk.content,
                    chunk.start_line,
                    chunk.end_line,
                    chunk.chunk_type,
                    chunk.name,
                    json.dumps(chunk.metadata) if chunk.metadata else None,
                    order,
                ),
            )
            ids.append(cursor.lastrowid)  # type: ignore[arg-type]
        return ids

    # Engine and vector operations

    def register_engine(self, engine: EngineDescriptor) -> None:
        """
        Record an engine's dimensionality.

        Raises:
            EngineMismatchError: The engine is registered with other dimensions.
        """
        with self._write_cursor() as cursor:
            self._ensure_engine(cursor, engine)

    def get_engine(self, name: str) -> EngineDescriptor | None:
        with self._read_cursor() as cursor:
            cursor.execute("SELECT name, dimensions FROM engines WHERE name = ?", (name,))
            row = cursor.fetchone()
            return EngineDescriptor(row["name"], row["dimensions"]) if row else None

    def _ensure_engine(self, cursor: sqlite3.Cursor, engine: EngineDescriptor) -> None:
        cursor.execute(
            "INSERT OR IGNORE INTO engines (name, dimensions) VALUES (?, ?)",
            (engine.name, engine.dimensions),
        )
        cursor.execute("SELECT dimensions FROM engines WHERE name = ?", (engine.name,))
        registered = cursor.fetchone()["dimensions"]
        if registered != engine.dimensions:
            raise EngineMismatchError(
                f"Engine {engine.name} is registered with {registered} dimensions, "
                f"got {engine.dimensions}"
            )

    def insert_vectors(self, engine: str, items: Iterable[tuple[int, np.ndarray]]) -> None:
        """Insert (chunk_id, vector) pairs; an existing (chunk, engine) vector is replaced."""
        with self._write_cursor() as cursor:
            self._insert_vectors(cursor, engine, items)

    def _insert_vectors(
        self, cursor: sqlite3.Cursor, engine: str, items: Iterable[tuple[int, np.ndarray]]
    ) -> None:
        cursor.executemany(
            """INSERT INTO vectors (chunk_id, engine, embedding)
            VALUES (?, ?, ?)
            ON CONFLICT(chunk_id, engine) DO UPDATE SET
                embedding = excluded.embedding,
                created_at = datetime('now')
            """,
            [(chunk_id, engine, _to_blob(vector)) for chunk_id, vector in items],
        )

    def get_vector(self, chunk_id: int, engine: str) -> np.ndarray | None:
        with self._read_cursor() as cursor:
            cursor.execute(
                "SELECT embedding FROM vectors WHERE chunk_id = ? AND engine = ?",
                (chunk_id, engine),
            )
            row = cursor.fetchone()
            return _from_blob(row["embedding"]) if row else None

    def count_vectors(self, engine: str | None = None) -> int:
        with self._read_cursor() as cursor:
            if engine is None:
                cursor.execute("SELECT COUNT(*) AS n FROM vectors")
            else:
                cursor.execute("SELECT COUNT(*) AS n FROM vectors WHERE engine = ?", (engine,))
            return cursor.fetchone()["n"]

    # Per-file transaction

    def write_file(self, bundle: FileBundle) -> int:
        """
        Replace a file's indexed state in one transaction.

        Upserts the file row, deletes its old chunks (vectors cascade), and
        inserts the new chunks and their vectors. Either everything commits
        or nothing does.

        Raises:
            ConstraintViolationError: A storage constraint rejected the write.
            EngineMismatchError: The engine's dimensions disagree with the index.
        """
        if len(bundle.vectors) != len(bundle.chunks):
            raise ValueError(
                f"{bundle.file.path}: {len(bundle.chunks)} chunks but {len(bundle.vectors)} vectors"
            )
        with self._write_cursor() as cursor:
            try:
                self._ensure_engine(cursor, bundle.engine)
                file_id = self._upsert_file(cursor, bundle.file)
                cursor.execute("DELETE FROM chunks WHERE file_id = ?", (file_id,))
                chunk_ids = self._insert_chunks(cursor, file_id, bundle.chunks)
                self._insert_vectors(cursor, bundle.engine.name, zip(chunk_ids, bundle.vectors))
            except sqlite3.IntegrityError as e:
                raise ConstraintViolationError(bundle.file.path, str(e)) from e
        return file_id

    # Search operations

    def search_similar(
        self,
        query_vector: np.ndarray,
        engine: str,
        limit: int = 10,
        scope: str | None = None,
        threshold: float | None = None,
    ) -> list[SearchHit]:
        """
        Find the chunks most similar to a query vector.

        Only vectors of the given engine are compared. With a scope, only
        files at or under that path are considered. Results below the
        threshold are dropped before truncating to limit. Ordering is by
        cosine similarity descending, then path, then start line.

        Raises:
            EngineMismatchError: The query vector has the wrong dimensionality.
        """
        if limit <= 0:
            return []
        descriptor = self.get_engine(engine)
        if descriptor is None:
            return []

        query = np.asarray(query_vector, dtype=np.float32).ravel()
        if query.shape[0] != descriptor.dimensions:
            raise EngineMismatchError(
                f"Query vector has {query.shape[0]} dimensions, "
                f"engine {engine} uses {descriptor.dimensions}"
            )

        sql = """
            SELECT c.id AS chunk_id, f.path, c.start_line, v.embedding
            FROM vectors v
            JOIN chunks c ON v.chunk_id = c.id
            JOIN files f ON c.file_id = f.id
            WHERE v.engine = ?
        """
        params: list = [engine]
        if scope and scope.rstrip(os.sep):
            prefix = _scope_prefix(scope)
            sql += " AND (f.path = ? OR substr(f.path, 1, length(?)) = ?)"
            params += [scope.rstrip(os.sep), prefix, prefix]

        with self._read_cursor() as cursor:
            cursor.execute(sql, params)
            rows = cursor.fetchall()
        if not rows:
            return []

        matrix = _from_blob(b"".join(row["embedding"] for row in rows)).reshape(
            len(rows), descriptor.dimensions
        )
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        similarities = np.divide(
            matrix @ query,
            norms,
            out=np.zeros(len(rows), dtype=np.float32),
            where=norms > 0,
        )

        candidates = [
            (float(similarities[i]), row["path"], row["start_line"], row["chunk_id"])
            for i, row in enumerate(rows)
            if threshold is None or similarities[i] >= threshold
        ]
        candidates.sort(key=lambda c: (-c[0], c[1], c[2]))
        top = candidates[:limit]
        if not top:
            return []

        placeholders = ",".join("?" * len(top))
        with self._read_cursor() as cursor:
            cursor.execute(
                f"""SELECT id, end_line, chunk_type, name, content
                FROM chunks WHERE id IN ({placeholders})""",
                [c[3] for c in top],
            )
            details = {row["id"]: row for row in cursor.fetchall()}

        hits: list[SearchHit] = []
        for similarity, path, start_line, chunk_id in top:
            row = details.get(chunk_id)
            if row is None:
                # Deleted between the two reads
                continue
            hits.append(
                SearchHit(
                    chunk_id=chunk_id,
                    path=path,
                    start_line=start_line,
                    end_line=row["end_line"],
                    chunk_type=row["chunk_type"],
                    name=row["name"],
                    content=row["content"],
                    similarity=similarity,
                )
            )
        return hits

    # Status

    def status(self) -> IndexStatus:
        """Summarize index contents."""
        with self._read_cursor() as cursor:
            cursor.execute("SELECT value FROM meta WHERE key = 'schema_version'")
            row = cursor.fetchone()
            schema_version = row["value"] if row else None

            cursor.execute("SELECT COUNT(*) AS n, MAX(indexed_at) AS last FROM files")
            row = cursor.fetchone()
            files = row["n"]
            last = datetime.fromisoformat(row["last"]) if row["last"] else None

            cursor.execute("SELECT COUNT(*) AS n FROM chunks")
            chunks = cursor.fetchone()["n"]

            cursor.execute(
                """SELECT e.name, e.dimensions, COUNT(v.id) AS vectors
                FROM engines e LEFT JOIN vectors v ON v.engine = e.name
                GROUP BY e.name, e.dimensions
                ORDER BY e.name"""
            )
            engines = [
                EngineStatus(row["name"], row["dimensions"], row["vectors"])
                for row in cursor.fetchall()
            ]

        return IndexStatus(
            db_path=str(self.db_path),
            schema_version=schema_version,
            files=files,
            chunks=chunks,
            engines=engines,
            last_indexed_at=last,
        )
