"""Data models for the indexer."""

from dataclasses import dataclass, field
from datetime import datetime

# File type classifications
FILE_TYPE_CODE = "code"
FILE_TYPE_TEXT = "text"
FILE_TYPE_CONFIG = "config"
FILE_TYPE_MEDIA = "media"

# Chunk type tags
CHUNK_FUNCTION = "function"
CHUNK_TYPE = "type"
CHUNK_METHOD = "method"
CHUNK_TEXT = "text"
CHUNK_CONFIG = "config"
CHUNK_METADATA = "metadata"

CHUNK_TYPES = frozenset(
    {CHUNK_FUNCTION, CHUNK_TYPE, CHUNK_METHOD, CHUNK_TEXT, CHUNK_CONFIG, CHUNK_METADATA}
)


@dataclass
class IndexedFile:
    """Represents a file in the index."""

    id: int | None = None
    path: str = ""  # Absolute, resolved
    size: int = 0
    mtime: float = 0.0
    content_hash: str = ""
    file_type: str = FILE_TYPE_TEXT
    indexed_at: datetime | None = None


@dataclass
class HarvestedChunk:
    """A chunk produced by the harvester, before it is persisted."""

    content: str
    start_line: int
    end_line: int
    chunk_type: str = CHUNK_TEXT
    name: str | None = None
    metadata: dict = field(default_factory=dict)


@dataclass
class Chunk:
    """Represents a persisted chunk of a file."""

    id: int | None = None
    file_id: int = 0
    content: str = ""
    start_line: int = 1
    end_line: int = 1
    chunk_type: str = CHUNK_TEXT
    name: str | None = None
    metadata: dict = field(default_factory=dict)
    chunk_order: int = 0


@dataclass(frozen=True)
class EngineDescriptor:
    """Static identity of an embedding engine."""

    name: str
    dimensions: int


@dataclass
class FileBundle:
    """Everything the writer needs to replace one file's indexed state."""

    file: IndexedFile
    chunks: list[HarvestedChunk]
    vectors: list  # One numpy vector per chunk, same order
    engine: EngineDescriptor


@dataclass
class SearchHit:
    """A nearest-neighbor match returned by the store."""

    chunk_id: int
    path: str
    start_line: int
    end_line: int
    chunk_type: str
    name: str | None
    content: str
    similarity: float


@dataclass
class IndexReport:
    """Outcome of one indexing run."""

    added: int = 0
    updated: int = 0
    unchanged: int = 0
    touched: int = 0  # mtime changed, content did not
    deleted: int = 0
    failed: list[tuple[str, str]] = field(default_factory=list)
    cancelled: bool = False

    @property
    def changed(self) -> int:
        return self.added + self.updated + self.deleted


@dataclass
class EngineStatus:
    """Vector statistics for one registered engine."""

    name: str
    dimensions: int
    vectors: int


@dataclass
class IndexStatus:
    """Summary of index health."""

    db_path: str
    schema_version: str | None
    files: int
    chunks: int
    engines: list[EngineStatus] = field(default_factory=list)
    last_indexed_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "db_path": self.db_path,
            "schema_version": self.schema_version,
            "files": self.files,
            "chunks": self.chunks,
            "engines": [
                {"name": e.name, "dimensions": e.dimensions, "vectors": e.vectors}
                for e in self.engines
            ],
            "last_indexed_at": (
                self.last_indexed_at.isoformat() if self.last_indexed_at else None
            ),
        }
