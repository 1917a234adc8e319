"""
Indexer package for vecgrep.

This package turns files into chunks, chunks into vectors, and keeps the
SQLite index in sync with the filesystem.
"""

from vecgrep.indexer.database import IndexStore
from vecgrep.indexer.embeddings import (
    BatchEmbedder,
    EmbeddingEngine,
    HashingEngine,
    create_engine,
)
from vecgrep.indexer.harvester import Harvester
from vecgrep.indexer.indexer import Indexer
from vecgrep.indexer.models import (
    Chunk,
    EngineDescriptor,
    HarvestedChunk,
    IndexedFile,
    IndexReport,
    IndexStatus,
    SearchHit,
)
from vecgrep.indexer.walker import FileInfo, walk_roots

__all__ = [
    "BatchEmbedder",
    "Chunk",
    "EmbeddingEngine",
    "EngineDescriptor",
    "FileInfo",
    "HarvestedChunk",
    "HashingEngine",
    "Harvester",
    "IndexReport",
    "IndexStatus",
    "IndexStore",
    "IndexedFile",
    "Indexer",
    "SearchHit",
    "create_engine",
    "walk_roots",
]
