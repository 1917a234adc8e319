"""Query engine: natural-language search over the vector index."""

import logging
from dataclasses import asdict, dataclass
from pathlib import Path

from vecgrep.indexer.database import IndexStore
from vecgrep.indexer.embeddings import BatchEmbedder, EmbeddingEngine
from vecgrep.indexer.errors import ScopeNotFoundError
from vecgrep.indexer.models import CHUNK_METADATA, SearchHit

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
DEFAULT_THRESHOLD = 0.25
DEFAULT_CONTEXT_LINES = 2


@dataclass
class QueryResult:
    """A ranked search result with surrounding context."""

    path: str
    start_line: int  # First line of content, context included
    end_line: int
    chunk_start_line: int  # The matched chunk itself
    chunk_end_line: int
    chunk_type: str
    name: str | None
    similarity: float
    content: str

    def to_dict(self) -> dict:
        result = asdict(self)
        result["similarity"] = round(self.similarity, 4)
        return result


def _read_lines(path: str) -> list[str]:
    text = Path(path).read_bytes().decode("utf-8", errors="replace")
    lines = text.split("\n")
    if text.endswith("\n"):
        lines.pop()
    return lines


class QueryEngine:
    """
    Embeds queries and turns nearest chunks into results with context.

    Uses the same engine that indexed the chunks; vectors of other engines
    are never compared.
    """

    def __init__(
        self,
        store: IndexStore,
        engine: EmbeddingEngine,
        limit: int = DEFAULT_LIMIT,
        threshold: float = DEFAULT_THRESHOLD,
        context_lines: int = DEFAULT_CONTEXT_LINES,
    ):
        self.store = store
        self.engine = engine
        self.embedder = BatchEmbedder(engine, batch_size=1)
        self.limit = limit
        self.threshold = threshold
        self.context_lines = context_lines

    def search(
        self,
        query: str,
        limit: int | None = None,
        scope: Path | str | None = None,
        threshold: float | None = None,
        context_lines: int | None = None,
    ) -> list[QueryResult]:
        """
        Search the index for chunks similar to a natural-language query.

        Args:
            query: Free-text query
            limit: Maximum number of results
            scope: Only return files at or under this path
            threshold: Minimum cosine similarity
            context_lines: Lines of context added on each side of a match

        Returns:
            Results ordered by similarity, then path, then line.

        Raises:
            ValueError: The query is empty.
            ScopeNotFoundError: The scope path does not exist.
            EmbeddingError: The query could not be embedded.
        """
        if not query or not query.strip():
            raise ValueError("Query must not be empty")
        limit = self.limit if limit is None else limit
        threshold = self.threshold if threshold is None else threshold
        context_lines = self.context_lines if context_lines is None else context_lines
        if context_lines < 0:
            raise ValueError(f"context_lines must be at least 0, got {context_lines}")

        scope_path = None
        if scope is not None:
            resolved = Path(scope).expanduser().resolve()
            if not resolved.exists():
                raise ScopeNotFoundError(f"Scope does not exist: {scope}")
            scope_path = str(resolved)

        vector = self.embedder.embed([query])[0]
        hits = self.store.search_similar(
            vector,
            self.engine.name,
            limit=limit,
            scope=scope_path,
            threshold=threshold,
        )
        logger.debug("Query %r: %d hits", query, len(hits))

        file_lines: dict[str, list[str] | None] = {}
        return [self._expand(hit, context_lines, file_lines) for hit in hits]

    def _expand(
        self,
        hit: SearchHit,
        context_lines: int,
        file_lines: dict[str, list[str] | None],
    ) -> QueryResult:
        """Widen a hit by context lines, falling back to the stored content."""
        result = QueryResult(
            path=hit.path,
            start_line=hit.start_line,
            end_line=hit.end_line,
            chunk_start_line=hit.start_line,
            chunk_end_line=hit.end_line,
            chunk_type=hit.chunk_type,
            name=hit.name,
            similarity=hit.similarity,
            content=hit.content,
        )
        if hit.chunk_type == CHUNK_METADATA or context_lines == 0:
            return result

        if hit.path not in file_lines:
            try:
                file_lines[hit.path] = _read_lines(hit.path)
            except OSError as e:
                logger.warning("Cannot re-read %s, returning stored chunk: %s", hit.path, e)
                file_lines[hit.path] = None
        lines = file_lines[hit.path]
        if lines is None:
            return result
        if hit.end_line > len(lines):
            logger.debug("%s changed since indexing, returning stored chunk", hit.path)
            return result

        start = max(1, hit.start_line - context_lines)
        end = min(len(lines), hit.end_line + context_lines)
        result.start_line = start
        result.end_line = end
        result.content = "\n".join(lines[start - 1 : end])
        return result
