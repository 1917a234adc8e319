"""MCP tools for the vecgrep server.

This module defines the tools exposed by the MCP server:
- search: Semantic search over indexed files
- index_status: Summary of what the index contains
"""

from collections.abc import Callable

from fastmcp import FastMCP

from vecgrep.indexer.database import IndexStore
from vecgrep.indexer.errors import VecgrepError
from vecgrep.query import QueryEngine


def build_tools(query_engine: QueryEngine, store: IndexStore) -> list[Callable]:
    """Build the tool functions bound to a query engine and store.

    Args:
        query_engine: Query engine used by the search tool
        store: Index store used by the status tool

    Returns:
        Plain functions, ready to be registered with FastMCP.
    """

    def search(
        query: str,
        scope: str | None = None,
        limit: int | None = None,
        threshold: float | None = None,
        context_lines: int | None = None,
    ) -> dict:
        """Search indexed files by meaning rather than exact text.

        Describe what you are looking for in plain language, e.g.
        "token refresh logic" or "database connection settings". Matches
        are whole functions, types, config sections, or text passages.

        Args:
            query: Natural-language description of the content to find
            scope: Optional absolute path; only files at or under it are searched
            limit: Maximum number of results to return (default: 10)
            threshold: Minimum similarity between -1 and 1 (default: 0.25)
            context_lines: Lines of surrounding context per result (default: 2)

        Returns:
            Dict with:
            - query: The query as given
            - results: List of matches, best first, each with path,
              start_line, end_line, chunk_type, name, similarity and content
            - error: Error message if the search could not run
        """
        try:
            results = query_engine.search(
                query,
                limit=limit,
                scope=scope,
                threshold=threshold,
                context_lines=context_lines,
            )
        except (ValueError, VecgrepError) as e:
            return {"query": query, "results": [], "error": str(e)}

        return {
            "query": query,
            "results": [result.to_dict() for result in results],
            "error": None,
        }

    def index_status() -> dict:
        """Get a summary of the search index.

        Returns:
            Dict with:
            - db_path: Location of the index database
            - schema_version: Index schema version
            - files: Number of indexed files
            - chunks: Number of indexed chunks
            - engines: Embedding engines with their dimensions and vector counts
            - last_indexed_at: When a file was last (re)indexed
        """
        return store.status().to_dict()

    return [search, index_status]


def register_tools(mcp: FastMCP, query_engine: QueryEngine, store: IndexStore) -> None:
    """Register all tools with the FastMCP server.

    Args:
        mcp: FastMCP server instance
        query_engine: Query engine for searches
        store: Index store for status queries
    """
    for fn in build_tools(query_engine, store):
        mcp.tool()(fn)
