"""Tests for MCP tools."""

from pathlib import Path

import pytest
from fastmcp import FastMCP

from vecgrep.indexer import Indexer, IndexStore
from vecgrep.indexer.embeddings import HashingEngine
from vecgrep.query import QueryEngine
from vecgrep.tools import build_tools, register_tools


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    (root / "api").mkdir(parents=True)
    (root / "web").mkdir()
    (root / "api" / "session.py").write_text(
        "def RefreshToken(token):\n    return token.refresh()\n"
    )
    (root / "web" / "cart.js").write_text(
        "function cartTotal(items) {\n  return items.length;\n}\n"
    )
    return root.resolve()


@pytest.fixture
def store(tmp_path: Path, project: Path):
    index_store = IndexStore(tmp_path / "index.db")
    index_store.initialize()
    Indexer(index_store, HashingEngine(), workers=1).index([project])
    yield index_store
    index_store.close()


@pytest.fixture
def tools(store: IndexStore) -> dict:
    functions = build_tools(QueryEngine(store, HashingEngine()), store)
    return {fn.__name__: fn for fn in functions}


class TestSearchTool:
    def test_returns_results(self, tools: dict, project: Path):
        response = tools["search"](query="refresh token")

        assert response["error"] is None
        assert response["query"] == "refresh token"
        top = response["results"][0]
        assert top["path"] == str(project / "api" / "session.py")
        assert top["name"] == "RefreshToken"
        assert top["chunk_type"] == "function"

    def test_scope(self, tools: dict, project: Path):
        response = tools["search"](query="cart total", scope=str(project / "web"))
        assert {r["path"] for r in response["results"]} == {str(project / "web" / "cart.js")}

    def test_limit_and_context(self, tools: dict):
        response = tools["search"](query="refresh token", limit=1, context_lines=0)
        assert len(response["results"]) == 1
        assert response["results"][0]["start_line"] == 1

    def test_missing_scope_returns_error(self, tools: dict, tmp_path: Path):
        response = tools["search"](query="token", scope=str(tmp_path / "missing"))
        assert response["results"] == []
        assert "does not exist" in response["error"]

    def test_empty_query_returns_error(self, tools: dict):
        response = tools["search"](query="")
        assert response["error"] == "Query must not be empty"


class TestIndexStatusTool:
    def test_reports_counts(self, tools: dict):
        status = tools["index_status"]()

        assert status["files"] == 2
        assert status["chunks"] >= 2
        assert status["engines"] == [{"name": "hashing", "dimensions": 512, "vectors": status["chunks"]}]
        assert status["last_indexed_at"] is not None


def test_register_tools(store: IndexStore):
    mcp = FastMCP(name="test")
    register_tools(mcp, QueryEngine(store, HashingEngine()), store)
    assert mcp.name == "test"
