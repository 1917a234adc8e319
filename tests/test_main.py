"""Tests for main module."""

import json
import logging
from pathlib import Path

import pytest

from vecgrep.config import Config
from vecgrep.main import EXIT_ERROR, EXIT_OK, EXIT_USAGE, create_server, main

AUTH_PY = '''def RefreshToken(token):
    """Refresh an expired access token."""
    return token
'''


@pytest.fixture
def project(tmp_path: Path, monkeypatch) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    (root / "auth.py").write_text(AUTH_PY)
    (root / "README.md").write_text("# Demo\n\nA small demo project.\n")
    monkeypatch.setenv("VECGREP_DB", str(tmp_path / "index.db"))
    monkeypatch.delenv("VECGREP_ENGINE", raising=False)
    monkeypatch.delenv("VECGREP_DIMENSIONS", raising=False)
    return root.resolve()


class TestIndexCommand:
    def test_index_reports_counts(self, project: Path, capsys):
        assert main(["index", str(project)]) == EXIT_OK
        out = capsys.readouterr().out
        assert "2 added" in out
        assert "0 failed" in out

    def test_reindex_is_unchanged(self, project: Path, capsys):
        main(["index", str(project)])
        capsys.readouterr()

        assert main(["index", str(project)]) == EXIT_OK
        assert "2 unchanged" in capsys.readouterr().out

    def test_missing_path_is_fatal(self, project: Path, capsys):
        assert main(["index", str(project / "missing")]) == EXIT_ERROR
        assert "does not exist" in capsys.readouterr().err

    def test_exclude_pattern(self, project: Path, capsys):
        assert main(["index", str(project), "--exclude", "*.md"]) == EXIT_OK
        assert "1 added" in capsys.readouterr().out


class TestSearchCommand:
    def test_search_json(self, project: Path, capsys):
        main(["index", str(project)])
        capsys.readouterr()

        assert main(["search", "token refresh logic", "--json", "-C", "0"]) == EXIT_OK
        results = json.loads(capsys.readouterr().out)

        assert results[0]["path"] == str(project / "auth.py")
        assert results[0]["name"] == "RefreshToken"
        assert (results[0]["start_line"], results[0]["end_line"]) == (1, 3)

    def test_search_text_output(self, project: Path, capsys):
        main(["index", str(project)])
        capsys.readouterr()

        assert main(["search", "token refresh logic", "-n", "1"]) == EXIT_OK
        out = capsys.readouterr().out
        assert out.startswith(f"{project / 'auth.py'}:1-3  [function RefreshToken]")
        assert "def RefreshToken(token):" in out

    def test_no_results(self, project: Path, capsys):
        main(["index", str(project)])
        capsys.readouterr()

        assert main(["search", "zebra migration patterns"]) == EXIT_OK
        assert capsys.readouterr().out.strip() == "No results"

    def test_empty_query_is_usage_error(self, project: Path, capsys):
        assert main(["search", "  "]) == EXIT_USAGE
        assert "empty" in capsys.readouterr().err

    def test_missing_scope_is_fatal(self, project: Path, capsys):
        assert main(["search", "token", "--scope", str(project / "nope")]) == EXIT_ERROR

    def test_invalid_threshold_is_usage_error(self, project: Path, capsys):
        assert main(["search", "token", "--threshold", "3"]) == EXIT_USAGE
        assert "VECGREP_THRESHOLD" in capsys.readouterr().err


class TestStatusCommand:
    def test_status_json(self, project: Path, capsys):
        main(["index", str(project)])
        capsys.readouterr()

        assert main(["status", "--json"]) == EXIT_OK
        status = json.loads(capsys.readouterr().out)
        assert status["files"] == 2
        assert status["engines"][0]["name"] == "hashing"
        assert status["engines"][0]["dimensions"] == 512

    def test_status_text(self, project: Path, capsys):
        assert main(["status"]) == EXIT_OK
        out = capsys.readouterr().out
        assert "Files:          0" in out
        assert "Last indexed:   never" in out


class TestArguments:
    def test_command_is_required(self):
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == EXIT_USAGE

    def test_invalid_environment_is_usage_error(self, project: Path, monkeypatch, capsys):
        monkeypatch.setenv("VECGREP_LIMIT", "lots")
        assert main(["status"]) == EXIT_USAGE
        assert "VECGREP_LIMIT" in capsys.readouterr().err

    def test_unknown_engine_is_usage_error(self, project: Path, capsys):
        assert main(["index", str(project), "--engine", "word2vec"]) == EXIT_USAGE


def test_create_server(project: Path, caplog):
    """Test create_server initializes all components."""
    config = Config.from_env()

    with caplog.at_level(logging.INFO):
        mcp = create_server(config)

    assert mcp is not None
    assert mcp.name == "vecgrep"

    log_messages = [record.message for record in caplog.records]
    assert any("Registering tools" in msg for msg in log_messages)
    assert any("Server configured successfully" in msg for msg in log_messages)
