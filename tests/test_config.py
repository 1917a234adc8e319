"""Tests for config module."""

from pathlib import Path

import pytest

from vecgrep.config import Config

ENV_VARS = [
    "VECGREP_DB",
    "VECGREP_ENGINE",
    "VECGREP_DIMENSIONS",
    "VECGREP_CONTEXT_LINES",
    "VECGREP_LIMIT",
    "VECGREP_THRESHOLD",
    "VECGREP_BATCH_SIZE",
    "VECGREP_WORKERS",
    "VECGREP_CHUNK_SIZE",
    "VECGREP_CHUNK_OVERLAP",
    "VECGREP_MAX_FILE_SIZE",
    "VECGREP_VERBOSE",
    "VECGREP_PORT",
    "OPENAI_API_KEY",
    "VECGREP_OPENAI_BASE_URL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Start every test from an environment without vecgrep settings."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_config_defaults():
    """Test config loads with defaults when no env vars set."""
    config = Config.from_env()
    assert config.db_path == Path.home() / ".vecgrep" / "index.db"
    assert config.engine == "hashing"
    assert config.dimensions is None
    assert config.context_lines == 2
    assert config.limit == 10
    assert config.threshold == 0.25
    assert config.batch_size == 32
    assert 1 <= config.workers <= 32
    assert config.chunk_size == 512
    assert config.chunk_overlap == 64
    assert config.max_file_size == 10 * 1024 * 1024
    assert config.verbose is False
    assert config.port == 8080
    assert config.openai_api_key is None
    assert config.openai_base_url == "https://api.openai.com/v1"


def test_config_from_env(monkeypatch):
    """Test config loads from environment variables."""
    monkeypatch.setenv("VECGREP_DB", "/custom/index.db")
    monkeypatch.setenv("VECGREP_ENGINE", "openai:text-embedding-3-small")
    monkeypatch.setenv("VECGREP_DIMENSIONS", "256")
    monkeypatch.setenv("VECGREP_LIMIT", "5")
    monkeypatch.setenv("VECGREP_THRESHOLD", "0.4")
    monkeypatch.setenv("VECGREP_WORKERS", "3")
    monkeypatch.setenv("VECGREP_VERBOSE", "true")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")

    config = Config.from_env()
    assert config.db_path == Path("/custom/index.db")
    assert config.engine == "openai:text-embedding-3-small"
    assert config.dimensions == 256
    assert config.limit == 5
    assert config.threshold == 0.4
    assert config.workers == 3
    assert config.verbose is True
    assert config.openai_api_key == "sk-test"


def test_config_from_env_creates_new_instances():
    """Test Config.from_env() creates new instances each time."""
    config1 = Config.from_env()
    config2 = Config.from_env()
    assert config1 is not config2


def test_config_tilde_expansion(monkeypatch):
    """Test config expands tilde in paths."""
    monkeypatch.setenv("VECGREP_DB", "~/custom/index.db")
    config = Config.from_env()
    assert "~" not in str(config.db_path)
    assert config.db_path.is_absolute()


def test_overrides_take_precedence(monkeypatch):
    monkeypatch.setenv("VECGREP_LIMIT", "5")
    config = Config.from_env(limit=7, db_path="~/other.db", threshold=None)
    assert config.limit == 7
    assert config.db_path == Path.home() / "other.db"
    assert config.threshold == 0.25


def test_unknown_override_rejected():
    with pytest.raises(ValueError, match="Unknown config fields"):
        Config.from_env(colour="blue")


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("VECGREP_LIMIT", "many"),
        ("VECGREP_LIMIT", "0"),
        ("VECGREP_WORKERS", "0"),
        ("VECGREP_BATCH_SIZE", "-1"),
        ("VECGREP_THRESHOLD", "high"),
        ("VECGREP_THRESHOLD", "1.5"),
        ("VECGREP_CONTEXT_LINES", "-2"),
        ("VECGREP_DIMENSIONS", "0"),
        ("VECGREP_CHUNK_OVERLAP", "512"),
    ],
)
def test_invalid_values_name_the_variable(monkeypatch, name: str, value: str):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=name):
        Config.from_env()


def test_config_invalid_port_non_numeric(monkeypatch):
    """Test config raises error for non-numeric port."""
    monkeypatch.setenv("VECGREP_PORT", "not_a_number")
    with pytest.raises(ValueError, match="Invalid VECGREP_PORT"):
        Config.from_env()


def test_config_invalid_port_out_of_range(monkeypatch):
    """Test config raises error for port out of range."""
    monkeypatch.setenv("VECGREP_PORT", "70000")
    with pytest.raises(ValueError, match="Invalid VECGREP_PORT"):
        Config.from_env()
