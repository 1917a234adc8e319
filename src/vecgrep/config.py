"""Configuration module for vecgrep.

Loads configuration from environment variables with sensible defaults.
The resulting Config is passed explicitly to the indexer, the query engine
and the server; nothing reads the environment after startup.
"""

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path

from vecgrep.indexer.embeddings import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_ENGINE,
    OPENAI_BASE_URL,
)
from vecgrep.indexer.extractor import DEFAULT_CHUNK_OVERLAP, DEFAULT_CHUNK_SIZE
from vecgrep.indexer.indexer import default_workers

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"Invalid {name} value '{raw}': must be an integer") from e
    if value < minimum:
        raise ValueError(f"Invalid {name} value '{raw}': must be at least {minimum}")
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"Invalid {name} value '{raw}': must be a number") from e


def _env_bool(name: str) -> bool:
    return os.getenv(name, "").lower() in ("1", "true", "yes")


@dataclass
class Config:
    """Application configuration."""

    db_path: Path
    engine: str
    dimensions: int | None
    context_lines: int
    limit: int
    threshold: float
    batch_size: int
    workers: int
    chunk_size: int
    chunk_overlap: int
    max_file_size: int
    verbose: bool
    port: int
    openai_api_key: str | None
    openai_base_url: str

    @classmethod
    def from_env(cls, **overrides) -> "Config":
        """Load configuration from environment variables.

        Args:
            overrides: Field values that take precedence over the environment
                (typically command-line flags). None values are ignored.

        Raises:
            ValueError: An environment variable or override is invalid.
        """
        default_db = str(Path.home() / ".vecgrep" / "index.db")
        db_path = Path(os.getenv("VECGREP_DB", default_db)).expanduser()

        engine = os.getenv("VECGREP_ENGINE", DEFAULT_ENGINE)
        # Unset means the engine default (512 for hashing, model size otherwise)
        dimensions = _env_int("VECGREP_DIMENSIONS", 0, minimum=1) or None

        port_str = os.getenv("VECGREP_PORT", "8080")
        try:
            port = int(port_str)
            if not 1 <= port <= 65535:
                raise ValueError(f"Port must be between 1 and 65535, got {port}")
        except ValueError as e:
            raise ValueError(f"Invalid VECGREP_PORT value '{port_str}': {e}") from e

        config = cls(
            db_path=db_path,
            engine=engine,
            dimensions=dimensions,
            context_lines=_env_int("VECGREP_CONTEXT_LINES", 2),
            limit=_env_int("VECGREP_LIMIT", 10, minimum=1),
            threshold=_env_float("VECGREP_THRESHOLD", 0.25),
            batch_size=_env_int("VECGREP_BATCH_SIZE", DEFAULT_BATCH_SIZE, minimum=1),
            workers=_env_int("VECGREP_WORKERS", default_workers(), minimum=1),
            chunk_size=_env_int("VECGREP_CHUNK_SIZE", DEFAULT_CHUNK_SIZE, minimum=1),
            chunk_overlap=_env_int("VECGREP_CHUNK_OVERLAP", DEFAULT_CHUNK_OVERLAP),
            max_file_size=_env_int("VECGREP_MAX_FILE_SIZE", DEFAULT_MAX_FILE_SIZE, minimum=1),
            verbose=_env_bool("VECGREP_VERBOSE"),
            port=port,
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_base_url=os.getenv("VECGREP_OPENAI_BASE_URL", OPENAI_BASE_URL),
        )

        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown config fields: {', '.join(sorted(unknown))}")
        config = replace(config, **{k: v for k, v in overrides.items() if v is not None})
        if isinstance(config.db_path, str):
            config.db_path = Path(config.db_path)
        config.db_path = config.db_path.expanduser()

        config.validate()
        return config

    def validate(self) -> None:
        """Check cross-field constraints.

        Raises:
            ValueError: The configuration is inconsistent.
        """
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"Invalid VECGREP_CHUNK_OVERLAP value '{self.chunk_overlap}': "
                f"must be smaller than VECGREP_CHUNK_SIZE ({self.chunk_size})"
            )
        if not -1.0 <= self.threshold <= 1.0:
            raise ValueError(
                f"Invalid VECGREP_THRESHOLD value '{self.threshold}': must be between -1 and 1"
            )
        if self.context_lines < 0:
            raise ValueError(
                f"Invalid VECGREP_CONTEXT_LINES value '{self.context_lines}': must be at least 0"
            )
        if self.limit < 1:
            raise ValueError(f"Invalid VECGREP_LIMIT value '{self.limit}': must be at least 1")
        if self.workers < 1:
            raise ValueError(f"Invalid VECGREP_WORKERS value '{self.workers}': must be at least 1")
