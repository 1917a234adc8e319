"""File walker for discovering candidate files under the index roots."""

import hashlib
import logging
import os
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path

import pathspec

from vecgrep.indexer.models import (
    FILE_TYPE_CODE,
    FILE_TYPE_CONFIG,
    FILE_TYPE_MEDIA,
    FILE_TYPE_TEXT,
)

logger = logging.getLogger(__name__)

# Directories never worth descending into
DEFAULT_EXCLUDES = (
    ".git",
    ".hg",
    ".svn",
    "__pycache__",
    "node_modules",
    ".venv",
    "venv",
    ".mypy_cache",
    ".pytest_cache",
    ".tox",
    "*.egg-info",
)

CODE_EXTENSIONS = {
    ".py": "python",
    ".pyi": "python",
    ".go": "go",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".java": "java",
    ".c": "c",
    ".h": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".rs": "rust",
    ".kt": "kotlin",
    ".swift": "swift",
}

CONFIG_EXTENSIONS = {".yaml", ".yml", ".json", ".toml", ".ini", ".cfg"}

MEDIA_EXTENSIONS = {
    ".jpg", ".jpeg", ".png", ".gif", ".webp", ".heic", ".tif", ".tiff",
    ".mp3", ".flac", ".ogg", ".wav", ".m4a",
    ".mp4", ".mov", ".mkv", ".avi",
    ".pdf",
}

# Binary formats with nothing to harvest
SKIP_EXTENSIONS = {
    ".zip", ".gz", ".tgz", ".bz2", ".xz", ".7z", ".tar",
    ".exe", ".dll", ".so", ".dylib", ".o", ".a", ".class", ".jar",
    ".pyc", ".pyo", ".whl",
    ".db", ".sqlite", ".sqlite3", ".db-wal", ".db-shm",
    ".woff", ".woff2", ".ttf", ".otf", ".ico",
}


@dataclass
class FileInfo:
    """Information about a discovered file."""

    path: Path  # Absolute, resolved
    size: int
    mtime: float
    file_type: str

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()

    @property
    def language(self) -> str | None:
        return CODE_EXTENSIONS.get(self.path.suffix.lower())


def compute_hash(content: bytes) -> str:
    """Compute SHA-256 hash of content."""
    return hashlib.sha256(content).hexdigest()


def classify_path(path: Path) -> str | None:
    """Classify a file by extension, returning None for skipped formats."""
    suffix = path.suffix.lower()
    if suffix in SKIP_EXTENSIONS:
        return None
    if suffix in CODE_EXTENSIONS:
        return FILE_TYPE_CODE
    if suffix in CONFIG_EXTENSIONS:
        return FILE_TYPE_CONFIG
    if suffix in MEDIA_EXTENSIONS:
        return FILE_TYPE_MEDIA
    return FILE_TYPE_TEXT


def build_ignore_spec(root: Path | None, exclude: Iterable[str] = ()) -> pathspec.PathSpec:
    """
    Combine ignore rules for one root into a gitignore-style matcher.

    Rules apply in order: DEFAULT_EXCLUDES, the root's .gitignore, then the
    extra exclude patterns. Later rules win, so a .gitignore negation can
    re-include a file but cannot override an explicit exclude.
    """
    patterns = list(DEFAULT_EXCLUDES)
    if root is not None:
        gitignore = root / ".gitignore"
        if gitignore.is_file():
            try:
                text = gitignore.read_text(encoding="utf-8", errors="replace")
                patterns.extend(text.splitlines())
            except OSError as e:
                logger.warning("Cannot read %s: %s", gitignore, e)
    patterns.extend(exclude)
    return pathspec.PathSpec.from_lines("gitwildmatch", patterns)


def is_excluded(relative_path: str, patterns: Iterable[str] | pathspec.PathSpec) -> bool:
    """Check a root-relative POSIX path against gitignore-style patterns.

    Directory paths end with "/" so directory-only patterns apply to them.
    """
    if not isinstance(patterns, pathspec.PathSpec):
        patterns = pathspec.PathSpec.from_lines("gitwildmatch", patterns)
    return patterns.match_file(relative_path)


def _file_info(path: Path) -> FileInfo | None:
    file_type = classify_path(path)
    if file_type is None:
        return None
    try:
        stat = path.stat()
    except OSError as e:
        logger.warning("Cannot stat %s: %s", path, e)
        return None
    return FileInfo(path=path, size=stat.st_size, mtime=stat.st_mtime, file_type=file_type)


def walk_roots(
    roots: Iterable[Path],
    exclude: Iterable[str] = (),
    max_file_size: int | None = None,
) -> Iterator[FileInfo]:
    """
    Walk each root and yield FileInfo for every candidate file.

    Hidden files and directories are skipped, as is anything matched by the
    root's ignore rules (see build_ignore_spec). Directories are pruned before
    descent. Enumeration order is sorted and deterministic.
    """
    exclude = list(exclude)

    for root in roots:
        root = Path(root).resolve()
        if root.is_file():
            info = _file_info(root)
            if info is not None:
                yield info
            continue

        spec = build_ignore_spec(root, exclude)
        for dirpath, dirnames, filenames in os.walk(root):
            current = Path(dirpath)
            rel_dir = current.relative_to(root).as_posix()
            rel_dir = "" if rel_dir == "." else rel_dir + "/"

            dirnames[:] = sorted(
                d
                for d in dirnames
                if not d.startswith(".") and not spec.match_file(rel_dir + d + "/")
            )

            for filename in sorted(filenames):
                if filename.startswith("."):
                    continue
                if spec.match_file(rel_dir + filename):
                    continue
                file_path = current / filename
                if file_path.is_symlink() or not file_path.is_file():
                    continue

                info = _file_info(file_path)
                if info is None:
                    continue
                if max_file_size is not None and info.size > max_file_size:
                    logger.debug("Skipping large file %s (%d bytes)", file_path, info.size)
                    continue
                yield info
