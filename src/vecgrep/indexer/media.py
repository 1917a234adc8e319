"""Media extractor: a single metadata-record chunk per file."""

import logging
from collections.abc import Callable

from vecgrep.indexer.errors import ExtractionError
from vecgrep.indexer.extractor import Extractor
from vecgrep.indexer.models import CHUNK_METADATA, HarvestedChunk
from vecgrep.indexer.walker import FileInfo

logger = logging.getLogger(__name__)

# Decoders take a file and return flat metadata fields
MediaDecoder = Callable[[FileInfo], dict]

MEDIA_KINDS = {
    "image": {".jpg", ".jpeg", ".png", ".gif", ".webp", ".heic", ".tif", ".tiff"},
    "audio": {".mp3", ".flac", ".ogg", ".wav", ".m4a"},
    "video": {".mp4", ".mov", ".mkv", ".avi"},
    "document": {".pdf"},
}

# Fields listed first in descriptions, in this order
FIELD_ORDER = (
    "title",
    "artist",
    "album",
    "author",
    "camera",
    "taken_at",
    "location",
    "duration",
    "dimensions",
    "pages",
    "format",
    "size",
)


def media_kind(info: FileInfo) -> str:
    suffix = info.path.suffix.lower()
    for kind, suffixes in MEDIA_KINDS.items():
        if suffix in suffixes:
            return kind
    return "media"


def default_decoder(info: FileInfo) -> dict:
    """Report what the filesystem knows; richer decoders can be plugged in."""
    return {
        "format": info.path.suffix.lstrip(".").lower(),
        "size": f"{info.size} bytes",
    }


def describe(kind: str, filename: str, fields: dict) -> str:
    """Synthesize a normalized one-paragraph description from decoded fields."""
    present = {
        str(key).lower(): value
        for key, value in fields.items()
        if value is not None and str(value).strip()
    }
    ordered = [k for k in FIELD_ORDER if k in present]
    ordered += sorted(k for k in present if k not in FIELD_ORDER)

    parts = [f"{kind} {filename}"]
    for key in ordered:
        parts.append(f"{key.replace('_', ' ')}: {str(present[key]).strip()}")
    return "; ".join(parts)


class MediaExtractor(Extractor):
    """Wraps an external decoder and turns its fields into one chunk."""

    chunk_types = frozenset({CHUNK_METADATA})

    def __init__(self, decoder: MediaDecoder | None = None):
        self.decoder = decoder or default_decoder

    def extract(self, data: bytes, text: str, info: FileInfo) -> list[HarvestedChunk]:
        try:
            fields = self.decoder(info)
        except Exception as e:
            raise ExtractionError(f"Metadata decoder failed: {e}") from e

        kind = media_kind(info)
        return [
            HarvestedChunk(
                content=describe(kind, info.path.name, fields),
                start_line=1,
                end_line=1,
                chunk_type=CHUNK_METADATA,
                name=info.path.name,
                metadata={"kind": kind, **{str(k): str(v) for k, v in fields.items()}},
            )
        ]
