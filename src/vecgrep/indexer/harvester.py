"""Harvester: dispatches files to the extractor for their type."""

import logging

from vecgrep.indexer.code import CodeExtractor
from vecgrep.indexer.errors import ExtractionError
from vecgrep.indexer.extractor import (
    DEFAULT_CHUNK_OVERLAP,
    DEFAULT_CHUNK_SIZE,
    Extractor,
    TextExtractor,
)
from vecgrep.indexer.media import MediaDecoder, MediaExtractor
from vecgrep.indexer.models import (
    FILE_TYPE_CODE,
    FILE_TYPE_CONFIG,
    FILE_TYPE_MEDIA,
    FILE_TYPE_TEXT,
    HarvestedChunk,
)
from vecgrep.indexer.structured import ConfigExtractor
from vecgrep.indexer.walker import FileInfo

logger = logging.getLogger(__name__)

# Bytes inspected when sniffing for binary content
BINARY_SNIFF_BYTES = 8192


def is_binary(data: bytes) -> bool:
    return b"\x00" in data[:BINARY_SNIFF_BYTES]


class Harvester:
    """
    Converts one file's content into an ordered list of chunks.

    Each file type maps to exactly one extractor. Code and config files fall
    back to text windows when their extractor finds no structure or fails
    to parse. Harvesting keeps no state between calls, so one Harvester can
    serve many worker threads.
    """

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
        media_decoder: MediaDecoder | None = None,
    ):
        self.text_extractor = TextExtractor(chunk_size, chunk_overlap)
        self.extractors: dict[str, Extractor] = {
            FILE_TYPE_CODE: CodeExtractor(),
            FILE_TYPE_CONFIG: ConfigExtractor(),
            FILE_TYPE_MEDIA: MediaExtractor(media_decoder),
            FILE_TYPE_TEXT: self.text_extractor,
        }

    def supported_types(self) -> set[str]:
        """All chunk type tags this harvester can produce."""
        types: set[str] = set()
        for extractor in self.extractors.values():
            types |= extractor.chunk_types
        return types

    def harvest(self, info: FileInfo, data: bytes | None = None) -> list[HarvestedChunk]:
        """
        Harvest chunks from a file.

        Args:
            info: The file to harvest
            data: File content if already read (avoids a second read)

        Returns:
            Chunks ordered by start line, outer units before inner ones.

        Raises:
            ExtractionError: Media metadata could not be decoded.
            OSError: The file could not be read.
        """
        if data is None:
            data = info.read_bytes()
        if not data:
            return []

        extractor = self.extractors.get(info.file_type, self.text_extractor)

        if info.file_type == FILE_TYPE_MEDIA:
            return extractor.extract(data, "", info)

        if is_binary(data):
            logger.debug("Skipping binary content in %s", info.path)
            return []

        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            logger.debug("Invalid UTF-8 in %s, decoding with replacement", info.path)
            text = data.decode("utf-8", errors="replace")

        chunks: list[HarvestedChunk] | None
        try:
            chunks = extractor.extract(data, text, info)
        except ExtractionError as e:
            logger.warning("Extraction failed for %s, using text windows: %s", info.path, e)
            chunks = None

        if chunks is None:
            chunks = self.text_extractor.extract(data, text, info)

        chunks.sort(key=lambda c: (c.start_line, -c.end_line))
        return chunks
