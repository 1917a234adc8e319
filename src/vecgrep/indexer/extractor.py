"""Extractor base class and the byte-window text strategy."""

from abc import ABC, abstractmethod
from bisect import bisect_right

from vecgrep.indexer.models import CHUNK_TEXT, HarvestedChunk
from vecgrep.indexer.walker import FileInfo

DEFAULT_CHUNK_SIZE = 512  # bytes
DEFAULT_CHUNK_OVERLAP = 64  # bytes


class Extractor(ABC):
    """
    Turns one file's content into chunks.

    Extractors are stateless: every call to extract() is independent and
    may run concurrently on different files.

    extract() returns None when the content has no structure this extractor
    understands, in which case the harvester falls back to text windows.
    Parse failures raise ExtractionError.
    """

    chunk_types: frozenset[str] = frozenset()

    @abstractmethod
    def extract(self, data: bytes, text: str, info: FileInfo) -> list[HarvestedChunk] | None:
        ...


class LineIndex:
    """Maps character offsets in a string to 1-based line numbers."""

    def __init__(self, text: str):
        self.text = text
        self.lines = text.split("\n")
        self._starts = [0]
        for line in self.lines[:-1]:
            self._starts.append(self._starts[-1] + len(line) + 1)

    def line_of(self, offset: int) -> int:
        return bisect_right(self._starts, offset)

    def slice_lines(self, start_line: int, end_line: int) -> str:
        return "\n".join(self.lines[start_line - 1 : end_line])


def _align_to_char(data: bytes, pos: int) -> int:
    """Move pos back so it does not land inside a UTF-8 multi-byte sequence."""
    while 0 < pos < len(data) and (data[pos] & 0xC0) == 0x80:
        pos -= 1
    return pos


def window_spans(data: bytes, size: int, overlap: int) -> list[tuple[int, int]]:
    """
    Compute overlapping byte windows over data.

    Each window is at most size bytes; consecutive windows share overlap
    bytes. Boundaries are adjusted so no UTF-8 character is split.
    """
    if size <= 0:
        raise ValueError(f"Window size must be positive, got {size}")
    if not 0 <= overlap < size:
        raise ValueError(f"Overlap must be in [0, {size}), got {overlap}")

    spans: list[tuple[int, int]] = []
    n = len(data)
    start = 0
    while start < n:
        end = min(n, start + size)
        if end < n:
            aligned = _align_to_char(data, end)
            if aligned > start:
                end = aligned
        spans.append((start, end))
        if end >= n:
            break
        next_start = _align_to_char(data, end - overlap)
        start = next_start if next_start > start else end
    return spans


class TextExtractor(Extractor):
    """Fixed-size byte windows with overlap."""

    chunk_types = frozenset({CHUNK_TEXT})

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    ):
        if not 0 <= chunk_overlap < chunk_size:
            raise ValueError(
                f"chunk_overlap must be in [0, chunk_size), got {chunk_overlap}"
            )
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    def extract(self, data: bytes, text: str, info: FileInfo) -> list[HarvestedChunk]:
        chunks: list[HarvestedChunk] = []
        for start, end in window_spans(data, self.chunk_size, self.chunk_overlap):
            content = data[start:end].decode("utf-8", errors="replace")
            if not content.strip():
                continue
            start_line = data.count(b"\n", 0, start) + 1
            end_line = data.count(b"\n", 0, max(start, end - 1)) + 1
            chunks.append(
                HarvestedChunk(
                    content=content,
                    start_line=start_line,
                    end_line=end_line,
                    chunk_type=CHUNK_TEXT,
                    metadata={"byte_start": start, "byte_end": end},
                )
            )
        return chunks
