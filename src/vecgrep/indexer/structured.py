"""Structured config extractor: one chunk per top-level node."""

import configparser
import json
import logging
import re
import tomllib
from json.decoder import WHITESPACE, scanstring

import yaml

from vecgrep.indexer.errors import ExtractionError
from vecgrep.indexer.extractor import Extractor, LineIndex
from vecgrep.indexer.models import CHUNK_CONFIG, HarvestedChunk
from vecgrep.indexer.walker import FileInfo

logger = logging.getLogger(__name__)

TOML_HEADER = re.compile(r"^\s*\[\[?\s*([^\]]+?)\s*\]\]?\s*(?:#.*)?$")
TOML_KEY = re.compile(r"""^\s*("[^"]*"|'[^']*'|[A-Za-z0-9_\-.]+)\s*=""")
INI_SECTION = re.compile(r"^\s*\[([^\]]+)\]")


def _trim_span(index: LineIndex, start: int, end: int) -> tuple[int, int]:
    """Drop trailing blank and comment lines from a span."""
    while end > start:
        line = index.lines[end - 1].strip()
        if line and not line.startswith("#"):
            break
        end -= 1
    return start, end


def _node_chunk(
    index: LineIndex,
    name: str,
    path: list[str],
    start: int,
    end: int,
    fmt: str,
    extra: dict | None = None,
) -> HarvestedChunk:
    start, end = _trim_span(index, start, end)
    metadata = {"format": fmt, "path": path}
    if extra:
        metadata.update(extra)
    return HarvestedChunk(
        content=index.slice_lines(start, end),
        start_line=start,
        end_line=end,
        chunk_type=CHUNK_CONFIG,
        name=name,
        metadata=metadata,
    )


def _yaml_end_line(node: yaml.Node) -> int:
    """1-based last line of a composed node.

    Block nodes end at the first column of the following line.
    """
    mark = node.end_mark
    if mark.column == 0 and mark.line > node.start_mark.line:
        return mark.line
    return mark.line + 1


def _child_keys(node: yaml.Node) -> list[str]:
    if isinstance(node, yaml.MappingNode):
        return [str(k.value) for k, _ in node.value if isinstance(k, yaml.ScalarNode)]
    return []


def yaml_chunks(text: str, fmt: str) -> list[HarvestedChunk] | None:
    """Chunk YAML by top-level node, one multi-document stream at a time."""
    try:
        documents = list(yaml.compose_all(text, Loader=yaml.SafeLoader))
    except (yaml.YAMLError, RecursionError, MemoryError) as e:
        raise ExtractionError(f"Invalid {fmt}: {e}") from e

    index = LineIndex(text)
    chunks: list[HarvestedChunk] = []
    multi = len(documents) > 1
    for doc_number, root in enumerate(documents):
        prefix = [f"doc{doc_number}"] if multi else []
        if isinstance(root, yaml.MappingNode):
            for key_node, value_node in root.value:
                key = str(key_node.value) if isinstance(key_node, yaml.ScalarNode) else "?"
                path = prefix + [key]
                chunks.append(
                    _node_chunk(
                        index,
                        ".".join(path),
                        path,
                        key_node.start_mark.line + 1,
                        _yaml_end_line(value_node),
                        fmt,
                        {"children": _child_keys(value_node)},
                    )
                )
        elif isinstance(root, yaml.SequenceNode):
            for position, item in enumerate(root.value):
                path = prefix + [f"[{position}]"]
                chunks.append(
                    _node_chunk(
                        index,
                        ".".join(path),
                        path,
                        item.start_mark.line + 1,
                        _yaml_end_line(item),
                        fmt,
                        {"children": _child_keys(item)},
                    )
                )
    return chunks or None


def _skip_whitespace(text: str, pos: int) -> int:
    return WHITESPACE.match(text, pos).end()


def _json_members(text: str) -> list[tuple[str, object, int, int]]:
    """
    Top-level members of an already validated JSON document.

    Returns (name, value, start, end) with character offsets covering the
    key (or array item) through the end of its value.
    """
    decoder = json.JSONDecoder()
    pos = _skip_whitespace(text, 0)
    opener = text[pos : pos + 1]
    if opener not in ("{", "["):
        return []
    closer = "}" if opener == "{" else "]"

    members: list[tuple[str, object, int, int]] = []
    pos = _skip_whitespace(text, pos + 1)
    while not text.startswith(closer, pos):
        start = pos
        if opener == "{":
            name, pos = scanstring(text, pos + 1)
            # Skip the colon between key and value
            pos = _skip_whitespace(text, _skip_whitespace(text, pos) + 1)
        else:
            name = f"[{len(members)}]"
        value, pos = decoder.raw_decode(text, pos)
        members.append((name, value, start, pos))
        pos = _skip_whitespace(text, pos)
        if text.startswith(",", pos):
            pos = _skip_whitespace(text, pos + 1)
    return members


def json_chunks(text: str) -> list[HarvestedChunk] | None:
    """Chunk JSON by top-level key, or by item for a top-level array.

    Members that share a line with another member (minified JSON) get their
    own serialized content instead of the shared source lines.
    """
    try:
        json.loads(text)
        members = _json_members(text)
    except (ValueError, RecursionError, MemoryError) as e:
        raise ExtractionError(f"Invalid json: {e}") from e

    index = LineIndex(text)
    is_array = text.lstrip().startswith("[")
    spans = [(index.line_of(start), index.line_of(end - 1)) for _, _, start, end in members]
    chunks: list[HarvestedChunk] = []
    for position, (name, value, _, _) in enumerate(members):
        first, last = spans[position]
        shared = (position > 0 and spans[position - 1][1] == first) or (
            position + 1 < len(spans) and spans[position + 1][0] == last
        )
        if shared:
            serialized = json.dumps(value, ensure_ascii=False)
            content = serialized if is_array else f"{json.dumps(name)}: {serialized}"
        else:
            first, last = _trim_span(index, first, last)
            content = index.slice_lines(first, last)
        chunks.append(
            HarvestedChunk(
                content=content,
                start_line=first,
                end_line=last,
                chunk_type=CHUNK_CONFIG,
                name=name,
                metadata={
                    "format": "json",
                    "path": [name],
                    "children": list(value) if isinstance(value, dict) else [],
                },
            )
        )
    return chunks or None


def toml_chunks(text: str) -> list[HarvestedChunk] | None:
    """Chunk TOML by table header and by top-level key before the first table."""
    try:
        tomllib.loads(text)
    except (tomllib.TOMLDecodeError, RecursionError) as e:
        raise ExtractionError(f"Invalid TOML: {e}") from e

    index = LineIndex(text)
    starts: list[tuple[int, str]] = []
    in_table = False
    for number, line in enumerate(index.lines, start=1):
        header = TOML_HEADER.match(line)
        if header:
            in_table = True
            starts.append((number, header.group(1)))
            continue
        if not in_table:
            key = TOML_KEY.match(line)
            if key:
                starts.append((number, key.group(1).strip("\"'")))

    chunks: list[HarvestedChunk] = []
    for position, (start, name) in enumerate(starts):
        end = starts[position + 1][0] - 1 if position + 1 < len(starts) else len(index.lines)
        chunks.append(_node_chunk(index, name, name.split("."), start, end, "toml"))
    return chunks or None


def ini_chunks(text: str) -> list[HarvestedChunk] | None:
    """Chunk INI files by section."""
    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read_string(text)
    except configparser.Error as e:
        raise ExtractionError(f"Invalid INI: {e}") from e

    index = LineIndex(text)
    starts = [
        (number, match.group(1).strip())
        for number, line in enumerate(index.lines, start=1)
        if (match := INI_SECTION.match(line))
    ]
    chunks: list[HarvestedChunk] = []
    for position, (start, name) in enumerate(starts):
        end = starts[position + 1][0] - 1 if position + 1 < len(starts) else len(index.lines)
        keys = list(parser[name].keys()) if parser.has_section(name) else []
        chunks.append(_node_chunk(index, name, [name], start, end, "ini", {"children": keys}))
    return chunks or None


class ConfigExtractor(Extractor):
    """Dispatches on config format by file extension."""

    chunk_types = frozenset({CHUNK_CONFIG})

    def extract(self, data: bytes, text: str, info: FileInfo) -> list[HarvestedChunk] | None:
        suffix = info.path.suffix.lower()
        if suffix in (".yaml", ".yml"):
            return yaml_chunks(text, "yaml")
        if suffix == ".json":
            return json_chunks(text)
        if suffix == ".toml":
            return toml_chunks(text)
        if suffix in (".ini", ".cfg"):
            return ini_chunks(text)
        return None
