"""Code extractor: one chunk per function, method, or type definition.

Python is parsed with the standard ast module. Every other supported
language is parsed with tree-sitter grammars from tree-sitter-language-pack.
"""

import ast
import logging
import threading
from dataclasses import dataclass

from tree_sitter_language_pack import get_parser

from vecgrep.indexer.errors import ExtractionError
from vecgrep.indexer.extractor import Extractor, LineIndex
from vecgrep.indexer.models import (
    CHUNK_FUNCTION,
    CHUNK_METHOD,
    CHUNK_TEXT,
    CHUNK_TYPE,
    HarvestedChunk,
)
from vecgrep.indexer.walker import FileInfo

logger = logging.getLogger(__name__)


@dataclass
class Unit:
    """A syntactic unit located in source text."""

    kind: str
    name: str
    start_line: int
    end_line: int


@dataclass(frozen=True)
class Grammar:
    """Node types that make up units in one tree-sitter grammar.

    Functions found inside a type become methods named Type.method.
    """

    types: frozenset[str]
    functions: frozenset[str]
    # C and C++ specifiers also appear as bare type references
    type_needs_body: bool = False


_JS_TYPES = frozenset({"class_declaration"})
_JS_FUNCTIONS = frozenset(
    {
        "function_declaration",
        "generator_function_declaration",
        "method_definition",
        "variable_declarator",
    }
)

GRAMMARS: dict[str, Grammar] = {
    "go": Grammar(
        types=frozenset({"type_spec"}),
        functions=frozenset({"function_declaration", "method_declaration"}),
    ),
    "javascript": Grammar(types=_JS_TYPES, functions=_JS_FUNCTIONS),
    "typescript": Grammar(
        types=_JS_TYPES
        | {"abstract_class_declaration", "interface_declaration", "enum_declaration"},
        functions=_JS_FUNCTIONS,
    ),
    "java": Grammar(
        types=frozenset(
            {"class_declaration", "interface_declaration", "enum_declaration", "record_declaration"}
        ),
        functions=frozenset({"method_declaration", "constructor_declaration"}),
    ),
    "csharp": Grammar(
        types=frozenset(
            {
                "class_declaration",
                "interface_declaration",
                "struct_declaration",
                "enum_declaration",
                "record_declaration",
            }
        ),
        functions=frozenset({"method_declaration", "constructor_declaration"}),
    ),
    "kotlin": Grammar(
        types=frozenset({"class_declaration", "object_declaration"}),
        functions=frozenset({"function_declaration"}),
    ),
    "swift": Grammar(
        types=frozenset({"class_declaration", "protocol_declaration"}),
        functions=frozenset({"function_declaration", "init_declaration"}),
    ),
    "rust": Grammar(
        types=frozenset({"struct_item", "enum_item", "trait_item", "union_item", "impl_item"}),
        functions=frozenset({"function_item"}),
    ),
    "c": Grammar(
        types=frozenset({"struct_specifier", "enum_specifier", "union_specifier"}),
        functions=frozenset({"function_definition"}),
        type_needs_body=True,
    ),
    "cpp": Grammar(
        types=frozenset(
            {"class_specifier", "struct_specifier", "enum_specifier", "union_specifier"}
        ),
        functions=frozenset({"function_definition"}),
        type_needs_body=True,
    ),
}

# Values that make a JS/TS variable declarator a function
_FUNCTION_VALUES = frozenset(
    {"arrow_function", "function_expression", "function", "generator_function"}
)

_IDENTIFIERS = frozenset(
    {
        "identifier",
        "type_identifier",
        "simple_identifier",
        "field_identifier",
        "property_identifier",
    }
)

_parsers = threading.local()


def _parser(name: str):
    """Per-thread parser cache; tree-sitter parsers are not shared across threads."""
    cache = getattr(_parsers, "cache", None)
    if cache is None:
        cache = _parsers.cache = {}
    if name not in cache:
        cache[name] = get_parser(name)
    return cache[name]


def _text(node) -> str:
    return node.text.decode("utf-8", errors="replace")


def _span(node) -> tuple[int, int]:
    """1-based first and last line of a node."""
    start = node.start_point[0] + 1
    row, column = node.end_point[0], node.end_point[1]
    end = row if column == 0 and row + 1 > start else row + 1
    return start, end


def _first_descendant(node, node_type: str):
    stack = [node]
    while stack:
        current = stack.pop()
        if current.type == node_type:
            return current
        stack.extend(reversed(current.children))
    return None


def _node_name(node) -> str | None:
    if node.type == "impl_item":
        target = node.child_by_field_name("type")
        return _text(target).split("<")[0] if target is not None else None

    declarator = node.child_by_field_name("declarator")
    if declarator is not None:
        # C declarators nest: pointer -> function -> identifier
        while declarator.child_by_field_name("declarator") is not None:
            declarator = declarator.child_by_field_name("declarator")
        return _text(declarator)

    named = node.child_by_field_name("name")
    if named is not None:
        return _text(named)
    for child in node.children:
        if child.type in _IDENTIFIERS:
            return _text(child)
    return None


def _unit_kind(node, grammar: Grammar) -> str | None:
    if node.type in grammar.types:
        if grammar.type_needs_body and node.child_by_field_name("body") is None:
            return None
        return CHUNK_TYPE
    if node.type in grammar.functions:
        if node.type == "variable_declarator":
            value = node.child_by_field_name("value")
            if value is None or value.type not in _FUNCTION_VALUES:
                return None
        return CHUNK_FUNCTION
    return None


def tree_sitter_units(text: str, language: str, parser_name: str | None = None) -> list[Unit]:
    """
    Find types, functions and methods by walking a tree-sitter syntax tree.

    Function bodies are not searched for nested definitions. Syntax errors
    do not abort the walk; tree-sitter recovers and whatever parsed cleanly
    still yields units.
    """
    grammar = GRAMMARS[language]
    try:
        tree = _parser(parser_name or language).parse(text.encode("utf-8"))
    except (LookupError, ValueError, RecursionError, MemoryError) as e:
        raise ExtractionError(f"{language} parse error: {e}") from e

    units: list[Unit] = []
    stack: list[tuple[object, str | None]] = [(tree.root_node, None)]
    while stack:
        node, owner = stack.pop()
        kind = _unit_kind(node, grammar)
        name = _node_name(node) if kind else None
        if not name:
            stack.extend((child, owner) for child in reversed(node.children))
            continue

        if kind == CHUNK_TYPE:
            qualified = f"{owner}.{name}" if owner else name
            start, end = _span(node)
            units.append(Unit(CHUNK_TYPE, qualified, start, end))
            stack.extend((child, qualified) for child in reversed(node.children))
            continue

        # Declarations like `const f = () => {}` span the whole statement
        target = node
        if node.type == "variable_declarator" and node.parent is not None:
            if node.parent.type in ("lexical_declaration", "variable_declaration"):
                target = node.parent
        start, end = _span(target)

        receiver = node.child_by_field_name("receiver")
        receiver_type = (
            _first_descendant(receiver, "type_identifier") if receiver is not None else None
        )
        if owner:
            units.append(Unit(CHUNK_METHOD, f"{owner}.{name}", start, end))
        elif receiver_type is not None:
            units.append(Unit(CHUNK_METHOD, f"{_text(receiver_type)}.{name}", start, end))
        else:
            units.append(Unit(CHUNK_FUNCTION, name, start, end))
    return units


def python_units(text: str) -> list[Unit]:
    """Find functions, classes, and methods with ast."""
    try:
        tree = ast.parse(text)
    except (SyntaxError, ValueError, RecursionError, MemoryError) as e:
        raise ExtractionError(f"Python parse error: {e}") from e

    units: list[Unit] = []

    def start_of(node: ast.AST) -> int:
        lines = [node.lineno] + [d.lineno for d in getattr(node, "decorator_list", [])]
        return min(lines)

    def visit(body: list[ast.stmt], prefix: str, in_class: bool) -> None:
        for node in body:
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                kind = CHUNK_METHOD if in_class else CHUNK_FUNCTION
                units.append(Unit(kind, prefix + node.name, start_of(node), node.end_lineno))
            elif isinstance(node, ast.ClassDef):
                name = prefix + node.name
                units.append(Unit(CHUNK_TYPE, name, start_of(node), node.end_lineno))
                visit(node.body, name + ".", True)

    visit(tree.body, "", False)
    return units
def _gaps(units: list[Unit], line_count: int) -> list[tuple[int, int]]:
    """Line ranges not covered by any unit."""
    covered = [False] * (line_count + 1)
    for unit in units:
        for line in range(unit.start_line, min(unit.end_line, line_count) + 1):
            covered[line] = True
    gaps: list[tuple[int, int]] = []
    start = None
    for line in range(1, line_count + 1):
        if not covered[line] and start is None:
            start = line
        elif covered[line] and start is not None:
            gaps.append((start, line - 1))
            start = None
    if start is not None:
        gaps.append((start, line_count))
    return gaps


class CodeExtractor(Extractor):
    """Chunks aligned to syntactic units, with gap text between them."""

    chunk_types = frozenset({CHUNK_FUNCTION, CHUNK_METHOD, CHUNK_TYPE, CHUNK_TEXT})

    def extract(self, data: bytes, text: str, info: FileInfo) -> list[HarvestedChunk] | None:
        language = info.language
        if language == "python":
            units = python_units(text)
        elif language in GRAMMARS:
            parser_name = "tsx" if info.path.suffix.lower() == ".tsx" else language
            units = tree_sitter_units(text, language, parser_name)
        else:
            return None

        if not units:
            logger.debug("No syntactic units in %s", info.path)
            return None

        index = LineIndex(text)
        chunks: list[HarvestedChunk] = []
        for unit in units:
            chunks.append(
                HarvestedChunk(
                    content=index.slice_lines(unit.start_line, unit.end_line),
                    start_line=unit.start_line,
                    end_line=unit.end_line,
                    chunk_type=unit.kind,
                    name=unit.name,
                    metadata={"language": language},
                )
            )

        for start, end in _gaps(units, len(index.lines)):
            content = index.slice_lines(start, end)
            if not content.strip():
                continue
            # Trim blank edges so spans point at real content
            lines = content.split("\n")
            while lines and not lines[0].strip():
                lines.pop(0)
                start += 1
            while lines and not lines[-1].strip():
                lines.pop()
                end -= 1
            chunks.append(
                HarvestedChunk(
                    content="\n".join(lines),
                    start_line=start,
                    end_line=end,
                    chunk_type=CHUNK_TEXT,
                    metadata={"language": language},
                )
            )
        return chunks
