"""Tests for the harvester and its extractors."""

import ast
from pathlib import Path

import pytest

from vecgrep.indexer.errors import ExtractionError
from vecgrep.indexer.extractor import TextExtractor, window_spans
from vecgrep.indexer.harvester import Harvester
from vecgrep.indexer.media import describe
from vecgrep.indexer.models import CHUNK_TYPES
from vecgrep.indexer.walker import FileInfo, classify_path

PYTHON_SOURCE = '''import os


def RefreshToken(token):
    """Refresh the token."""
    return token


class Session:
    @property
    def user(self):
        return self._user

    def close(self):
        pass
'''

GO_SOURCE = """package auth

type Token struct {
	Value string
}

func (t *Token) Refresh() error {
	if t.Value == "" {
		return nil
	}
	return nil
}

func RefreshToken(t string) string {
	return t
}
"""

JS_SOURCE = """class Cart {
  constructor() {
    this.items = [];
  }

  total() {
    return this.items.length;
  }
}
"""

JS_REGEX_SOURCE = r"""function stripBraces(s) {
  const re = /\}/g;
  return s.replace(re, "");
}
"""

JAVA_SOURCE = """import java.util.Map;

public class Stats {
    public Map<String, Integer> counts() {
        return Map.of();
    }
}
"""

RUST_SOURCE = """pub struct Counter {
    count: u32,
}

impl Counter {
    pub fn increment(&mut self) {
        self.count += 1;
    }
}
"""

C_SOURCE = """#include <stdio.h>

struct point {
    int x;
    int y;
};

static int add(int a, int b) {
    return a + b;
}
"""

YAML_SOURCE = """server:
  host: localhost
  port: 8080
database:
  url: postgres://x
name: demo
"""

JSON_SOURCE = """{
  "name": "demo",
  "scripts": {
    "test": "pytest"
  }
}
"""

TOML_SOURCE = """title = "demo"

[tool.pytest]
addopts = "-q"

[project]
name = "x"
"""


def make_info(path: Path) -> FileInfo:
    stat = path.stat()
    return FileInfo(
        path=path,
        size=stat.st_size,
        mtime=stat.st_mtime,
        file_type=classify_path(path),
    )


@pytest.fixture
def harvester() -> Harvester:
    return Harvester()


def harvest_text(harvester: Harvester, tmp_path: Path, name: str, content: str):
    path = tmp_path / name
    path.write_text(content)
    return harvester.harvest(make_info(path))


class TestWindowSpans:
    def test_windows_overlap(self):
        spans = window_spans(b"a" * 1000, 512, 64)
        assert spans == [(0, 512), (448, 960), (896, 1000)]

    def test_short_content_single_window(self):
        assert window_spans(b"hello", 512, 64) == [(0, 5)]

    def test_empty_content(self):
        assert window_spans(b"", 512, 64) == []

    def test_never_splits_utf8_characters(self):
        data = ("é" * 300).encode("utf-8")
        for start, end in window_spans(data, 511, 63):
            data[start:end].decode("utf-8")  # must not raise

    def test_deterministic(self):
        data = b"some text " * 200
        assert window_spans(data, 100, 10) == window_spans(data, 100, 10)

    @pytest.mark.parametrize(("size", "overlap"), [(0, 0), (100, 100), (100, -1)])
    def test_rejects_invalid_parameters(self, size: int, overlap: int):
        with pytest.raises(ValueError):
            window_spans(b"data", size, overlap)


class TestTextExtractor:
    def test_line_spans(self, tmp_path: Path):
        path = tmp_path / "notes.txt"
        path.write_bytes(b"line1\nline2\nline3\n")
        chunks = TextExtractor(chunk_size=8, chunk_overlap=2).extract(
            path.read_bytes(), path.read_text(), make_info(path)
        )

        assert chunks[0].content == "line1\nli"
        assert chunks[0].start_line == 1
        assert chunks[0].end_line == 2
        assert all(c.chunk_type == "text" for c in chunks)

    def test_rejects_overlap_not_smaller_than_size(self):
        with pytest.raises(ValueError):
            TextExtractor(chunk_size=64, chunk_overlap=64)


class TestPythonExtraction:
    def test_units_and_gaps(self, harvester: Harvester, tmp_path: Path):
        chunks = harvest_text(harvester, tmp_path, "auth.py", PYTHON_SOURCE)

        summary = [(c.chunk_type, c.name, c.start_line, c.end_line) for c in chunks]
        assert summary == [
            ("text", None, 1, 1),
            ("function", "RefreshToken", 4, 6),
            ("type", "Session", 9, 15),
            ("method", "Session.user", 10, 12),
            ("method", "Session.close", 14, 15),
        ]

    def test_chunk_content_matches_span(self, harvester: Harvester, tmp_path: Path):
        chunks = harvest_text(harvester, tmp_path, "auth.py", PYTHON_SOURCE)
        func = next(c for c in chunks if c.name == "RefreshToken")
        assert func.content.startswith("def RefreshToken(token):")
        assert func.content.endswith("return token")

    def test_syntax_error_falls_back_to_text(self, harvester: Harvester, tmp_path: Path):
        chunks = harvest_text(harvester, tmp_path, "broken.py", "def broken(:\n    pass\n")
        assert len(chunks) == 1
        assert chunks[0].chunk_type == "text"

    def test_parser_recursion_falls_back_to_text(
        self, harvester: Harvester, tmp_path: Path, monkeypatch, caplog
    ):
        def too_deep(text):
            raise RecursionError("maximum recursion depth exceeded")

        monkeypatch.setattr(ast, "parse", too_deep)
        chunks = harvest_text(harvester, tmp_path, "auth.py", PYTHON_SOURCE)
        assert {c.chunk_type for c in chunks} == {"text"}
        assert any("Extraction failed" in r.message for r in caplog.records)

    def test_module_without_units_falls_back_to_text(self, harvester: Harvester, tmp_path: Path):
        chunks = harvest_text(harvester, tmp_path, "consts.py", "A = 1\nB = 2\n")
        assert [c.chunk_type for c in chunks] == ["text"]


class TestBraceLanguageExtraction:
    def test_go_units(self, harvester: Harvester, tmp_path: Path):
        chunks = harvest_text(harvester, tmp_path, "token.go", GO_SOURCE)

        summary = [(c.chunk_type, c.name, c.start_line, c.end_line) for c in chunks]
        assert summary == [
            ("text", None, 1, 1),
            ("type", "Token", 3, 5),
            ("method", "Token.Refresh", 7, 12),
            ("function", "RefreshToken", 14, 16),
        ]

    def test_javascript_class_methods(self, harvester: Harvester, tmp_path: Path):
        chunks = harvest_text(harvester, tmp_path, "cart.js", JS_SOURCE)

        summary = [(c.chunk_type, c.name, c.start_line, c.end_line) for c in chunks]
        assert summary == [
            ("type", "Cart", 1, 9),
            ("method", "Cart.constructor", 2, 4),
            ("method", "Cart.total", 6, 8),
        ]

    def test_braces_in_strings_are_ignored(self, harvester: Harvester, tmp_path: Path):
        source = 'function render() {\n  return "}{";\n}\n'
        chunks = harvest_text(harvester, tmp_path, "view.js", source)
        assert [(c.name, c.start_line, c.end_line) for c in chunks] == [("render", 1, 3)]

    def test_braces_in_regex_literals_are_ignored(self, harvester: Harvester, tmp_path: Path):
        chunks = harvest_text(harvester, tmp_path, "strip.js", JS_REGEX_SOURCE)
        summary = [(c.chunk_type, c.name, c.start_line, c.end_line) for c in chunks]
        assert summary == [("function", "stripBraces", 1, 4)]

    def test_java_generic_return_type(self, harvester: Harvester, tmp_path: Path):
        chunks = harvest_text(harvester, tmp_path, "Stats.java", JAVA_SOURCE)

        summary = [(c.chunk_type, c.name, c.start_line, c.end_line) for c in chunks]
        assert summary == [
            ("text", None, 1, 1),
            ("type", "Stats", 3, 7),
            ("method", "Stats.counts", 4, 6),
        ]

    def test_rust_impl_methods(self, harvester: Harvester, tmp_path: Path):
        chunks = harvest_text(harvester, tmp_path, "counter.rs", RUST_SOURCE)

        summary = [(c.chunk_type, c.name, c.start_line, c.end_line) for c in chunks]
        assert summary == [
            ("type", "Counter", 1, 3),
            ("type", "Counter", 5, 9),
            ("method", "Counter.increment", 6, 8),
        ]

    def test_typescript_arrow_function(self, harvester: Harvester, tmp_path: Path):
        source = "export const total = (items: number[]): number => {\n  return items.length;\n};\n"
        chunks = harvest_text(harvester, tmp_path, "total.ts", source)
        assert [(c.chunk_type, c.name, c.start_line, c.end_line) for c in chunks] == [
            ("function", "total", 1, 3)
        ]

    def test_c_function_and_struct(self, harvester: Harvester, tmp_path: Path):
        chunks = harvest_text(harvester, tmp_path, "math.c", C_SOURCE)

        summary = [(c.chunk_type, c.name, c.start_line, c.end_line) for c in chunks]
        assert summary == [
            ("text", None, 1, 1),
            ("type", "point", 3, 6),
            ("function", "add", 8, 10),
        ]


class TestConfigExtraction:
    def test_yaml_top_level_nodes(self, harvester: Harvester, tmp_path: Path):
        chunks = harvest_text(harvester, tmp_path, "app.yaml", YAML_SOURCE)

        summary = [(c.name, c.start_line, c.end_line) for c in chunks]
        assert summary == [("server", 1, 3), ("database", 4, 5), ("name", 6, 6)]
        assert all(c.chunk_type == "config" for c in chunks)
        assert chunks[0].metadata["children"] == ["host", "port"]
        assert chunks[0].metadata["path"] == ["server"]

    def test_json_top_level_keys(self, harvester: Harvester, tmp_path: Path):
        chunks = harvest_text(harvester, tmp_path, "package.json", JSON_SOURCE)

        summary = [(c.name, c.start_line, c.end_line) for c in chunks]
        assert summary == [("name", 2, 2), ("scripts", 3, 5)]

    def test_json_tab_indented(self, harvester: Harvester, tmp_path: Path):
        source = '{\n\t"name": "demo",\n\t"tags": [\n\t\t"a"\n\t]\n}\n'
        chunks = harvest_text(harvester, tmp_path, "tabs.json", source)

        assert [(c.name, c.start_line, c.end_line) for c in chunks] == [
            ("name", 2, 2),
            ("tags", 3, 5),
        ]
        assert chunks[1].content == '\t"tags": [\n\t\t"a"\n\t]'

    def test_minified_json_gets_one_chunk_per_key(self, harvester: Harvester, tmp_path: Path):
        source = '{"name": "x", "scripts": {"test": "pytest"}, "deps": ["a"]}'
        chunks = harvest_text(harvester, tmp_path, "min.json", source)

        assert [(c.name, c.start_line, c.end_line) for c in chunks] == [
            ("name", 1, 1),
            ("scripts", 1, 1),
            ("deps", 1, 1),
        ]
        assert [c.content for c in chunks] == [
            '"name": "x"',
            '"scripts": {"test": "pytest"}',
            '"deps": ["a"]',
        ]
        assert chunks[1].metadata["children"] == ["test"]

    def test_minified_json_array_items(self, harvester: Harvester, tmp_path: Path):
        chunks = harvest_text(harvester, tmp_path, "list.json", '[{"id": 1}, {"id": 2}]')
        assert [(c.name, c.content) for c in chunks] == [
            ("[0]", '{"id": 1}'),
            ("[1]", '{"id": 2}'),
        ]

    @pytest.mark.parametrize(
        "name, depth",
        [("deep.yaml", 5000), ("deep.json", 50000)],
    )
    def test_deep_nesting_falls_back_to_text(
        self, harvester: Harvester, tmp_path: Path, caplog, name: str, depth: int
    ):
        chunks = harvest_text(harvester, tmp_path, name, "[" * depth + "]" * depth)
        assert chunks
        assert {c.chunk_type for c in chunks} == {"text"}
        assert any("Extraction failed" in r.message for r in caplog.records)

    def test_toml_tables_keep_dotted_path(self, harvester: Harvester, tmp_path: Path):
        chunks = harvest_text(harvester, tmp_path, "pyproject.toml", TOML_SOURCE)

        summary = [(c.name, c.start_line, c.end_line) for c in chunks]
        assert summary == [("title", 1, 1), ("tool.pytest", 3, 4), ("project", 6, 7)]
        assert chunks[1].metadata["path"] == ["tool", "pytest"]

    def test_ini_sections(self, harvester: Harvester, tmp_path: Path):
        chunks = harvest_text(
            harvester, tmp_path, "setup.cfg", "[metadata]\nname = x\n\n[options]\nzip_safe = false\n"
        )
        assert [(c.name, c.start_line, c.end_line) for c in chunks] == [
            ("metadata", 1, 2),
            ("options", 4, 5),
        ]

    def test_invalid_config_falls_back_to_text(self, harvester: Harvester, tmp_path: Path, caplog):
        chunks = harvest_text(harvester, tmp_path, "bad.toml", "title = = broken\n")
        assert [c.chunk_type for c in chunks] == ["text"]
        assert any("Extraction failed" in r.message for r in caplog.records)


class TestMediaExtraction:
    def test_single_metadata_chunk(self, tmp_path: Path):
        path = tmp_path / "photo.jpg"
        path.write_bytes(b"\xff\xd8\xff\xe0 not a real jpeg")
        fields = {"camera": "Canon EOS", "taken_at": "2023-05-01", "location": "Paris"}
        harvester = Harvester(media_decoder=lambda info: fields)

        chunks = harvester.harvest(make_info(path))

        assert len(chunks) == 1
        assert chunks[0].chunk_type == "metadata"
        assert chunks[0].content == (
            "image photo.jpg; camera: Canon EOS; taken at: 2023-05-01; location: Paris"
        )

    def test_default_decoder_reports_format(self, harvester: Harvester, tmp_path: Path):
        path = tmp_path / "song.mp3"
        path.write_bytes(b"ID3 fake")
        chunks = harvester.harvest(make_info(path))
        assert chunks[0].content.startswith("audio song.mp3; format: mp3")

    def test_decoder_failure_raises(self, tmp_path: Path):
        path = tmp_path / "clip.mp4"
        path.write_bytes(b"fake")

        def broken(info):
            raise RuntimeError("corrupt header")

        with pytest.raises(ExtractionError):
            Harvester(media_decoder=broken).harvest(make_info(path))

    def test_describe_skips_empty_fields(self):
        text = describe("audio", "a.mp3", {"artist": "X", "album": "", "genre": None})
        assert text == "audio a.mp3; artist: X"


class TestHarvester:
    def test_empty_file_produces_no_chunks(self, harvester: Harvester, tmp_path: Path):
        assert harvest_text(harvester, tmp_path, "empty.py", "") == []

    def test_binary_content_produces_no_chunks(self, harvester: Harvester, tmp_path: Path):
        path = tmp_path / "blob.dat"
        path.write_bytes(b"abc\x00\x01\x02")
        assert harvester.harvest(make_info(path)) == []

    def test_uses_provided_data(self, harvester: Harvester, tmp_path: Path):
        path = tmp_path / "notes.md"
        path.write_text("on disk")
        chunks = harvester.harvest(make_info(path), data=b"in memory")
        assert chunks[0].content == "in memory"

    def test_supported_types(self, harvester: Harvester):
        assert harvester.supported_types() == set(CHUNK_TYPES)

    def test_harvest_is_repeatable(self, harvester: Harvester, tmp_path: Path):
        first = harvest_text(harvester, tmp_path, "auth.py", PYTHON_SOURCE)
        second = harvest_text(harvester, tmp_path, "auth.py", PYTHON_SOURCE)
        assert first == second
