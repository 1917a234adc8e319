"""
vecgrep - semantic search over local files.

Indexes code, text, config and media metadata under a set of roots and
answers natural-language queries with ranked, line-addressed matches.

Stack:
- Python + SQLite (vector index, one transaction per file)
- numpy (cosine similarity)
- pluggable embedding engines (local hashing, sentence-transformers, OpenAI)
- FastMCP (MCP server)
"""

__version__ = "0.1.0"
