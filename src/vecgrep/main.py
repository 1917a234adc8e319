"""Main entry point for the vecgrep command line and MCP server."""

import argparse
import json
import logging
import signal
import sys
import threading
from contextlib import closing, contextmanager

from fastmcp import FastMCP

from vecgrep.config import Config
from vecgrep.indexer import Harvester, Indexer, IndexStore, create_engine
from vecgrep.indexer.embeddings import EmbeddingEngine
from vecgrep.indexer.errors import VecgrepError
from vecgrep.query import QueryEngine, QueryResult
from vecgrep.tools import register_tools

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


def build_engine(config: Config) -> EmbeddingEngine:
    """Create the embedding engine named by the configuration."""
    return create_engine(
        config.engine,
        dimensions=config.dimensions,
        openai_api_key=config.openai_api_key,
        openai_base_url=config.openai_base_url,
    )


def open_store(config: Config) -> IndexStore:
    """Open and initialize the index database."""
    logger.debug("Opening index at %s", config.db_path)
    store = IndexStore(config.db_path)
    store.initialize()
    return store


def create_server(config: Config) -> FastMCP:
    """Create and configure the MCP server.

    Args:
        config: Configuration instance with all settings.
    """
    mcp = FastMCP(
        name="vecgrep",
        instructions=(
            "vecgrep searches local files by meaning. Use the search tool with a "
            "plain-language description of the code, config, or text you need; "
            "use index_status to see what has been indexed."
        ),
    )

    logger.info("Initializing index at %s", config.db_path)
    store = open_store(config)
    engine = build_engine(config)
    query_engine = QueryEngine(
        store,
        engine,
        limit=config.limit,
        threshold=config.threshold,
        context_lines=config.context_lines,
    )

    logger.info("Registering tools...")
    register_tools(mcp, query_engine, store)

    logger.info("Server configured successfully")
    return mcp


@contextmanager
def _cancel_on_interrupt():
    """Turn Ctrl-C into a cancel event so in-flight files still commit."""
    cancel = threading.Event()

    def handler(signum, frame):
        logger.info("Interrupt received, finishing in-flight files...")
        cancel.set()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


def cmd_index(args: argparse.Namespace, config: Config) -> int:
    with closing(build_engine(config)) as engine, closing(open_store(config)) as store:
        indexer = Indexer(
            store,
            engine,
            harvester=Harvester(config.chunk_size, config.chunk_overlap),
            workers=config.workers,
            batch_size=config.batch_size,
            exclude=args.exclude,
            max_file_size=config.max_file_size,
        )
        with _cancel_on_interrupt() as cancel:
            report = indexer.index(args.paths, force=args.force, cancel_event=cancel)

    print(
        f"{report.added} added, {report.updated} updated, {report.unchanged} unchanged, "
        f"{report.touched} touched, {report.deleted} deleted, {len(report.failed)} failed"
    )
    for path, reason in report.failed:
        print(f"  failed: {path}: {reason}", file=sys.stderr)

    if report.cancelled:
        print("Indexing cancelled; run again to resume", file=sys.stderr)
        return EXIT_CANCELLED
    return EXIT_OK


def _format_result(result: QueryResult) -> str:
    label = result.chunk_type if not result.name else f"{result.chunk_type} {result.name}"
    header = (
        f"{result.path}:{result.chunk_start_line}-{result.chunk_end_line}"
        f"  [{label}]  ({result.similarity:.3f})"
    )
    width = len(str(result.end_line))
    body = [
        f"  {str(number).rjust(width)}  {line}"
        for number, line in enumerate(result.content.split("\n"), start=result.start_line)
    ]
    return "\n".join([header, *body])


def cmd_search(args: argparse.Namespace, config: Config) -> int:
    with closing(build_engine(config)) as engine, closing(open_store(config)) as store:
        query_engine = QueryEngine(
            store,
            engine,
            limit=config.limit,
            threshold=config.threshold,
            context_lines=config.context_lines,
        )
        results = query_engine.search(args.query, scope=args.scope)

    if args.json:
        print(json.dumps([r.to_dict() for r in results], indent=2))
    elif not results:
        print("No results")
    else:
        print("\n\n".join(_format_result(r) for r in results))
    return EXIT_OK


def cmd_status(args: argparse.Namespace, config: Config) -> int:
    with closing(open_store(config)) as store:
        status = store.status()

    if args.json:
        print(json.dumps(status.to_dict(), indent=2))
        return EXIT_OK

    print(f"Index:          {status.db_path}")
    print(f"Schema version: {status.schema_version}")
    print(f"Files:          {status.files}")
    print(f"Chunks:         {status.chunks}")
    last = status.last_indexed_at.isoformat(sep=" ") if status.last_indexed_at else "never"
    print(f"Last indexed:   {last}")
    for engine in status.engines:
        print(f"Engine:         {engine.name} ({engine.dimensions} dims, {engine.vectors} vectors)")
    return EXIT_OK


def cmd_serve(args: argparse.Namespace, config: Config) -> int:
    logger.info("=" * 50)
    logger.info("vecgrep server starting...")
    logger.info("  VECGREP_DB:     %s", config.db_path)
    logger.info("  VECGREP_ENGINE: %s", config.engine)
    logger.info("  VECGREP_PORT:   %s", config.port)
    logger.info("=" * 50)

    mcp = create_server(config)
    logger.info("Starting MCP server on %s:%s...", args.host, config.port)
    try:
        mcp.run(transport="sse", host=args.host, port=config.port)
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--db", help="Index database path (default: $VECGREP_DB)")
    common.add_argument("--engine", help="Embedding engine (default: $VECGREP_ENGINE)")
    common.add_argument(
        "-v", "--verbose", action="store_true", default=None, help="Enable debug logging"
    )

    parser = argparse.ArgumentParser(
        prog="vecgrep",
        description="vecgrep - semantic search over local files",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    index = subparsers.add_parser("index", parents=[common], help="Index files under paths")
    index.add_argument("paths", nargs="*", default=["."], help="Paths to index (default: .)")
    index.add_argument(
        "--force", action="store_true", help="Re-harvest and re-embed unchanged files"
    )
    index.add_argument(
        "--exclude",
        action="append",
        default=[],
        metavar="PATTERN",
        help="Gitignore-style pattern to skip (repeatable)",
    )
    index.add_argument("--workers", type=int, help="Worker threads")
    index.set_defaults(handler=cmd_index)

    search = subparsers.add_parser("search", parents=[common], help="Search the index")
    search.add_argument("query", help="Natural-language query")
    search.add_argument("-n", "--limit", type=int, help="Maximum number of results")
    search.add_argument("--scope", help="Only search files at or under this path")
    search.add_argument(
        "-C", "--context", dest="context_lines", type=int, help="Context lines per result"
    )
    search.add_argument("--threshold", type=float, help="Minimum similarity")
    search.add_argument("--json", action="store_true", help="Print results as JSON")
    search.set_defaults(handler=cmd_search)

    status = subparsers.add_parser("status", parents=[common], help="Show index summary")
    status.add_argument("--json", action="store_true", help="Print status as JSON")
    status.set_defaults(handler=cmd_status)

    serve = subparsers.add_parser("serve", parents=[common], help="Run the MCP server")
    serve.add_argument("--port", type=int, help="Port (default: $VECGREP_PORT)")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.set_defaults(handler=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main function - parses arguments and dispatches to a command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    overrides = {
        "db_path": args.db,
        "engine": args.engine,
        "verbose": args.verbose,
        "workers": getattr(args, "workers", None),
        "limit": getattr(args, "limit", None),
        "context_lines": getattr(args, "context_lines", None),
        "threshold": getattr(args, "threshold", None),
        "port": getattr(args, "port", None),
    }
    try:
        config = Config.from_env(**overrides)
    except ValueError as e:
        print(f"vecgrep: error: {e}", file=sys.stderr)
        return EXIT_USAGE

    # Configure logging here to avoid side effects on import
    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        return args.handler(args, config)
    except ValueError as e:
        print(f"vecgrep: error: {e}", file=sys.stderr)
        return EXIT_USAGE
    except VecgrepError as e:
        print(f"vecgrep: error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except KeyboardInterrupt:
        return EXIT_CANCELLED
    except Exception:
        logger.exception("Unexpected error")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
