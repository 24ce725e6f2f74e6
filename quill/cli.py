"""CLI for the Quill retrieval engine."""

import argparse
import asyncio
import json
import sys
from typing import List, Optional

from . import __version__
from .config import QuillConfig
from .errors import QuillError
from .logging_setup import setup_logging


def _config(args: argparse.Namespace) -> QuillConfig:
    overrides = {}
    if args.db:
        overrides["db_path"] = args.db
    if args.index:
        overrides["index_path"] = args.index
    if args.log_level:
        overrides["log_level"] = args.log_level
    config = QuillConfig.from_env(**overrides)
    setup_logging(config.log_level, config.log_file)
    return config


def serve(args: argparse.Namespace) -> None:
    """Start the REST API server."""
    import uvicorn
    from .api import create_app

    config = _config(args)
    app = create_app(config)

    print(f"Starting Quill API server on http://{args.host}:{args.port}")
    print(f"  Database: {config.db_path}")
    print(f"  Index: {config.index_path} ({config.vector_backend})")
    print(f"  Docs: http://{args.host}:{args.port}/docs\n")

    uvicorn.run(app, host=args.host, port=args.port)


def stats(args: argparse.Namespace) -> None:
    """Show engine statistics."""
    from .quill import Quill

    quill = Quill(_config(args))
    try:
        print(json.dumps(quill.get_stats(), indent=2))
    finally:
        quill.close()


def search(args: argparse.Namespace) -> None:
    """Run one hybrid search and print the results."""
    from .quill import Quill

    quill = Quill(_config(args))
    try:
        results = asyncio.run(quill.search(
            args.owner,
            args.query,
            limit=args.limit,
            vector_weight=args.weight,
            content_types=args.type or None,
        ))
    finally:
        quill.close()

    if not results:
        print("No results.")
        return
    for i, r in enumerate(results, 1):
        doc = r.document
        label = doc.title or doc.body[:60].replace("\n", " ")
        print(f"{i}. [{r.score:.4f}] ({r.match_type.value}, {doc.content_type.value}) {label}")
        for hl in r.highlights:
            print(f"     {hl}")


def main(argv: Optional[List[str]] = None) -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="quill",
        description="Quill - hybrid search for notes, tasks and memories",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  quill serve                         Start REST API server
  quill stats                         Show engine statistics
  quill search "ML project" --owner u1

Environment variables:
  OPENAI_API_KEY    Required for OpenAI embeddings and answers
  HF_TOKEN          Optional for HuggingFace models
  JINA_API_KEY      Required for Jina AI embeddings
  QUILL_*           Engine settings (see QuillConfig), also read from .env
"""
    )

    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--db", type=str, help="Database path (default: QUILL_DB_PATH or quill.db)"
    )
    parser.add_argument(
        "--index", type=str, help="Vector index path (default: QUILL_INDEX_PATH or quill.vectors)"
    )
    parser.add_argument(
        "--log-level", type=str, default=None, help="Logging level (default: QUILL_LOG_LEVEL or INFO)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start REST API server")
    serve_parser.add_argument(
        "--host", type=str, default="127.0.0.1", help="Host to bind (default: 127.0.0.1)"
    )
    serve_parser.add_argument(
        "--port", type=int, default=8000, help="Port to bind (default: 8000)"
    )
    serve_parser.set_defaults(func=serve)

    # Stats command
    stats_parser = subparsers.add_parser("stats", help="Show engine statistics")
    stats_parser.set_defaults(func=stats)

    # Search command
    search_parser = subparsers.add_parser("search", help="Hybrid search one owner's documents")
    search_parser.add_argument("query", type=str, help="Search query")
    search_parser.add_argument("--owner", type=str, required=True, help="Owner (user) id")
    search_parser.add_argument("--limit", type=int, default=None, help="Number of results")
    search_parser.add_argument("--weight", type=float, default=None, help="Vector weight (0-1)")
    search_parser.add_argument(
        "--type", action="append", choices=["note", "task", "memory"],
        help="Restrict to a content type (repeatable)",
    )
    search_parser.set_defaults(func=search)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        args.func(args)
    except QuillError as e:
        print(f"Error ({e.kind}): {e.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
