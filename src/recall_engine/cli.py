"""Command-line entry point: index files and query the store."""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from .config import Config
from .embedding import EmbeddingClient, OllamaEmbeddingBackend
from .logging_setup import configure_logging
from .models import ChunkMetadata, SourceType
from .retrieval import RetrievalService
from .storage import NumpyAnnIndex, RedisDocumentStore, VectorStore


class Engine:
    """Components wired from Config, owned by one CLI invocation."""

    def __init__(self):
        self.store = RedisDocumentStore()
        self.backend = OllamaEmbeddingBackend()
        self.vector_store = VectorStore(NumpyAnnIndex(), self.store)
        self.service = RetrievalService(self.vector_store, EmbeddingClient(self.backend))

    async def aclose(self) -> None:
        await self.vector_store.close()
        await self.backend.aclose()
        await self.store.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="recall-engine",
        description="Index saved content and search it with hybrid retrieval",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Index an article
  recall-engine index article.txt --source-id https://example.com/a --url https://example.com/a

  # Attach a summary to it
  recall-engine summary summary.txt --source-id https://example.com/a --url https://example.com/a

  # Search with citations
  recall-engine search "when did my order ship" --limit 5 --sources
        """,
    )
    parser.add_argument("--log-level", default=Config.LOG_LEVEL, help="Console log level")
    parser.add_argument("--log-file", help="Optional rotating log file")

    sub = parser.add_subparsers(dest="command", required=True)

    index = sub.add_parser("index", help="Chunk, embed and store a text file")
    index.add_argument("file", type=Path)
    index.add_argument("--source-id", required=True)
    index.add_argument("--url", required=True)
    index.add_argument(
        "--type", choices=[t.value for t in SourceType], default=SourceType.ARTICLE.value
    )
    index.add_argument("--title", default="")

    summary = sub.add_parser("summary", help="Store a summary for an indexed source")
    summary.add_argument("file", type=Path)
    summary.add_argument("--source-id", required=True)
    summary.add_argument("--url", required=True)
    summary.add_argument(
        "--type", choices=[t.value for t in SourceType], default=SourceType.ARTICLE.value
    )
    summary.add_argument("--title", default="")

    search = sub.add_parser("search", help="Hybrid search")
    search.add_argument("query")
    search.add_argument("--limit", type=int, default=5)
    search.add_argument(
        "--sources", action="store_true", help="Print numbered context with citations"
    )

    sub.add_parser("stats", help="Show index statistics")
    return parser


async def run_command(args: argparse.Namespace, engine: Engine) -> int:
    """Execute one parsed command against engine; returns the exit code."""
    service = engine.service

    if args.command in ("index", "summary"):
        text = args.file.read_text(encoding="utf-8")
        metadata = ChunkMetadata(
            source_id=args.source_id,
            source_url=args.url,
            source_type=SourceType(args.type),
            title=args.title,
        )
        if args.command == "index":
            stats = await service.index_chunks(text, metadata)
        else:
            stats = await service.index_summary(text, metadata)
        print(json.dumps(stats.to_dict(), indent=2))
        return 0 if stats.succeeded else 1

    if args.command == "search":
        if args.sources:
            sourced = await service.search_with_sources(args.query, args.limit)
            print(sourced.context)
            print(json.dumps([s.to_dict() for s in sourced.sources], indent=2))
            return 0

        results = await service.search(args.query, args.limit)
        for rank, result in enumerate(results, start=1):
            meta = result.entry.metadata
            print(
                f"{rank}. [{result.score:.1f}] ({result.match_type.value}) "
                f"{meta.title or meta.source_url} :: {result.entry.content[:120]!r}"
            )
        return 0

    if args.command == "stats":
        await engine.vector_store.ensure_index_loaded()
        report = {
            "vector_store": engine.vector_store.get_stats(),
            "sources": await service.get_metadata_count(),
        }
        print(json.dumps(report, indent=2))
        return 0

    raise ValueError(f"Unknown command {args.command}")


async def _main(args: argparse.Namespace) -> int:
    engine = Engine()
    try:
        return await run_command(args, engine)
    finally:
        await engine.aclose()


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level, args.log_file)

    try:
        Config.validate()
        return asyncio.run(_main(args))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
