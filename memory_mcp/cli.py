"""
Command-line entry point for the memory store
Copyright 2025 Jurden Bruce

    memory-mcp [options] serve                  Run the MCP server over stdio
    memory-mcp [options] export [--output FILE] Dump live memories as JSON
    memory-mcp [options] import FILE            Import a JSON dump atomically
    memory-mcp [options] cleanup                Delete expired memories
"""

import sys
import json
import sqlite3
import asyncio
import logging
import argparse
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from .config import MemoryConfig, CONTENT_PROFILES, EMBEDDING_PROVIDERS
from .embeddings import create_embedding_provider
from .errors import MemoryStoreError, StoreInitializationError
from .mcp_tools import ImportInput, check_import_batch_size
from .server import run_stdio
from .store import MemoryStore

logger = logging.getLogger("memory-mcp.cli")

QUIET_LOGGERS = ["sentence_transformers", "urllib3", "httpx", "httpcore"]


def configure_logging(level: str = "INFO"):
    """Log to stderr; stdout carries the MCP stream or exported JSON"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stderr,
        format="%(asctime)s [%(levelname)s] [%(name)s] %(message)s",
    )
    for logger_name in QUIET_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.CRITICAL)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="memory-mcp", description="Persistent memory store for AI agents")
    parser.add_argument("--db", help="SQLite database path (overrides MEMORY_DB)")
    parser.add_argument("--topk", type=int, help="Default number of recall results (overrides MEMORY_TOPK)")
    parser.add_argument("--embed-provider", choices=EMBEDDING_PROVIDERS, help="Embedding provider")
    parser.add_argument("--embed-key", help="API key for the OpenAI-compatible embedding endpoint")
    parser.add_argument("--embed-model", help="Embedding model name")
    parser.add_argument("--profile", choices=list(CONTENT_PROFILES), help="Content length profile")
    parser.add_argument("--no-fts", action="store_true", help="Disable the full-text index")
    parser.add_argument("--log-level", help="Logging level (DEBUG, INFO, WARNING, ...)")

    commands = parser.add_subparsers(dest="command")
    commands.add_parser("serve", help="Run the MCP server over stdio (default)")
    export = commands.add_parser("export", help="Write live memories as a JSON array")
    export.add_argument("--output", "-o", help="Output file (default: stdout)")
    restore = commands.add_parser("import", help="Import memories from a JSON file")
    restore.add_argument("file", help="JSON file produced by export")
    commands.add_parser("cleanup", help="Delete expired memories")
    return parser


def config_from_args(args: argparse.Namespace, environ=None) -> MemoryConfig:
    return MemoryConfig.from_env(environ).override(
        db_path=args.db,
        default_top_k=args.topk,
        embedding_provider=args.embed_provider,
        embedding_api_key=args.embed_key,
        embedding_model=args.embed_model,
        profile=args.profile,
        fts_enabled=False if args.no_fts else None,
        log_level=args.log_level.upper() if args.log_level else None,
    )


def load_import_items(path: Path, config: MemoryConfig) -> List[Dict[str, Any]]:
    """Read and validate an import file

    Accepts a bare JSON array or the {"items": [...]} object printed by
    the export tool.

    Raises:
        ValueError: unreadable JSON or wrong top-level shape
        ValidationError: an item failed validation
        ImportBatchError: too many items
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    items = data.get("items") if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise ValueError(f"{path} must contain a JSON array of memories")
    check_import_batch_size(items)
    parsed = ImportInput.model_validate(
        {"items": items}, context={"content_max_length": config.content_max_length}
    )
    return [item.model_dump() for item in parsed.items]


async def _run_export(config: MemoryConfig, output: Optional[str]) -> int:
    store = MemoryStore(config)
    await store.initialize()
    try:
        await store.cleanup_expired()
        records = await store.export_all()
    finally:
        await store.shutdown()

    payload = json.dumps([r.to_api_dict() for r in records], indent=2)
    if output:
        Path(output).write_text(payload + "\n", encoding="utf-8")
        print(f"Exported {len(records)} memories to {output}", file=sys.stderr)
    else:
        print(payload)
    return 0


async def _run_import(config: MemoryConfig, path: str) -> int:
    items = load_import_items(Path(path), config)
    store = MemoryStore(config, create_embedding_provider(config))
    await store.initialize()
    try:
        ids = await store.import_all(items)
    finally:
        await store.shutdown()
    print(f"[SUCCESS] Imported {len(ids)} memories into {config.db_path}")
    return 0


async def _run_cleanup(config: MemoryConfig) -> int:
    store = MemoryStore(config)
    await store.initialize()
    try:
        removed = await store.cleanup_expired()
    finally:
        await store.shutdown()
    print(f"Removed {removed} expired memories")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = config_from_args(args)
    except ValueError as e:
        print(f"[FAILED] Invalid configuration: {e}", file=sys.stderr)
        return 1

    configure_logging(config.log_level)
    command = args.command or "serve"

    try:
        if command == "serve":
            asyncio.run(run_stdio(config))
            return 0
        if command == "export":
            return asyncio.run(_run_export(config, args.output))
        if command == "import":
            return asyncio.run(_run_import(config, args.file))
        if command == "cleanup":
            return asyncio.run(_run_cleanup(config))
    except StoreInitializationError as e:
        logger.error(f"Fatal error: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Received interrupt signal")
        return 0
    except (OSError, ValueError, ValidationError, sqlite3.Error, MemoryStoreError) as e:
        print(f"[FAILED] {command} failed: {e}", file=sys.stderr)
        return 1

    parser.error(f"unknown command {command!r}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
