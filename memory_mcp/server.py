"""
MCP Server for the memory store
Copyright 2025 Jurden Bruce
"""

import logging
from typing import Optional

from mcp.server.models import InitializationOptions
from mcp.server import NotificationOptions, Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent

from . import __version__
from .config import MemoryConfig
from .embeddings import EmbeddingProvider, create_embedding_provider
from .mcp_tools import get_tool_definitions, handle_tool_call
from .store import MemoryStore

logger = logging.getLogger("memory-mcp.server")

SERVER_NAME = "memory-mcp"


def create_server(memory_store: MemoryStore, config: MemoryConfig) -> Server:
    """Build an MCP server whose tools operate on memory_store"""
    app = Server(SERVER_NAME)

    @app.list_tools()
    async def handle_list_tools() -> list[Tool]:
        return get_tool_definitions(config)

    @app.call_tool()
    async def handle_call_tool(name: str, arguments: dict) -> list[TextContent]:
        return await handle_tool_call(name, arguments, memory_store, config)

    return app


async def run_stdio(config: MemoryConfig, embedding_provider: Optional[EmbeddingProvider] = None):
    """Open the store and serve MCP over stdio until the client disconnects

    Raises:
        StoreInitializationError: the database could not be set up
    """
    if embedding_provider is None:
        embedding_provider = create_embedding_provider(config)

    logger.info(f"Initializing MemoryStore at {config.db_path}")
    memory_store = MemoryStore(config, embedding_provider)
    await memory_store.initialize()

    try:
        stats = await memory_store.stats()
        logger.info(
            f"Starting MCP server ({stats['memories']} memories, "
            f"fts={stats['fts']}, embeddings={stats['embeddings']})"
        )
        app = create_server(memory_store, config)
        async with stdio_server() as (read_stream, write_stream):
            await app.run(
                read_stream,
                write_stream,
                InitializationOptions(
                    server_name=SERVER_NAME,
                    server_version=__version__,
                    capabilities=app.get_capabilities(
                        notification_options=NotificationOptions(),
                        experimental_capabilities={},
                    ),
                ),
            )
    finally:
        await memory_store.shutdown()
