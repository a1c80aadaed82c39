#!/usr/bin/env python3
"""
MCP Server for SecondBrain Memory System
Copyright 2025 Jurden Bruce

"""

import sys
import os
import asyncio
import logging
import traceback

from mcp.server.models import InitializationOptions
from mcp.server import NotificationOptions, Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent

from . import __version__
from .config import load_config
from .knowledge_store import KnowledgeStore
from .mcp_tools import get_tool_definitions, handle_tool_call

logger = logging.getLogger("secondbrain-memory")

# Global store
knowledge_store = None
app = Server("secondbrain-memory")


def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        stream=sys.stderr,
        format="%(asctime)s [%(levelname)s] [%(name)s] %(message)s",
    )
    for logger_name in ["sentence_transformers", "urllib3", "httpx"]:
        logging.getLogger(logger_name).setLevel(logging.CRITICAL)
    logging.getLogger("openai").setLevel(logging.WARNING)


@app.list_tools()
async def handle_list_tools() -> list[Tool]:
    """List available knowledge tools"""
    return get_tool_definitions()


@app.call_tool()
async def handle_call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Handle tool calls with proper error handling"""
    return await handle_tool_call(name, arguments, knowledge_store)


async def main():
    """Main entry point"""
    global knowledge_store

    config = load_config()
    setup_logging(config["log_level"])

    # Heavy imports (torch, sentence-transformers) may print to stdout,
    # which belongs to the MCP framing
    original_stdout_fd = os.dup(1)
    os.dup2(2, 1)

    try:
        logger.info(f"Initializing KnowledgeStore in {config['data_dir']}")
        knowledge_store = KnowledgeStore(config)

        # Restore stdout for MCP communication
        os.dup2(original_stdout_fd, 1)
        sys.stdout = os.fdopen(original_stdout_fd, "w")

        logger.info("Starting MCP server...")
        async with stdio_server() as (read_stream, write_stream):
            await app.run(
                read_stream,
                write_stream,
                InitializationOptions(
                    server_name="secondbrain-memory",
                    server_version=__version__,
                    capabilities=app.get_capabilities(
                        notification_options=NotificationOptions(),
                        experimental_capabilities={},
                    ),
                ),
            )
    except KeyboardInterrupt:
        logger.info("Received interrupt signal")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        logger.error(traceback.format_exc())
        sys.exit(1)
    finally:
        if knowledge_store:
            await knowledge_store.shutdown()


def run():
    """Console script entry point"""
    asyncio.run(main())


if __name__ == "__main__":
    run()
