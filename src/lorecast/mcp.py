"""MCP server for the Lorecast lorebook engine.

Exposes the engine's API through Model Context Protocol tools.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent

from lorecast.engine import LorebookEngine
from lorecast.models import EngineConfig, ScanResult
from lorecast.storage import SQLiteStore

logger = logging.getLogger(__name__)

# Global engine instance (initialized on first connection)
_engine: LorebookEngine | None = None


def get_engine() -> LorebookEngine:
    """Get or initialize the engine instance."""
    global _engine
    if _engine is None:
        # Load config from environment or use defaults
        config = EngineConfig(
            db_path=os.getenv("LORECAST_DB_PATH", "lorecast.db"),
            embedding_backend=os.getenv("LORECAST_EMBEDDING_BACKEND", "local"),
            embedding_model=os.getenv(
                "LORECAST_EMBEDDING_MODEL", "paraphrase-multilingual-MiniLM-L12-v2"
            ),
            openai_model=os.getenv("LORECAST_OPENAI_MODEL", "text-embedding-3-small"),
            embedding_timeout=float(os.getenv("LORECAST_EMBEDDING_TIMEOUT", "10")),
        )
        _engine = LorebookEngine(config, store=SQLiteStore(config.db_path))
    return _engine


def _result_to_dict(result: ScanResult) -> dict[str, Any]:
    return {
        "triggered": sorted(result.triggered_ids),
        "selected": [
            {
                "id": e.id,
                "keyword": e.keyword,
                "position": e.position.value,
                "order": e.order,
            }
            for e in result.selected
        ],
        "tokens_used": result.tokens_used,
        "timed_state": {k: w.to_dict() for k, w in result.timed_state.items()},
        "prompt": result.prompt,
    }


# Initialize server
server = Server("lorecast")


# -------------------------------------------------------------------------
# Tool Definitions
# -------------------------------------------------------------------------

TOOLS = [
    Tool(
        name="process_message",
        description="Scan lorebooks for a user message and return the composed prompt",
        inputSchema={
            "type": "object",
            "properties": {
                "text": {"type": "string", "description": "Raw user message"},
            },
            "required": ["text"],
        },
    ),
    Tool(
        name="record_reply",
        description="Record a model reply in the chat history",
        inputSchema={
            "type": "object",
            "properties": {
                "text": {"type": "string", "description": "Model reply text"},
            },
            "required": ["text"],
        },
    ),
    Tool(
        name="scan_preview",
        description="Show which entries a message would trigger, without saving state",
        inputSchema={
            "type": "object",
            "properties": {
                "text": {"type": "string", "description": "Message to scan"},
            },
            "required": ["text"],
        },
    ),
    Tool(
        name="import_lorebook",
        description="Import a SillyTavern lorebook export as a new book",
        inputSchema={
            "type": "object",
            "properties": {
                "data": {
                    "type": "object",
                    "description": "SillyTavern world-info JSON",
                },
            },
            "required": ["data"],
        },
    ),
    Tool(
        name="vectorize_books",
        description="Compute chunk embeddings for lorebook entries",
        inputSchema={
            "type": "object",
            "properties": {
                "book_id": {
                    "type": "string",
                    "description": "Only vectorize this book",
                },
                "force": {
                    "type": "boolean",
                    "description": "Re-embed entries that already have embeddings",
                },
            },
        },
    ),
    Tool(
        name="vector_test",
        description="Rank embedded entries by similarity to a query",
        inputSchema={
            "type": "object",
            "properties": {
                "text": {"type": "string", "description": "Query text"},
            },
            "required": ["text"],
        },
    ),
    Tool(
        name="reset_conversation",
        description="Clear chat history, message counter and timed effects",
        inputSchema={"type": "object", "properties": {}},
    ),
    Tool(
        name="list_books",
        description="List lorebooks with their entry counts",
        inputSchema={"type": "object", "properties": {}},
    ),
]


# -------------------------------------------------------------------------
# MCP Handlers
# -------------------------------------------------------------------------


@server.list_tools()
async def list_tools() -> list[Tool]:
    return TOOLS


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    engine = get_engine()

    try:
        # Route to appropriate engine method
        if name == "process_message":
            prompt = await engine.process_user_message(arguments["text"])
            return [TextContent(type="text", text=prompt)]

        elif name == "record_reply":
            recorded = engine.record_model_reply(arguments["text"])
            text = "Recorded reply" if recorded else "Duplicate reply ignored"
            return [TextContent(type="text", text=text)]

        elif name == "scan_preview":
            result = await engine.preview(arguments["text"])
            return [
                TextContent(
                    type="text", text=json.dumps(_result_to_dict(result), indent=2)
                )
            ]

        elif name == "import_lorebook":
            book = engine.import_lorebook(arguments["data"])
            return [
                TextContent(
                    type="text",
                    text=f"Imported {len(book.entries)} entries into {book.name}",
                )
            ]

        elif name == "vectorize_books":
            counts = engine.vectorize(
                book_id=arguments.get("book_id"),
                force=arguments.get("force", False),
            )
            return [TextContent(type="text", text=json.dumps(counts))]

        elif name == "vector_test":
            ranked = await engine.probe_vectors(arguments["text"])
            result = [
                {
                    "id": entry.id,
                    "keyword": entry.keyword,
                    "score": round(score, 4),
                    "match": matched,
                }
                for entry, score, matched in ranked
            ]
            return [TextContent(type="text", text=json.dumps(result, indent=2))]

        elif name == "reset_conversation":
            engine.reset_conversation()
            return [TextContent(type="text", text="Conversation reset")]

        elif name == "list_books":
            result = [
                {
                    "id": b.id,
                    "name": b.name,
                    "enabled": b.enabled,
                    "entries": len(b.entries),
                }
                for b in engine.list_books()
            ]
            return [TextContent(type="text", text=json.dumps(result, indent=2))]

        else:
            return [TextContent(type="text", text=f"Unknown tool: {name}")]

    except Exception as e:
        logger.exception("Tool %s failed", name)
        return [TextContent(type="text", text=f"Error: {str(e)}")]


# -------------------------------------------------------------------------
# Main Entry Point
# -------------------------------------------------------------------------


async def main():
    """Run the MCP server."""
    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options(),
        )


def run():
    """Console script entry point."""
    import asyncio

    # stdout carries the MCP transport
    logging.basicConfig(
        level=os.getenv("LORECAST_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(main())


if __name__ == "__main__":
    run()
