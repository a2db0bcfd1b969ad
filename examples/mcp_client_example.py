"""Example of using Lorecast through MCP.

This demonstrates how a chat front-end would interact with the MCP server.
"""

import asyncio
import json
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client


async def run_example():
    """Run example MCP interactions."""
    # Connect to the MCP server
    server_params = StdioServerParameters(
        command="lorecast-mcp",
        env={
            "LORECAST_DB_PATH": "example_lore.db",
            "LORECAST_EMBEDDING_BACKEND": "hash",
        },
    )

    async with stdio_client(server_params) as (read, write):
        async with ClientSession(read, write) as session:
            # Initialize connection
            await session.initialize()

            # List available tools
            tools = await session.list_tools()
            print(f"Available tools: {[t.name for t in tools.tools]}")

            # Import a SillyTavern lorebook
            print("\n=== Importing lorebook ===")
            result = await session.call_tool(
                "import_lorebook",
                {
                    "data": {
                        "name": "Harbor Town",
                        "entries": [
                            {
                                "key": ["harbor", "docks"],
                                "content": "The harbor is run by the smugglers' guild.",
                            },
                            {
                                "key": ["guild"],
                                "content": "The guild meets at the Salt Lantern.",
                            },
                        ],
                    }
                },
            )
            print(result.content[0].text)

            # Preview a scan without touching state
            print("\n=== Scan preview ===")
            preview = await session.call_tool("scan_preview", {"text": "Who runs the docks?"})
            data = json.loads(preview.content[0].text)
            print(f"Triggered: {data['triggered']}")
            print(f"Tokens used: {data['tokens_used']}")

            # Vectorize and probe
            print("\n=== Vectorizing ===")
            counts = await session.call_tool("vectorize_books", {})
            print(counts.content[0].text)

            ranked = await session.call_tool("vector_test", {"text": "harbor, docks"})
            for row in json.loads(ranked.content[0].text):
                print(f"  - {row['keyword']} {row['score']} match={row['match']}")

            # Process a real turn
            print("\n=== Processing message ===")
            prompt = await session.call_tool("process_message", {"text": "Who runs the docks?"})
            print(prompt.content[0].text)

            await session.call_tool("record_reply", {"text": "Nobody you want to meet."})


if __name__ == "__main__":
    asyncio.run(run_example())
