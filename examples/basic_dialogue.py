"""Basic lorebook chat example.

This example demonstrates:
- Storing a character card and a lorebook
- Keyword, constant and sticky entries
- Scanning user messages and recording model replies
- Inspecting the composed prompt

Note: This example uses a placeholder for LLM generation.
Replace the generate_reply function with your actual LLM calls.
"""

import asyncio

from lorecast import LorebookEngine, EngineConfig, LoreBook, LoreEntry, Position, TriggerMode
from lorecast.storage import SQLiteStore


def generate_reply(prompt: str) -> str:
    """Placeholder for actual LLM generation."""
    if "[dragon" in prompt:
        return "The dragon stirs beneath the ice."
    return "The wind howls across the tundra."


async def main():
    # Initialize engine over a SQLite-backed store
    config = EngineConfig(embedding_backend="hash")
    store = SQLiteStore("story.db")
    engine = LorebookEngine(config, store=store)

    try:
        engine.reset_conversation()
        store.set(
            characterCards=[
                {
                    "id": "narrator",
                    "name": "Skald",
                    "systemPrompt": "You narrate a northern saga.",
                    "personality": "Grim, poetic",
                }
            ],
            activeCard="narrator",
            authorNote="Keep replies under three sentences.",
        )

        if not engine.list_books():
            engine.add_book(
                LoreBook(
                    id="north",
                    name="The North",
                    entries=[
                        LoreEntry(
                            id="dragon",
                            keyword=["dragon", "wyrm"],
                            content="An ice dragon sleeps under the glacier.",
                            sticky=2,
                        ),
                        LoreEntry(
                            id="glacier",
                            keyword=["glacier"],
                            content="The glacier is riddled with old dwarven tunnels.",
                        ),
                        LoreEntry(
                            id="tone",
                            trigger_mode=TriggerMode.CONSTANT,
                            content="Winter never ends here.",
                            position=Position.BEFORE_CHAR,
                        ),
                    ],
                )
            )

        for message in ["Tell me of the dragon.", "What of the village?", "And the king?"]:
            prompt = await engine.process_user_message(message)
            print(f"\n--- Prompt for {message!r} ---\n{prompt}")
            reply = generate_reply(prompt)
            engine.record_model_reply(reply)
            print(f"Model: {reply}")

        print(f"\nTimed state: {store.get('loreTimedState')}")

    finally:
        store.close()


if __name__ == "__main__":
    asyncio.run(main())
