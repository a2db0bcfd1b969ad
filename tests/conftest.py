"""Pytest fixtures for Lorecast tests."""

import random

import pytest
from lorecast import LorebookEngine, EngineConfig, LoreEntry, LoreBook, CharacterCard
from lorecast.embedding import HashEmbedding
from lorecast.storage import InMemoryStore


class FixedRandom(random.Random):
    """Random source that always returns the same value."""

    def __init__(self, value: float):
        super().__init__()
        self.value = value

    def random(self) -> float:
        return self.value


@pytest.fixture
def make_entry():
    """Factory for entries with sensible test defaults."""

    def _make(entry_id, keyword=None, content=None, **overrides):
        return LoreEntry(
            id=entry_id,
            keyword=list(keyword) if keyword is not None else [entry_id],
            content=content if content is not None else f"{entry_id} lore",
            **overrides,
        )

    return _make


@pytest.fixture
def card():
    return CharacterCard(
        id="card1",
        name="Seraphine",
        system_prompt="You are a storyteller.",
        description="A wandering bard",
        personality="Curious",
        scenario="A tavern at dusk",
    )


@pytest.fixture
def store():
    """In-memory store with an active character card."""
    return InMemoryStore(
        {
            "characterCards": [
                {
                    "id": "card1",
                    "name": "Seraphine",
                    "systemPrompt": "You are a storyteller.",
                    "description": "A wandering bard",
                }
            ],
            "activeCard": "card1",
        }
    )


@pytest.fixture
def engine(store):
    """Engine over the in-memory store, hash embeddings, fixed randomness."""
    return LorebookEngine(
        EngineConfig(embedding_backend="hash"),
        store=store,
        embedding=HashEmbedding(dimensions=64),
        rng=FixedRandom(0.5),
    )


@pytest.fixture
def seeded_engine(engine, make_entry):
    """Engine with one lorebook of three linked entries."""
    book = LoreBook(
        id="world",
        name="World",
        entries=[
            make_entry("dragon", content="Dragons guard the northern pass."),
            make_entry("pass", keyword=["northern pass"], content="The pass is snowbound."),
            make_entry("king", content="The king rules from Highmoor."),
        ],
    )
    engine.add_book(book)
    return engine
