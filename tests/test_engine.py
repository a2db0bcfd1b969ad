"""End-to-end tests for the lorebook engine."""

import asyncio

import pytest
from lorecast import (
    ChatMessage,
    EngineConfig,
    LoreBook,
    LorebookEngine,
    Position,
    ScanInProgressError,
    ScanRequest,
    TimedWindow,
    TriggerMode,
    run_scan,
)
from lorecast.embedding import HashEmbedding

from conftest import FixedRandom


def send(engine, text):
    return asyncio.run(engine.process_user_message(text))


def test_run_scan_pipeline(make_entry, card):
    books = (
        LoreBook(
            id="w",
            name="World",
            entries=[
                make_entry("dragon", content="Dragons guard the northern pass.", sticky=2),
                make_entry("pass", keyword=["northern pass"], content="Snowbound."),
                make_entry("rule", trigger_mode=TriggerMode.CONSTANT, content="Stay in character."),
                make_entry("elf"),
            ],
        ),
    )
    request = ScanRequest(
        user_message="Is there a dragon?",
        books=books,
        character_card=card,
        total_message_count=7,
    )

    result = run_scan(request, EngineConfig())

    assert result.triggered_ids == {"dragon", "pass", "rule"}
    assert [e.id for e in result.selected] == ["rule", "dragon", "pass"]
    assert result.timed_state == {"dragon": TimedWindow(sticky_until=9)}
    assert result.tokens_used == sum(len(e.content) // 4 + (len(e.content) % 4 > 0) for e in result.selected)
    assert "[dragon]: Dragons guard the northern pass." in result.prompt
    assert result.prompt.endswith("Is there a dragon?")


def test_run_scan_without_recursion(make_entry):
    books = (
        LoreBook(
            id="w",
            name="W",
            entries=[
                make_entry("dragon", content="near the northern pass"),
                make_entry("pass", keyword=["northern pass"]),
            ],
        ),
    )
    request = ScanRequest(user_message="dragon", books=books)

    assert run_scan(request, EngineConfig(recursion=False)).triggered_ids == {"dragon"}
    assert run_scan(request, EngineConfig()).triggered_ids == {"dragon", "pass"}


def test_run_scan_history_scenario(make_entry):
    books = (LoreBook(id="w", name="W", entries=[make_entry("lore", keyword=["dragon"], scan_depth=2)]),)
    history = tuple(ChatMessage(role="user", text=t) for t in ["a", "b", "dragon lore?"])
    request = ScanRequest(user_message="tell me more", books=books, history=history)

    assert run_scan(request, EngineConfig(scan_depth=4)).triggered_ids == {"lore"}


def test_run_scan_budget_drops_entries(make_entry, card):
    books = (
        LoreBook(
            id="w",
            name="W",
            entries=[make_entry(n, keyword=["go"], content="x" * 80) for n in ("a", "b", "c")],
        ),
    )
    request = ScanRequest(user_message="go", books=books, character_card=card)

    result = run_scan(request, EngineConfig(token_budget=50))

    assert [e.id for e in result.selected] == ["a", "b"]
    assert result.tokens_used == 40


def test_run_scan_no_card_returns_no_prompt(make_entry):
    books = (LoreBook(id="w", name="W", entries=[make_entry("dragon")]),)
    result = run_scan(ScanRequest(user_message="dragon", books=books), EngineConfig())

    assert [e.id for e in result.selected] == ["dragon"]
    assert result.prompt is None


def test_sticky_entry_stays_across_turns(engine, make_entry):
    engine.add_book(
        LoreBook(id="w", name="W", entries=[make_entry("dragon", sticky=3, cooldown=2)])
    )
    # Scan depth 1 keeps the first "dragon" message out of later buffers
    engine.store.set(totalMessageCount=10, loreScanDepth=1)

    assert "[dragon]" in send(engine, "a dragon!")  # counter 10
    assert engine.store.get("loreTimedState") == {"dragon": {"stickyUntil": 13}}
    assert "[dragon]" in send(engine, "weather?")  # 11, forced in
    assert engine.store.get("loreTimedState") == {"dragon": {"stickyUntil": 14}}


def test_elapsed_sticky_window_cools_down(engine, make_entry):
    engine.add_book(
        LoreBook(id="w", name="W", entries=[make_entry("dragon", sticky=3, cooldown=2)])
    )
    engine.store.set(
        totalMessageCount=14,
        loreScanDepth=1,
        loreTimedState={"dragon": {"stickyUntil": 13}},
    )

    assert "[dragon]" not in send(engine, "walk?")  # 14, cooldown begins
    assert engine.store.get("loreTimedState") == {"dragon": {"cooldownUntil": 16}}
    assert "[dragon]" not in send(engine, "dragon again")  # 15, cooling down
    assert "[dragon]" in send(engine, "dragon again")  # 16


def test_process_message_records_history(seeded_engine):
    prompt = send(seeded_engine, "A dragon appears")

    assert prompt.startswith("<context>")
    assert seeded_engine.store.get("totalMessageCount") == 1
    history = seeded_engine.store.get("chatHistory")
    assert [(m["role"], m["text"]) for m in history] == [("user", "A dragon appears")]
    assert seeded_engine.store.get("lastAssembledPrompt") == prompt


def test_history_feeds_next_scan(seeded_engine):
    send(seeded_engine, "The king summons you")
    prompt = send(seeded_engine, "What next?")

    assert "[king]: The king rules from Highmoor." in prompt


def test_no_active_card_passes_message_through(seeded_engine):
    seeded_engine.store.set(activeCard=None)

    assert send(seeded_engine, "A dragon appears") == "A dragon appears"
    assert seeded_engine.store.get("totalMessageCount") == 1


def test_disabled_engine_is_pure_pass_through(seeded_engine):
    seeded_engine.store.set(extensionEnabled=False)

    assert send(seeded_engine, "A dragon appears") == "A dragon appears"
    assert seeded_engine.store.get("totalMessageCount") == 0
    assert seeded_engine.store.get("chatHistory") == []


def test_persisted_settings_override_config(seeded_engine):
    seeded_engine.store.set(loreRecursion=False)

    result = asyncio.run(seeded_engine.preview("dragon"))

    assert result.triggered_ids == {"dragon"}


def test_preview_does_not_persist(seeded_engine):
    result = asyncio.run(seeded_engine.preview("dragon"))

    assert result.triggered_ids == {"dragon", "pass"}
    assert seeded_engine.store.get("totalMessageCount") == 0
    assert seeded_engine.store.get("chatHistory") == []


def test_vectorized_entry_matches_via_embedding(engine, make_entry):
    backend = HashEmbedding(dimensions=64)
    engine.add_book(
        LoreBook(
            id="v",
            name="V",
            entries=[
                make_entry(
                    "vec",
                    keyword=["unused"],
                    content="Vector lore",
                    trigger_mode=TriggerMode.VECTORIZED,
                    embedding_chunks=[backend.embed("the old lighthouse")],
                )
            ],
        )
    )

    assert "[unused]: Vector lore" in send(engine, "the old lighthouse")
    assert "Vector lore" not in send(engine, "something else entirely")


def test_embedding_failure_falls_back_to_keywords(store, make_entry):
    class Broken(HashEmbedding):
        def embed(self, text):
            raise ConnectionError("offline")

    engine = LorebookEngine(EngineConfig(), store=store, embedding=Broken(8), rng=FixedRandom(0.5))
    engine.add_book(
        LoreBook(
            id="v",
            name="V",
            entries=[
                make_entry(
                    "vec",
                    keyword=["lighthouse"],
                    trigger_mode=TriggerMode.VECTORIZED,
                    embedding_chunks=[[1.0] * 8],
                ),
                make_entry("plain", keyword=["lighthouse"]),
            ],
        )
    )

    prompt = send(engine, "to the lighthouse")

    assert "[lighthouse]: vec lore" in prompt
    assert "[lighthouse]: plain lore" in prompt


def test_keyword_only_scan_skips_embedding(store, make_entry):
    class Exploding(HashEmbedding):
        def embed(self, text):
            raise AssertionError("should not be called")

    engine = LorebookEngine(EngineConfig(), store=store, embedding=Exploding(8))
    engine.add_book(LoreBook(id="w", name="W", entries=[make_entry("dragon")]))

    assert "[dragon]" in send(engine, "dragon")


def test_overlapping_scans_rejected(seeded_engine):
    async def overlap():
        seeded_engine._scan_in_flight = True
        with pytest.raises(ScanInProgressError):
            await seeded_engine.process_user_message("dragon")
        seeded_engine._scan_in_flight = False
        return await seeded_engine.process_user_message("dragon")

    assert "[dragon]" in asyncio.run(overlap())


def test_record_model_reply(engine):
    assert engine.record_model_reply("Hello, traveller.")
    assert not engine.record_model_reply("Hello, traveller.")

    assert engine.store.get("totalMessageCount") == 1
    assert [m["role"] for m in engine.store.get("chatHistory")] == ["model"]


def test_model_reply_is_scanned_next_turn(seeded_engine):
    seeded_engine.record_model_reply("The king nods.")
    assert "[king]" in send(seeded_engine, "I bow.")


def test_reset_conversation(seeded_engine):
    seeded_engine.store.set(loreTimedState={"dragon": {"stickyUntil": 5}})
    send(seeded_engine, "dragon")

    seeded_engine.reset_conversation()

    assert seeded_engine.store.get("chatHistory") == []
    assert seeded_engine.store.get("totalMessageCount") == 0
    assert seeded_engine.store.get("loreTimedState") == {}
    assert len(seeded_engine.list_books()) == 1


def test_add_book_rejects_duplicate_ids(seeded_engine, make_entry):
    with pytest.raises(ValueError, match="Duplicate"):
        seeded_engine.add_book(LoreBook(id="dup", name="Dup", entries=[make_entry("dragon")]))
    assert len(seeded_engine.list_books()) == 1


def test_import_lorebook(engine):
    book = engine.import_lorebook(
        {"name": "ST", "entries": [{"key": ["harbor"], "content": "Busy docks.", "position": 0}]}
    )

    assert [b.name for b in engine.list_books()] == ["ST"]
    assert book.entries[0].position is Position.BEFORE_CHAR
    assert '<lorebook position="before_char">\n[harbor]: Busy docks.' in send(engine, "the harbor")


def test_vectorize_and_probe(seeded_engine):
    counts = seeded_engine.vectorize()

    assert counts == {"vectorized": 3, "failed": 0}
    books = seeded_engine.list_books()
    assert all(e.trigger_mode is TriggerMode.VECTORIZED for e in books[0].entries)

    ranked = asyncio.run(seeded_engine.probe_vectors("king"))
    assert ranked[0][0].id == "king"
    assert ranked[0][2] is True


def test_vectorize_single_book(seeded_engine, make_entry):
    seeded_engine.add_book(LoreBook(id="other", name="Other", entries=[make_entry("elf")]))

    assert seeded_engine.vectorize(book_id="other") == {"vectorized": 1, "failed": 0}
    world = seeded_engine.list_books()[0]
    assert all(e.embedding_chunks is None for e in world.entries)


def test_backend_built_from_persisted_model(store, make_entry, monkeypatch):
    seen = []

    def fake_create_backend(config):
        seen.append(config.embedding_model)
        return HashEmbedding(dimensions=8)

    monkeypatch.setattr("lorecast.engine.create_backend", fake_create_backend)
    store.set(loreVectorModel="custom-model", loreDefaultTriggerMode="vectorized")
    engine = LorebookEngine(EngineConfig(), store=store, rng=FixedRandom(0.5))
    engine.add_book(LoreBook(id="w", name="W", entries=[make_entry("dragon")]))

    assert "[dragon]" in send(engine, "dragon")
    assert seen == ["custom-model"]

    engine.vectorize()
    assert seen == ["custom-model"]
