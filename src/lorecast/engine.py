"""Lorebook Engine - Core implementation."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import random
from typing import Any, Mapping

from lorecast.assembly import PromptAssembler
from lorecast.budget import BudgetAllocator, total_tokens
from lorecast.embedding import (
    EmbeddingBackend,
    create_backend,
    embed_query,
    rank_by_similarity,
    vectorize_book,
)
from lorecast.importers import import_sillytavern
from lorecast.matching import MatchEngine, ProbabilityGate
from lorecast.models import (
    CONFIG_KEYS,
    ChatMessage,
    EngineConfig,
    LoreBook,
    LoreEntry,
    ScanContext,
    ScanRequest,
    ScanResult,
    TriggerMode,
)
from lorecast.recursion import RecursionExpander
from lorecast.storage import (
    InMemoryStore,
    StateStore,
    load_active_card,
    load_books,
    load_history,
    load_timed_state,
    save_books,
    save_timed_state,
)
from lorecast.store import EntryStore
from lorecast.timed import TimedEffectTracker

logger = logging.getLogger(__name__)


class ScanInProgressError(RuntimeError):
    """Raised when a scan is started while another one is still in flight."""


def run_scan(
    request: ScanRequest,
    config: EngineConfig,
    rng: random.Random | None = None,
) -> ScanResult:
    """Run one full scan: match, recurse, budget, update timers, assemble.

    Pure with respect to its inputs: the new timed state is returned in the
    result and nothing is persisted.

    Args:
        request: Per-turn inputs supplied by the caller
        config: Effective configuration for this turn
        rng: Random source for probability gates

    Returns:
        ScanResult with the selected entries, next timed state and prompt
    """
    entries = EntryStore(request.books)
    gate = ProbabilityGate(rng)
    tracker = TimedEffectTracker()
    count = request.total_message_count

    context = ScanContext(
        user_message=request.user_message,
        history=tuple(m.text for m in request.history),
        default_depth=config.scan_depth,
    )
    triggered = MatchEngine(config, gate, tracker).match(
        entries, context, request.user_embedding, request.timed_state, count
    )
    if config.recursion and config.recursion_depth > 0:
        triggered = RecursionExpander(gate, tracker).expand(
            triggered, entries, config.recursion_depth, request.timed_state, count
        )

    selected = BudgetAllocator().allocate(entries.ordered(triggered), config.token_budget)
    timed_state = tracker.update(request.timed_state, count, selected, entries)
    prompt = PromptAssembler().assemble(
        request.user_message, selected, request.character_card, request.author_note
    )

    used = total_tokens(selected)
    logger.info(
        "Lorebook: %d entries, %d tok (%d triggered)", len(selected), used, len(triggered)
    )
    return ScanResult(
        triggered_ids=triggered,
        selected=selected,
        timed_state=timed_state,
        tokens_used=used,
        prompt=prompt,
    )


def needs_query_embedding(books: list[LoreBook], config: EngineConfig) -> bool:
    """True if any enabled entry could match by vector this turn."""
    if config.default_trigger_mode is TriggerMode.VECTORIZED:
        return True
    return any(
        e.enabled and e.trigger_mode is TriggerMode.VECTORIZED and e.embedding_chunks
        for b in books
        if b.enabled
        for e in b.entries
    )


class LorebookEngine:
    """Engine binding the scan pipeline to a store and an embedding provider.

    One engine serves one conversation: its store holds that conversation's
    history, counter and timed state.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        store: StateStore | None = None,
        embedding: EmbeddingBackend | None = None,
        rng: random.Random | None = None,
    ):
        self.config = config or EngineConfig()
        self.store = store if store is not None else InMemoryStore()
        self._embedding = embedding
        self._rng = rng
        self._scan_in_flight = False

    @property
    def embedding(self) -> EmbeddingBackend:
        """The embedding backend, created from the effective config on first use."""
        return self._backend(self.effective_config())

    def _backend(self, config: EngineConfig) -> EmbeddingBackend:
        if self._embedding is None:
            self._embedding = create_backend(config)
        return self._embedding

    def effective_config(self) -> EngineConfig:
        """Engine config overlaid with the settings persisted in the store."""
        missing = object()
        values = {}
        for key in CONFIG_KEYS:
            value = self.store.get(key, missing)
            if value is not missing:
                values[key] = value
        return self.config.with_overrides(values)

    # -------------------------------------------------------------------------
    # Scan Operations
    # -------------------------------------------------------------------------

    def scan(self, request: ScanRequest, config: EngineConfig | None = None) -> ScanResult:
        """Run a scan over caller-supplied inputs (no store access)."""
        return run_scan(request, config or self.config, self._rng)

    def build_request(self, text: str) -> ScanRequest:
        """Snapshot the store into a scan request for ``text``."""
        return ScanRequest(
            user_message=text,
            books=tuple(load_books(self.store)),
            history=tuple(load_history(self.store)),
            character_card=load_active_card(self.store),
            author_note=self.store.get("authorNote") or "",
            timed_state=load_timed_state(self.store),
            total_message_count=self.store.get("totalMessageCount") or 0,
        )

    async def _query_embedding(
        self, text: str, books: tuple[LoreBook, ...], config: EngineConfig
    ) -> list[float] | None:
        if not needs_query_embedding(list(books), config):
            return None
        try:
            backend = await asyncio.to_thread(self._backend, config)
        except Exception as e:
            logger.warning("Embedding backend unavailable, keyword-only scan: %s", e)
            return None
        return await embed_query(backend, text, config.embedding_timeout)

    async def preview(self, text: str) -> ScanResult:
        """Scan ``text`` against the stored state without persisting anything."""
        config = self.effective_config()
        request = self.build_request(text)
        embedding = await self._query_embedding(text, request.books, config)
        if embedding is not None:
            request = dataclasses.replace(request, user_embedding=embedding)
        return self.scan(request, config)

    async def process_user_message(self, text: str) -> str:
        """Handle one outgoing user message.

        Scans the lorebooks, persists the next timed state, appends the
        message to the history and advances the message counter.

        Args:
            text: Raw user message

        Returns:
            The assembled prompt, or ``text`` unchanged when there is no
            active persona or the engine is switched off

        Raises:
            ScanInProgressError: If another scan of this conversation is running
        """
        if self._scan_in_flight:
            raise ScanInProgressError("A lorebook scan is already in progress")
        self._scan_in_flight = True
        try:
            config = self.effective_config()
            if not config.enabled:
                logger.debug("Engine disabled, passing message through")
                return text

            request = self.build_request(text)
            embedding = await self._query_embedding(text, request.books, config)
            if embedding is not None:
                request = dataclasses.replace(request, user_embedding=embedding)

            result = self.scan(request, config)
            if result.prompt is None:
                logger.info("No active persona, passing message through")

            history = self.store.get("chatHistory") or []
            history.append(ChatMessage(role="user", text=text).to_dict())
            save_timed_state(self.store, result.timed_state)
            self.store.set(
                chatHistory=history,
                totalMessageCount=(self.store.get("totalMessageCount") or 0) + 1,
                lastAssembledPrompt=result.prompt or text,
            )
            return result.prompt or text
        finally:
            self._scan_in_flight = False

    def record_model_reply(self, text: str) -> bool:
        """Append a model reply to the history and advance the counter.

        Returns:
            False if the reply duplicates the last recorded model message
        """
        history = self.store.get("chatHistory") or []
        if history and history[-1].get("role") == "model" and history[-1].get("text") == text:
            return False
        history.append(ChatMessage(role="model", text=text).to_dict())
        self.store.set(
            chatHistory=history,
            totalMessageCount=(self.store.get("totalMessageCount") or 0) + 1,
        )
        return True

    def reset_conversation(self) -> None:
        """Forget history, message counter and all timed effects."""
        self.store.set(chatHistory=[], totalMessageCount=0, loreTimedState={})

    # -------------------------------------------------------------------------
    # Lorebook Operations
    # -------------------------------------------------------------------------

    def list_books(self) -> list[LoreBook]:
        return load_books(self.store)

    def add_book(self, book: LoreBook) -> LoreBook:
        """Append a book, rejecting entry ids that already exist."""
        books = load_books(self.store) + [book]
        EntryStore(books)
        save_books(self.store, books)
        return book

    def import_lorebook(self, payload: Mapping[str, Any]) -> LoreBook:
        """Import a SillyTavern lorebook export and store it as a new book."""
        book = self.add_book(import_sillytavern(payload))
        logger.info("Imported %d entries into %r", len(book.entries), book.name)
        return book

    def vectorize(self, book_id: str | None = None, force: bool = False) -> dict[str, int]:
        """Compute chunk embeddings for enabled entries of enabled books.

        Args:
            book_id: Restrict to one book
            force: Re-embed entries that already have chunks

        Returns:
            Dict with ``vectorized`` and ``failed`` counts
        """
        done = failed = 0
        backend = self.embedding
        books = []
        for book in load_books(self.store):
            if book.enabled and (book_id is None or book.id == book_id):
                book, ok, bad = vectorize_book(backend, book, force=force)
                done += ok
                failed += bad
            books.append(book)
        save_books(self.store, books)
        logger.info("Vectorized %d entries (%d failed)", done, failed)
        return {"vectorized": done, "failed": failed}

    async def probe_vectors(self, text: str) -> list[tuple[LoreEntry, float, bool]]:
        """Rank all embedded entries by similarity to ``text``.

        Returns an empty list if the query could not be embedded.
        """
        config = self.effective_config()
        backend = await asyncio.to_thread(self._backend, config)
        query = await embed_query(backend, text, config.embedding_timeout)
        if query is None:
            return []
        entries = [e for b in load_books(self.store) for e in b.entries]
        return rank_by_similarity(query, entries, config.vector_threshold)
