"""Key-value persistence adapters and typed accessors."""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Protocol

from lorecast.models import (
    CharacterCard,
    ChatMessage,
    LoreBook,
    TimedState,
    new_id,
    timed_state_from_dict,
    timed_state_to_dict,
)

logger = logging.getLogger(__name__)

STORAGE_DEFAULTS: dict[str, Any] = {
    "extensionEnabled": True,
    "characterCards": [],
    "activeCard": None,
    "loreBooks": [],
    "loreScanDepth": 4,
    "loreTokenBudget": 2048,
    "loreRecursion": True,
    "loreRecursionDepth": 3,
    "loreVectorThreshold": 0.45,
    "loreDefaultTriggerMode": "keyword",
    "authorNote": "",
    "chatHistory": [],
    "totalMessageCount": 0,
    "loreTimedState": {},
    "lastAssembledPrompt": "",
}

SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
)
"""


def _default(key: str) -> Any:
    return json.loads(json.dumps(STORAGE_DEFAULTS.get(key)))


class StateStore(Protocol):
    """Typed get/set over named fields. Values are JSON-compatible."""

    def get(self, key: str, default: Any = None) -> Any:
        ...

    def set(self, **values: Any) -> None:
        ...


class InMemoryStore:
    """Dictionary-backed store, for tests and embedding in other hosts."""

    def __init__(self, initial: dict[str, Any] | None = None):
        self._data: dict[str, Any] = json.loads(json.dumps(initial or {}))

    def get(self, key: str, default: Any = None) -> Any:
        if key in self._data:
            return json.loads(json.dumps(self._data[key]))
        return _default(key) if default is None else default

    def set(self, **values: Any) -> None:
        for key, value in values.items():
            self._data[key] = json.loads(json.dumps(value))


class SQLiteStore:
    """Store persisting each field as a JSON value in a SQLite table."""

    def __init__(self, db_path: str):
        self.db = sqlite3.connect(db_path)
        self.db.row_factory = sqlite3.Row
        self.db.executescript(SCHEMA)
        self.db.commit()

    def close(self) -> None:
        """Close database connection."""
        self.db.close()

    def __enter__(self) -> SQLiteStore:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def get(self, key: str, default: Any = None) -> Any:
        row = self.db.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return _default(key) if default is None else default
        return json.loads(row["value"])

    def set(self, **values: Any) -> None:
        self.db.executemany(
            """
            INSERT INTO kv (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            [(key, json.dumps(value)) for key, value in values.items()],
        )
        self.db.commit()


# -------------------------------------------------------------------------
# Typed accessors
# -------------------------------------------------------------------------


def load_books(store: StateStore) -> list[LoreBook]:
    """Read lorebooks, migrating a legacy flat ``loreEntries`` list."""
    books = store.get("loreBooks") or []
    legacy = store.get("loreEntries") or []
    if legacy and not books:
        books = [{"id": new_id(), "name": "Legacy Lorebook", "enabled": True, "entries": legacy}]
        store.set(loreBooks=books, loreEntries=[])
        logger.info("Migrated %d legacy entries into a lorebook", len(legacy))
    return [LoreBook.from_dict(b) for b in books]


def save_books(store: StateStore, books: list[LoreBook]) -> None:
    store.set(loreBooks=[b.to_dict() for b in books])


def load_history(store: StateStore) -> list[ChatMessage]:
    return [ChatMessage.from_dict(m) for m in store.get("chatHistory") or []]


def load_timed_state(store: StateStore) -> TimedState:
    return timed_state_from_dict(store.get("loreTimedState"))


def save_timed_state(store: StateStore, state: TimedState) -> None:
    store.set(loreTimedState=timed_state_to_dict(state))


def load_active_card(store: StateStore) -> CharacterCard | None:
    """Return the active character card, or None if none is active."""
    active = store.get("activeCard")
    if not active:
        return None
    for card in store.get("characterCards") or []:
        if card.get("id") == active:
            return CharacterCard.from_dict(card)
    return None
