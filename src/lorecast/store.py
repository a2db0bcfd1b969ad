"""In-memory view over the lore entries taking part in one scan."""

from __future__ import annotations

from typing import Iterable, Iterator

from lorecast.models import LoreBook, LoreEntry


class EntryStore:
    """Flattened, ordered view of the entries of all enabled books.

    Iteration order is book order, then entry order within each book. That
    order is the tie-break for every later sort.
    """

    def __init__(self, books: Iterable[LoreBook]):
        self._entries: list[LoreEntry] = []
        self._by_id: dict[str, LoreEntry] = {}
        self._rank: dict[str, int] = {}
        seen: set[str] = set()

        for book in books:
            for entry in book.entries:
                if entry.id in seen:
                    raise ValueError(f"Duplicate lore entry id: {entry.id}")
                seen.add(entry.id)
                if not book.enabled:
                    continue
                self._rank[entry.id] = len(self._entries)
                self._entries.append(entry)
                self._by_id[entry.id] = entry

    @property
    def entries(self) -> list[LoreEntry]:
        return list(self._entries)

    def get(self, entry_id: str) -> LoreEntry | None:
        return self._by_id.get(entry_id)

    def ordered(self, entry_ids: Iterable[str]) -> list[LoreEntry]:
        """Resolve ids to entries in store order, dropping unknown ids."""
        known = [i for i in set(entry_ids) if i in self._by_id]
        return [self._by_id[i] for i in sorted(known, key=self._rank.__getitem__)]

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._by_id

    def __iter__(self) -> Iterator[LoreEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
