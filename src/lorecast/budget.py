"""Token-budget-constrained selection."""

from __future__ import annotations

import math
from typing import Iterable

from lorecast.models import DEFAULT_ORDER, LoreEntry


def estimate_tokens(text: str | None) -> int:
    """Rough token estimate: one token per four characters."""
    return math.ceil(len(text) / 4) if text else 0


def total_tokens(entries: Iterable[LoreEntry]) -> int:
    return sum(estimate_tokens(e.content) for e in entries)


class BudgetAllocator:
    """Greedy, in-order selection under a token budget."""

    def sort(self, entries: Iterable[LoreEntry]) -> list[LoreEntry]:
        """Constants first, each partition ascending by ``order``.

        The sort is stable, so ties keep their book/entry iteration order.
        """
        by_order = sorted(
            entries, key=lambda e: DEFAULT_ORDER if e.order is None else e.order
        )
        constants = [e for e in by_order if e.is_constant]
        others = [e for e in by_order if not e.is_constant]
        return constants + others

    def allocate(self, triggered: Iterable[LoreEntry], token_budget: int) -> list[LoreEntry]:
        """Select entries in priority order while they fit.

        An entry that does not fit is skipped, and later, cheaper entries are
        still considered. Content is never truncated.
        """
        selected = []
        used = 0
        for entry in self.sort(triggered):
            cost = estimate_tokens(entry.content)
            if used + cost <= token_budget:
                selected.append(entry)
                used += cost
        return selected
