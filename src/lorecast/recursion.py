"""Recursive re-triggering using the content of already-triggered entries."""

from __future__ import annotations

import logging
from typing import Iterable, Mapping

from lorecast.matching import ProbabilityGate, check_primary, check_secondary
from lorecast.models import TimedWindow, TriggerMode
from lorecast.store import EntryStore
from lorecast.timed import TimedEffectTracker

logger = logging.getLogger(__name__)


class RecursionExpander:
    """Runs passes 2..N of a scan.

    Each pass searches the concatenated content of the triggered entries.
    Expansion stops at ``max_depth`` passes, on an empty corpus, or as soon
    as a pass adds nothing. The triggered set only ever grows.
    """

    def __init__(
        self,
        gate: ProbabilityGate | None = None,
        tracker: TimedEffectTracker | None = None,
    ):
        self.gate = gate or ProbabilityGate()
        self.tracker = tracker or TimedEffectTracker()

    def expand(
        self,
        triggered_ids: Iterable[str],
        entries: EntryStore,
        max_depth: int,
        timed_state: Mapping[str, TimedWindow] | None = None,
        total_message_count: int = 0,
    ) -> set[str]:
        """Return a superset of ``triggered_ids``."""
        triggered = set(triggered_ids)
        timed_state = timed_state or {}

        for depth in range(max_depth):
            corpus = " ".join(
                e.content for e in entries.ordered(triggered) if not e.exclude_recursion
            )
            if not corpus.strip():
                break

            added = []
            for entry in entries:
                if not entry.enabled or entry.pending or entry.id in triggered:
                    continue
                if entry.is_constant or entry.trigger_mode is TriggerMode.VECTORIZED:
                    continue
                status = self.tracker.status(entry, timed_state, total_message_count)
                if status.blocks:
                    continue
                if (
                    check_primary(entry, corpus)
                    and check_secondary(entry, corpus)
                    and self.gate.passes(entry)
                ):
                    added.append(entry.id)

            if not added:
                break
            logger.debug("Recursion pass %d added %s", depth + 2, added)
            triggered.update(added)

        return triggered
