"""Sticky / cooldown / delay effects, evaluated against the message counter."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable, Mapping

from lorecast.models import LoreEntry, TimedState, TimedWindow
from lorecast.store import EntryStore

logger = logging.getLogger(__name__)


class TimedStatus(str, Enum):
    IDLE = "idle"
    DELAYED = "delayed"
    STICKY = "sticky"
    COOLDOWN = "cooldown"

    @property
    def blocks(self) -> bool:
        return self in (TimedStatus.DELAYED, TimedStatus.COOLDOWN)


class TimedEffectTracker:
    """Per-entry timer state machine.

    State lives outside the tracker: ``status`` reads a snapshot and
    ``update`` returns a new one, leaving persistence to the caller.
    """

    def status(
        self,
        entry: LoreEntry,
        state: Mapping[str, TimedWindow],
        total_message_count: int,
    ) -> TimedStatus:
        """Classify an entry for the current turn.

        Delay is checked first, then cooldown, then sticky.
        """
        if entry.delay > 0 and total_message_count < entry.delay:
            return TimedStatus.DELAYED

        window = state.get(entry.id)
        if window is None:
            return TimedStatus.IDLE
        if (
            window.cooldown_until is not None
            and total_message_count < window.cooldown_until
        ):
            return TimedStatus.COOLDOWN
        if window.sticky_until is not None and total_message_count <= window.sticky_until:
            return TimedStatus.STICKY
        return TimedStatus.IDLE

    def update(
        self,
        state: Mapping[str, TimedWindow],
        total_message_count: int,
        selected: Iterable[LoreEntry],
        entries: EntryStore,
    ) -> TimedState:
        """Compute the next timed state after a selection.

        Args:
            state: Snapshot read at the start of the turn
            total_message_count: Counter value of the message being processed
            selected: Entries that survived the token budget this turn
            entries: Store used to look up cooldowns of unselected entries

        Returns:
            A new mapping; ``state`` is left untouched
        """
        count = total_message_count
        new_state: TimedState = dict(state)
        selected_ids: set[str] = set()

        for entry in selected:
            selected_ids.add(entry.id)
            current = new_state.get(entry.id, TimedWindow())
            if entry.sticky > 0:
                # Starts or extends the window and drops any stale cooldown
                new_state[entry.id] = TimedWindow(sticky_until=count + entry.sticky)
            elif entry.cooldown > 0:
                # +1: the counter has not advanced for the current message yet
                new_state[entry.id] = TimedWindow(
                    sticky_until=current.sticky_until,
                    cooldown_until=count + 1 + entry.cooldown,
                )

        for entry_id, window in list(new_state.items()):
            if window.sticky_until is None:
                continue
            if count > window.sticky_until and entry_id not in selected_ids:
                entry = entries.get(entry_id)
                if entry is not None and entry.cooldown > 0:
                    new_state[entry_id] = TimedWindow(cooldown_until=count + entry.cooldown)
                    logger.debug("Entry %s: sticky ended, cooling down", entry_id)
                else:
                    del new_state[entry_id]

        return {
            entry_id: window
            for entry_id, window in new_state.items()
            if not window.expired(count)
        }
