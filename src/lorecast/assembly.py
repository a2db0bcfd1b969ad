"""Positional composition of the final prompt."""

from __future__ import annotations

import logging
from typing import Iterable

from lorecast.budget import estimate_tokens
from lorecast.models import CharacterCard, LoreEntry, Position

logger = logging.getLogger(__name__)


def _lore_line(entry: LoreEntry, with_depth: bool = False) -> str:
    keys = ", ".join(entry.keyword)
    if with_depth:
        keys += f" @d{entry.depth or 0}"
    return f"[{keys}]: {entry.content}"


def render_character(card: CharacterCard) -> str | None:
    """Render the character block, or None if every field is empty."""
    lines = [
        card.system_prompt,
        f"Name: {card.name}" if card.name else "",
        f"Description: {card.description}" if card.description else "",
        f"Personality: {card.personality}" if card.personality else "",
        f"Scenario: {card.scenario}" if card.scenario else "",
    ]
    lines = [line for line in lines if line]
    if not lines:
        return None
    return "<character>\n" + "\n".join(lines) + "\n</character>"


class PromptAssembler:
    """Groups selected entries by position and renders the composed prompt.

    Block order: before_char lore, character, after_char lore, author's
    note (an_top entries, note text, an_bottom entries), at_depth lore.
    """

    def assemble(
        self,
        user_message: str,
        selected: Iterable[LoreEntry],
        character_card: CharacterCard | None,
        author_note: str = "",
    ) -> str | None:
        """Compose the prompt, or return None when there is nothing to augment.

        Args:
            user_message: Raw user text, appended verbatim at the end
            selected: Budgeted entries, already in priority order
            character_card: Active persona; None disables augmentation
            author_note: Stored author's note text

        Returns:
            The composed prompt, or None without an active card or content
        """
        if character_card is None:
            return None

        buckets: dict[Position, list[LoreEntry]] = {p: [] for p in Position}
        for entry in selected:
            buckets[entry.position].append(entry)

        blocks = []
        if buckets[Position.BEFORE_CHAR]:
            blocks.append(
                '<lorebook position="before_char">\n'
                + "\n".join(_lore_line(e) for e in buckets[Position.BEFORE_CHAR])
                + "\n</lorebook>"
            )

        character = render_character(character_card)
        if character:
            blocks.append(character)

        if buckets[Position.AFTER_CHAR]:
            blocks.append(
                "<lorebook>\n"
                + "\n".join(_lore_line(e) for e in buckets[Position.AFTER_CHAR])
                + "\n</lorebook>"
            )

        note_parts = []
        if buckets[Position.AN_TOP]:
            note_parts.append("\n".join(e.content for e in buckets[Position.AN_TOP]))
        if author_note:
            note_parts.append(author_note)
        if buckets[Position.AN_BOTTOM]:
            note_parts.append("\n".join(e.content for e in buckets[Position.AN_BOTTOM]))
        if note_parts:
            blocks.append("<author_note>\n" + "\n".join(note_parts) + "\n</author_note>")

        if buckets[Position.AT_DEPTH]:
            blocks.append(
                '<lorebook position="at_depth">\n'
                + "\n".join(
                    _lore_line(e, with_depth=True) for e in buckets[Position.AT_DEPTH]
                )
                + "\n</lorebook>"
            )

        if not blocks:
            return None

        assembled = "<context>\n" + "\n\n".join(blocks) + "\n</context>\n\n" + user_message
        logger.debug("Assembled prompt: %d tok", estimate_tokens(assembled))
        return assembled
