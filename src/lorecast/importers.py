"""Import of SillyTavern world-info (lorebook) exports."""

from __future__ import annotations

from typing import Any, Mapping

from lorecast.models import LoreBook, LoreEntry, Position, new_id

# SillyTavern numeric positions; anything else lands after the character
ST_POSITIONS = {
    0: Position.BEFORE_CHAR,
    1: Position.AFTER_CHAR,
    4: Position.AT_DEPTH,
    5: Position.AN_TOP,
    6: Position.AN_BOTTOM,
}


def _convert_entry(raw: Mapping[str, Any]) -> LoreEntry:
    extensions = raw.get("extensions") or {}
    if raw.get("vectorized"):
        mode = "vectorized"
    elif raw.get("constant"):
        mode = "constant"
    else:
        mode = "keyword"

    return LoreEntry.from_dict(
        {
            "id": new_id(),
            "keyword": raw.get("key"),
            "keysecondary": raw.get("keysecondary")
            if isinstance(raw.get("keysecondary"), list)
            else [],
            "content": raw.get("content"),
            "enabled": not raw.get("disable", False),
            "triggerMode": mode,
            "constant": bool(raw.get("constant")),
            "selective": bool(raw.get("selective")),
            "selectiveLogic": raw.get("selectiveLogic") or 0,
            "scanDepth": raw.get("scanDepth"),
            "position": ST_POSITIONS.get(raw.get("position"), Position.AFTER_CHAR),
            "depth": raw.get("depth", 4),
            "order": raw.get("order", 100),
            "excludeRecursion": bool(raw.get("excludeRecursion")),
            "probability": raw.get("probability", 100),
            "useProbability": bool(raw.get("useProbability")),
            "sticky": extensions.get("sticky", 0),
            "cooldown": extensions.get("cooldown", 0),
            "delay": extensions.get("delay", 0),
        }
    )


def import_sillytavern(payload: Mapping[str, Any]) -> LoreBook:
    """Convert a SillyTavern lorebook export into a LoreBook.

    Entries are read from ``entries`` or ``data.entries``, as a list or as
    an id-keyed mapping. Every imported entry gets a fresh id.

    Raises:
        ValueError: If the payload holds no entries
    """
    data = payload.get("data") or {}
    raw = payload.get("entries")
    if raw is None:
        raw = data.get("entries")
    if raw is None:
        raise ValueError("Cannot find entries")

    items = list(raw.values()) if isinstance(raw, Mapping) else list(raw)
    if not items:
        raise ValueError("No entries found")

    return LoreBook(
        id=new_id(),
        name=payload.get("name") or data.get("name") or "ST Import",
        enabled=True,
        entries=[_convert_entry(item) for item in items],
    )
