"""Tests for SillyTavern lorebook import."""

import pytest
from lorecast import Position, SelectiveLogic, TriggerMode
from lorecast.importers import import_sillytavern


ST_EXPORT = {
    "name": "Northlands",
    "entries": {
        "0": {
            "uid": 0,
            "key": ["dragon", "wyrm"],
            "keysecondary": ["ice"],
            "content": "Ice dragons nest in the peaks.",
            "selective": True,
            "selectiveLogic": 1,
            "position": 0,
            "order": 10,
            "probability": 80,
            "useProbability": True,
            "extensions": {"sticky": 2, "cooldown": 3, "delay": 1},
        },
        "1": {
            "key": "king, crown",
            "content": "The king is old.",
            "constant": True,
            "position": 4,
            "depth": 2,
        },
        "2": {"key": [], "content": "Hidden.", "disable": True, "vectorized": True, "position": 9},
    },
}


def test_import_maps_fields():
    book = import_sillytavern(ST_EXPORT)

    assert book.name == "Northlands"
    assert len(book.entries) == 3
    dragon, king, hidden = book.entries

    assert dragon.keyword == ["dragon", "wyrm"]
    assert dragon.keysecondary == ["ice"]
    assert dragon.selective_logic is SelectiveLogic.NOT_ANY
    assert dragon.position is Position.BEFORE_CHAR
    assert dragon.order == 10
    assert dragon.use_probability and dragon.probability == 80
    assert (dragon.sticky, dragon.cooldown, dragon.delay) == (2, 3, 1)

    assert king.keyword == ["king", "crown"]
    assert king.trigger_mode is TriggerMode.CONSTANT
    assert king.position is Position.AT_DEPTH
    assert king.depth == 2

    assert hidden.enabled is False
    assert hidden.trigger_mode is TriggerMode.VECTORIZED
    assert hidden.position is Position.AFTER_CHAR


def test_import_assigns_fresh_unique_ids():
    book = import_sillytavern(ST_EXPORT)
    ids = [e.id for e in book.entries]
    assert len(set(ids)) == len(ids)


def test_import_reads_nested_data_list():
    book = import_sillytavern({"data": {"name": "Nested", "entries": [{"key": ["a"]}]}})

    assert book.name == "Nested"
    assert book.entries[0].keyword == ["a"]


def test_import_default_name():
    assert import_sillytavern({"entries": [{"key": ["a"]}]}).name == "ST Import"


def test_import_without_entries_fails():
    with pytest.raises(ValueError, match="Cannot find entries"):
        import_sillytavern({"name": "Empty"})


def test_import_with_empty_entries_fails():
    with pytest.raises(ValueError, match="No entries found"):
        import_sillytavern({"entries": {}})
