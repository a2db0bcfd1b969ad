"""Lorecast - Lorebook retrieval and prompt assembly engine for roleplay chat."""

from lorecast.models import (
    EngineConfig,
    LoreEntry,
    LoreBook,
    CharacterCard,
    ChatMessage,
    TimedWindow,
    ScanContext,
    ScanRequest,
    ScanResult,
    TriggerMode,
    SelectiveLogic,
    Position,
)
from lorecast.engine import LorebookEngine, ScanInProgressError, run_scan

__version__ = "0.1.0"

__all__ = [
    "LorebookEngine",
    "ScanInProgressError",
    "run_scan",
    "EngineConfig",
    "LoreEntry",
    "LoreBook",
    "CharacterCard",
    "ChatMessage",
    "TimedWindow",
    "ScanContext",
    "ScanRequest",
    "ScanResult",
    "TriggerMode",
    "SelectiveLogic",
    "Position",
]
