"""Data models for Lorecast."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, fields
from enum import Enum, IntEnum
from typing import Any, Mapping


class TriggerMode(str, Enum):
    """How an entry gets activated."""

    KEYWORD = "keyword"
    CONSTANT = "constant"
    VECTORIZED = "vectorized"


class SelectiveLogic(IntEnum):
    """How secondary keywords combine with the primary match."""

    AND = 0
    NOT_ANY = 1
    NOT_ALL = 2


class Position(str, Enum):
    """Where an entry is spliced into the composed prompt."""

    BEFORE_CHAR = "before_char"
    AFTER_CHAR = "after_char"
    AT_DEPTH = "at_depth"
    AN_TOP = "an_top"
    AN_BOTTOM = "an_bottom"


DEFAULT_ORDER = 100


def new_id() -> str:
    """Generate a short unique id for books and entries."""
    return uuid.uuid4().hex[:12]


def _pick(data: Mapping[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        value = data.get(name)
        if value is not None:
            return value
    return default


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_keywords(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(k).strip() for k in value if str(k).strip()]


def _as_enum(enum_cls, value: Any, default):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        pass
    if isinstance(value, str):
        try:
            return enum_cls[value.upper()]
        except KeyError:
            pass
    return default


@dataclass
class LoreEntry:
    """A knowledge snippet with trigger conditions and an insertion position."""

    id: str
    keyword: list[str] = field(default_factory=list)
    keysecondary: list[str] = field(default_factory=list)
    content: str = ""
    enabled: bool = True
    trigger_mode: TriggerMode = TriggerMode.KEYWORD
    constant: bool = False  # legacy flag, same effect as trigger_mode=constant
    selective: bool = False
    selective_logic: SelectiveLogic = SelectiveLogic.AND
    scan_depth: int | None = None  # None -> global scan depth
    position: Position = Position.AFTER_CHAR
    depth: int = 4  # only rendered for at_depth entries
    order: int = DEFAULT_ORDER
    exclude_recursion: bool = False
    probability: int = 100
    use_probability: bool = False
    sticky: int = 0
    cooldown: int = 0
    delay: int = 0
    pending: bool = False
    embedding_chunks: list[list[float]] | None = None

    def __post_init__(self) -> None:
        self.probability = max(0, min(100, int(self.probability)))

    @property
    def is_constant(self) -> bool:
        return self.constant or self.trigger_mode is TriggerMode.CONSTANT

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LoreEntry:
        """Build an entry from stored or imported data, filling defaults.

        Accepts both the camelCase keys used by the persisted lorebooks and
        snake_case keys. The legacy single ``embedding`` vector becomes a
        one-chunk ``embedding_chunks`` list.
        """
        chunks = _pick(data, "embeddingChunks", "embedding_chunks", "embeddings")
        if not chunks:
            legacy = data.get("embedding")
            chunks = [legacy] if legacy else None
        scan_depth = _pick(data, "scanDepth", "scan_depth")

        return cls(
            id=str(_pick(data, "id", default="") or new_id()),
            keyword=_as_keywords(_pick(data, "keyword", "keywords", "key")),
            keysecondary=_as_keywords(data.get("keysecondary")),
            content=str(data.get("content") or ""),
            enabled=bool(data.get("enabled", True)),
            trigger_mode=_as_enum(
                TriggerMode,
                _pick(data, "triggerMode", "trigger_mode", default="keyword"),
                TriggerMode.KEYWORD,
            ),
            constant=bool(data.get("constant", False)),
            selective=bool(data.get("selective", False)),
            selective_logic=_as_enum(
                SelectiveLogic,
                _pick(data, "selectiveLogic", "selective_logic", default=0),
                SelectiveLogic.AND,
            ),
            scan_depth=_as_int(scan_depth, 0) if scan_depth is not None else None,
            position=_as_enum(
                Position, data.get("position", "after_char"), Position.AFTER_CHAR
            ),
            depth=_as_int(data.get("depth"), 4),
            order=_as_int(data.get("order"), DEFAULT_ORDER),
            exclude_recursion=bool(
                _pick(data, "excludeRecursion", "exclude_recursion", default=False)
            ),
            probability=_as_int(data.get("probability"), 100),
            use_probability=bool(
                _pick(data, "useProbability", "use_probability", default=False)
            ),
            sticky=_as_int(data.get("sticky"), 0),
            cooldown=_as_int(data.get("cooldown"), 0),
            delay=_as_int(data.get("delay"), 0),
            pending=bool(data.get("pending", False)),
            embedding_chunks=[list(map(float, c)) for c in chunks] if chunks else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the persisted camelCase keys."""
        return {
            "id": self.id,
            "keyword": list(self.keyword),
            "keysecondary": list(self.keysecondary),
            "content": self.content,
            "enabled": self.enabled,
            "triggerMode": self.trigger_mode.value,
            "constant": self.constant,
            "selective": self.selective,
            "selectiveLogic": int(self.selective_logic),
            "scanDepth": self.scan_depth,
            "position": self.position.value,
            "depth": self.depth,
            "order": self.order,
            "excludeRecursion": self.exclude_recursion,
            "probability": self.probability,
            "useProbability": self.use_probability,
            "sticky": self.sticky,
            "cooldown": self.cooldown,
            "delay": self.delay,
            "pending": self.pending,
            "embeddingChunks": self.embedding_chunks,
        }


@dataclass
class LoreBook:
    """A named, independently enable-able collection of entries."""

    id: str
    name: str
    enabled: bool = True
    entries: list[LoreEntry] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LoreBook:
        return cls(
            id=str(data.get("id") or new_id()),
            name=str(data.get("name") or "Untitled"),
            enabled=bool(data.get("enabled", True)),
            entries=[LoreEntry.from_dict(e) for e in data.get("entries") or []],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
            "entries": [e.to_dict() for e in self.entries],
        }


@dataclass
class CharacterCard:
    """The active persona. Opaque text fields, never mutated by the engine."""

    id: str
    name: str = ""
    system_prompt: str = ""
    description: str = ""
    personality: str = ""
    scenario: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CharacterCard:
        return cls(
            id=str(data.get("id") or new_id()),
            name=data.get("name") or "",
            system_prompt=_pick(data, "systemPrompt", "system_prompt", default=""),
            description=data.get("description") or "",
            personality=data.get("personality") or "",
            scenario=data.get("scenario") or "",
        )


@dataclass
class ChatMessage:
    """One message of the conversation history."""

    role: str  # 'user' | 'model'
    text: str
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if self.role not in ("user", "model"):
            raise ValueError(f"Invalid role: {self.role}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ChatMessage:
        return cls(
            role=data.get("role", "user"),
            text=data.get("text") or "",
            timestamp=data.get("timestamp") or time.time(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "text": self.text, "timestamp": self.timestamp}


@dataclass(frozen=True)
class TimedWindow:
    """Sticky/cooldown bounds of one entry, as absolute message counts."""

    sticky_until: int | None = None
    cooldown_until: int | None = None

    def expired(self, total_message_count: int) -> bool:
        sticky_done = (
            self.sticky_until is None or total_message_count > self.sticky_until
        )
        cooldown_done = (
            self.cooldown_until is None or total_message_count >= self.cooldown_until
        )
        return sticky_done and cooldown_done

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TimedWindow:
        return cls(
            sticky_until=_pick(data, "stickyUntil", "sticky_until"),
            cooldown_until=_pick(data, "cooldownUntil", "cooldown_until"),
        )

    def to_dict(self) -> dict[str, int]:
        result = {}
        if self.sticky_until is not None:
            result["stickyUntil"] = self.sticky_until
        if self.cooldown_until is not None:
            result["cooldownUntil"] = self.cooldown_until
        return result


TimedState = dict[str, TimedWindow]


def timed_state_from_dict(data: Mapping[str, Any] | None) -> TimedState:
    return {key: TimedWindow.from_dict(value) for key, value in (data or {}).items()}


def timed_state_to_dict(state: Mapping[str, TimedWindow]) -> dict[str, dict]:
    return {key: window.to_dict() for key, window in state.items()}


# Persisted configuration keys -> EngineConfig fields
CONFIG_KEYS = {
    "extensionEnabled": "enabled",
    "loreScanDepth": "scan_depth",
    "loreTokenBudget": "token_budget",
    "loreRecursion": "recursion",
    "loreRecursionDepth": "recursion_depth",
    "loreVectorThreshold": "vector_threshold",
    "loreDefaultTriggerMode": "default_trigger_mode",
    "loreVectorModel": "embedding_model",
}


@dataclass
class EngineConfig:
    """Configuration for LorebookEngine."""

    enabled: bool = True  # master switch; off -> messages pass through untouched
    scan_depth: int = 4
    token_budget: int = 2048
    recursion: bool = True
    recursion_depth: int = 3
    vector_threshold: float = 0.45
    default_trigger_mode: TriggerMode = TriggerMode.KEYWORD
    embedding_backend: str = "local"  # "local" | "openai" | "hash"
    embedding_model: str = "paraphrase-multilingual-MiniLM-L12-v2"  # for local
    openai_model: str = "text-embedding-3-small"  # if backend="openai"
    embedding_timeout: float = 10.0  # seconds
    db_path: str = "lorecast.db"

    def __post_init__(self) -> None:
        self.default_trigger_mode = _as_enum(
            TriggerMode, self.default_trigger_mode, TriggerMode.KEYWORD
        )

    def with_overrides(self, values: Mapping[str, Any]) -> EngineConfig:
        """Return a copy with persisted settings (camelCase keys) applied."""
        current = {f.name: getattr(self, f.name) for f in fields(self)}
        for key, attr in CONFIG_KEYS.items():
            if values.get(key) is not None:
                current[attr] = values[key]
        return EngineConfig(**current)


@dataclass(frozen=True)
class ScanContext:
    """Per-call search buffer source: recent history plus the current message."""

    user_message: str
    history: tuple[str, ...] = ()
    default_depth: int = 4

    def buffer(self, depth: int | None = None) -> str:
        """Concatenate the last ``depth`` history texts and the current message."""
        depth = depth or self.default_depth
        recent = self.history[-depth:] if depth > 0 else ()
        return " ".join(recent) + " " + self.user_message


@dataclass(frozen=True)
class ScanRequest:
    """Everything one scan needs, supplied by the caller."""

    user_message: str
    books: tuple[LoreBook, ...] = ()
    history: tuple[ChatMessage, ...] = ()
    character_card: CharacterCard | None = None
    author_note: str = ""
    timed_state: Mapping[str, TimedWindow] = field(default_factory=dict)
    total_message_count: int = 0
    user_embedding: list[float] | None = None


@dataclass
class ScanResult:
    """Outcome of one scan."""

    triggered_ids: set[str]
    selected: list[LoreEntry]
    timed_state: TimedState
    tokens_used: int
    prompt: str | None
