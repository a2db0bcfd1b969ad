"""Direct (pass 1) triggering of lore entries."""

from __future__ import annotations

import logging
import random
from typing import Iterable, Mapping, Sequence

import numpy as np

from lorecast.models import (
    EngineConfig,
    LoreEntry,
    ScanContext,
    SelectiveLogic,
    TimedWindow,
    TriggerMode,
)
from lorecast.timed import TimedEffectTracker, TimedStatus

logger = logging.getLogger(__name__)


def keyword_match(keyword: str, text: str) -> bool:
    """Case-insensitive substring test. Empty keywords never match."""
    return bool(keyword) and bool(text) and keyword.lower() in text.lower()


def check_primary(entry: LoreEntry, text: str) -> bool:
    """True if any primary keyword occurs in ``text``."""
    return any(keyword_match(kw, text) for kw in entry.keyword)


def check_secondary(entry: LoreEntry, text: str) -> bool:
    """Evaluate the selective keyword logic against ``text``."""
    valid = [kw for kw in entry.keysecondary if kw]
    if not entry.selective or not valid:
        return True

    hits = sum(1 for kw in valid if keyword_match(kw, text))
    if entry.selective_logic is SelectiveLogic.AND:
        return hits == len(valid)
    if entry.selective_logic is SelectiveLogic.NOT_ANY:
        return hits == 0
    if entry.selective_logic is SelectiveLogic.NOT_ALL:
        return hits < len(valid)
    return True


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; vectors of different length score 0.0."""
    if a is None or b is None or len(a) == 0 or len(a) != len(b):
        if a is not None and b is not None:
            logger.warning(
                "Embedding dimension mismatch (%d vs %d), treating as no match",
                len(a),
                len(b),
            )
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    return float(va @ vb / (np.linalg.norm(va) * np.linalg.norm(vb) + 1e-8))


def max_similarity(query: Sequence[float], chunks: Iterable[Sequence[float]]) -> float:
    """Best cosine similarity of ``query`` over an entry's chunk vectors."""
    return max((cosine_similarity(query, chunk) for chunk in chunks), default=0.0)


class ProbabilityGate:
    """Per-evaluation probability check with an injectable random source."""

    def __init__(self, rng: random.Random | None = None):
        self.rng = rng or random.Random()

    def passes(self, entry: LoreEntry) -> bool:
        if not entry.use_probability or entry.probability >= 100:
            return True
        if entry.probability <= 0:
            return False
        return self.rng.random() * 100 < entry.probability


class MatchEngine:
    """Pass-1 triggering against the current message and recent history."""

    def __init__(
        self,
        config: EngineConfig,
        gate: ProbabilityGate | None = None,
        tracker: TimedEffectTracker | None = None,
    ):
        self.config = config
        self.gate = gate or ProbabilityGate()
        self.tracker = tracker or TimedEffectTracker()

    def match(
        self,
        entries: Iterable[LoreEntry],
        context: ScanContext,
        user_embedding: Sequence[float] | None,
        timed_state: Mapping[str, TimedWindow],
        total_message_count: int,
    ) -> set[str]:
        """Return the ids of the entries triggered directly this turn."""
        triggered: set[str] = set()
        buffers: dict[int | None, str] = {}
        global_vectorized = self.config.default_trigger_mode is TriggerMode.VECTORIZED

        for entry in entries:
            if not entry.enabled or entry.pending:
                continue

            status = self.tracker.status(entry, timed_state, total_message_count)
            if status.blocks:
                logger.debug("Entry %s blocked (%s)", entry.id, status.value)
                continue

            if entry.is_constant:
                if self.gate.passes(entry):
                    triggered.add(entry.id)
                continue

            if status is TimedStatus.STICKY:
                triggered.add(entry.id)
                continue

            chunks = entry.embedding_chunks
            strictly_vectorized = entry.trigger_mode is TriggerMode.VECTORIZED
            if chunks and user_embedding is not None and (
                strictly_vectorized or global_vectorized
            ):
                score = max_similarity(user_embedding, chunks)
                if score >= self.config.vector_threshold and self.gate.passes(entry):
                    logger.debug("Entry %s vector match (%.3f)", entry.id, score)
                    triggered.add(entry.id)
                if strictly_vectorized or entry.id in triggered:
                    continue

            # Keyword path; also the fallback when no query embedding exists
            if entry.scan_depth not in buffers:
                buffers[entry.scan_depth] = context.buffer(entry.scan_depth)
            buffer = buffers[entry.scan_depth]
            if (
                check_primary(entry, buffer)
                and check_secondary(entry, buffer)
                and self.gate.passes(entry)
            ):
                triggered.add(entry.id)

        return triggered
