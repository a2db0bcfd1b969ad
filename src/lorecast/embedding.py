"""Embedding backend abstraction and entry vectorization for Lorecast."""

from __future__ import annotations

import asyncio
import dataclasses
import hashlib
import logging
import random
from typing import Iterable, Protocol, Sequence

from lorecast.matching import max_similarity
from lorecast.models import EngineConfig, LoreBook, LoreEntry, TriggerMode

logger = logging.getLogger(__name__)

CHUNK_SIZE = 400
CHUNK_OVERLAP = 100
MAX_CHUNKS = 6


class EmbeddingBackend(Protocol):
    """Protocol for embedding backends."""

    def embed(self, text: str) -> list[float]:
        """Embed a single text."""
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed multiple texts."""
        ...

    @property
    def dimensions(self) -> int:
        """Return the dimensionality of embeddings."""
        ...


class LocalEmbedding:
    """Local embedding using sentence-transformers."""

    def __init__(self, model_name: str = "paraphrase-multilingual-MiniLM-L12-v2"):
        from sentence_transformers import SentenceTransformer

        self.model = SentenceTransformer(model_name)
        self._dimensions = self.model.get_sentence_embedding_dimension()

    def embed(self, text: str) -> list[float]:
        """Embed a single text."""
        return self.model.encode(text, normalize_embeddings=True).tolist()

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed multiple texts."""
        return self.model.encode(texts, normalize_embeddings=True).tolist()

    @property
    def dimensions(self) -> int:
        """Return the dimensionality of embeddings."""
        return self._dimensions


class OpenAIEmbedding:
    """OpenAI API embedding backend."""

    # Known dimensions for OpenAI models
    _MODEL_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(self, model: str = "text-embedding-3-small"):
        from openai import OpenAI

        self.model = model
        self.client = OpenAI()
        self._dimensions = self._MODEL_DIMENSIONS.get(model, 1536)

    def embed(self, text: str) -> list[float]:
        """Embed a single text."""
        response = self.client.embeddings.create(input=text, model=self.model)
        return response.data[0].embedding

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed multiple texts."""
        response = self.client.embeddings.create(input=texts, model=self.model)
        return [d.embedding for d in response.data]

    @property
    def dimensions(self) -> int:
        """Return the dimensionality of embeddings."""
        return self._dimensions


class HashEmbedding:
    """Deterministic, dependency-free embedding backend.

    Intended for tests and constrained environments where heavyweight ML
    dependencies (torch/sentence-transformers) are undesirable. Identical
    texts map to identical vectors; anything else is close to orthogonal.
    """

    def __init__(self, dimensions: int = 384):
        self._dimensions = dimensions

    def _rng_for_text(self, text: str) -> random.Random:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        seed = int.from_bytes(digest[:8], "big", signed=False)
        return random.Random(seed)

    def embed(self, text: str) -> list[float]:
        rng = self._rng_for_text(text)
        return [rng.uniform(-1.0, 1.0) for _ in range(self._dimensions)]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(t) for t in texts]

    @property
    def dimensions(self) -> int:
        return self._dimensions


def create_backend(config: EngineConfig) -> EmbeddingBackend:
    """Instantiate the backend named by the configuration."""
    if config.embedding_backend == "openai":
        return OpenAIEmbedding(model=config.openai_model)
    if config.embedding_backend == "hash":
        return HashEmbedding()
    return LocalEmbedding(model_name=config.embedding_model)


async def embed_query(
    backend: EmbeddingBackend, text: str, timeout: float | None = None
) -> list[float] | None:
    """Embed the user message, or return None on failure or timeout.

    A missing query vector makes the scan fall back to keyword matching, so
    failures are logged and never raised.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(backend.embed, text), timeout)
    except asyncio.TimeoutError:
        logger.warning("Query embedding timed out after %ss", timeout)
    except Exception as e:
        logger.warning("Query embedding failed: %s", e)
    return None


def build_embed_texts(entry: LoreEntry) -> list[str]:
    """Split an entry into short texts to embed.

    One keywords-only chunk, then overlapping content chunks, capped at
    MAX_CHUNKS in total. Matching takes the best score over all chunks.
    """
    texts = []
    keywords = ", ".join(entry.keyword)
    content = entry.content.strip()
    if keywords:
        texts.append(keywords)
    for start in range(0, len(content), CHUNK_SIZE - CHUNK_OVERLAP):
        texts.append(content[start : start + CHUNK_SIZE])
        if len(texts) >= MAX_CHUNKS:
            break
    return texts or ["empty entry"]


def vectorize_entry(backend: EmbeddingBackend, entry: LoreEntry) -> LoreEntry | None:
    """Return a copy of ``entry`` carrying chunk embeddings.

    All chunks are embedded in one batch. If the batch call fails, chunks are
    embedded one at a time and those that fail are skipped. Keyword entries
    are promoted to vectorized mode. Returns None if no chunk could be embedded.
    """
    texts = build_embed_texts(entry)
    try:
        chunks = [list(vector) for vector in backend.embed_batch(texts)]
    except Exception as e:
        logger.warning("Batch embedding of entry %s failed, retrying per chunk: %s", entry.id, e)
        chunks = []
        for text in texts:
            try:
                chunks.append(list(backend.embed(text)))
            except Exception as chunk_error:
                logger.warning("Embedding chunk of entry %s failed: %s", entry.id, chunk_error)
    if not chunks:
        return None

    mode = entry.trigger_mode
    if mode is TriggerMode.KEYWORD:
        mode = TriggerMode.VECTORIZED
    return dataclasses.replace(entry, embedding_chunks=chunks, trigger_mode=mode)


def vectorize_book(
    backend: EmbeddingBackend, book: LoreBook, force: bool = False
) -> tuple[LoreBook, int, int]:
    """Vectorize the enabled entries of a book.

    Args:
        backend: Embedding backend
        book: Book to process
        force: Re-embed entries that already carry chunks

    Returns:
        (new book, vectorized count, failed count)
    """
    done = failed = 0
    entries = []
    for entry in book.entries:
        if not entry.enabled or (entry.embedding_chunks and not force):
            entries.append(entry)
            continue
        if not entry.content and not entry.keyword:
            # Nothing to embed
            entries.append(entry)
            continue
        vectorized = vectorize_entry(backend, entry)
        if vectorized is None:
            failed += 1
            entries.append(entry)
        else:
            done += 1
            entries.append(vectorized)
    return dataclasses.replace(book, entries=entries), done, failed


def rank_by_similarity(
    query: Sequence[float], entries: Iterable[LoreEntry], threshold: float
) -> list[tuple[LoreEntry, float, bool]]:
    """Score every embedded entry against a query vector, best first."""
    scored = [
        (entry, max_similarity(query, entry.embedding_chunks))
        for entry in entries
        if entry.embedding_chunks
    ]
    scored.sort(key=lambda item: item[1], reverse=True)
    return [(entry, score, score >= threshold) for entry, score in scored]
