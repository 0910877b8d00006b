"""Rank embedded text fragments against a query by similarity and length."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Protocol, Sequence

from contextchat.storage.sqlite_store import Chunk

logger = logging.getLogger(__name__)

SIMILARITY_WEIGHT = 0.7
LENGTH_WEIGHT = 0.3
# Fragments at or above this many characters get the full length bonus
LENGTH_SATURATION = 2000


class QueryEmbedder(Protocol):
    def embed(self, text: str) -> list[float]:
        ...


@dataclass(frozen=True)
class ScoredChunk:
    text: str
    embedding: list[float]
    source_label: str | None
    score: float


def cosine_similarity(a: Sequence[float] | None, b: Sequence[float] | None) -> float:
    """Cosine similarity of two vectors, in [-1, 1].

    Returns 0.0 for missing, empty, mismatched-length or zero-norm input.
    """
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    sim = dot / (math.sqrt(norm_a) * math.sqrt(norm_b))
    # Clamp float drift
    return max(-1.0, min(1.0, sim))


def score_chunk(query_embedding: Sequence[float], chunk: Chunk) -> float:
    """Weighted score: 70% cosine similarity, 30% length bonus."""
    similarity = cosine_similarity(query_embedding, chunk.embedding)
    length_bonus = min(1.0, len(chunk.text) / LENGTH_SATURATION)
    return SIMILARITY_WEIGHT * similarity + LENGTH_WEIGHT * length_bonus


def retrieve(
    query: str,
    candidates: Sequence[Chunk],
    top_k: int,
    embedder: QueryEmbedder,
) -> list[ScoredChunk]:
    """Return up to ``top_k`` candidates ranked by score, highest first.

    Candidates without embeddings are dropped. If nothing is left the query
    is not embedded and an empty list is returned. Equal scores keep their
    original candidate order.

    Raises:
        EmbeddingFailure: If the query itself cannot be embedded.
    """
    usable = [c for c in candidates if c.embedding]
    if not usable or top_k <= 0:
        return []

    query_embedding = embedder.embed(query)
    scored = [
        ScoredChunk(
            text=c.text,
            embedding=c.embedding,
            source_label=c.source_label,
            score=score_chunk(query_embedding, c),
        )
        for c in usable
    ]
    # sorted() is stable, so ties stay in candidate order
    ranked = sorted(scored, key=lambda s: s.score, reverse=True)
    logger.debug(
        "Retrieved %d/%d candidate(s) (%d without embeddings)",
        min(top_k, len(ranked)), len(candidates), len(candidates) - len(usable),
    )
    return ranked[:top_k]


def format_chunks(chunks: list[ScoredChunk]) -> str:
    """Render retrieved fragments with their provenance labels, blank-line separated."""
    parts = []
    for c in chunks:
        if c.source_label:
            parts.append(f"[From {c.source_label}]: {c.text}")
        else:
            parts.append(c.text)
    return "\n\n".join(parts)
