"""Tests for cosine similarity and weighted relevance retrieval."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from contextchat.errors import EmbeddingFailure
from contextchat.retrieval.retriever import (
    ScoredChunk,
    cosine_similarity,
    format_chunks,
    retrieve,
    score_chunk,
)
from contextchat.storage.sqlite_store import Chunk


def _query_embedder(vector: list[float]) -> MagicMock:
    embedder = MagicMock()
    embedder.embed = MagicMock(return_value=vector)
    return embedder


# ── cosine_similarity ──


class TestCosineSimilarity:
    def test_identical(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_opposite(self):
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0

    def test_scale_invariant(self):
        assert cosine_similarity([1.0, 1.0], [5.0, 5.0]) == pytest.approx(1.0)

    def test_symmetric(self):
        a, b = [0.3, -0.2, 0.9], [0.1, 0.4, -0.5]
        assert cosine_similarity(a, b) == cosine_similarity(b, a)

    def test_bounded(self):
        pairs = [
            ([0.3, -0.2, 0.9], [0.1, 0.4, -0.5]),
            ([1e9, 1e-9], [1e-9, 1e9]),
            ([0.1] * 768, [0.1] * 768),
        ]
        for a, b in pairs:
            assert -1.0 <= cosine_similarity(a, b) <= 1.0

    # -- Degenerate input --

    def test_mismatched_lengths(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0]) == 0.0

    def test_empty(self):
        assert cosine_similarity([], []) == 0.0
        assert cosine_similarity([], [1.0]) == 0.0

    def test_missing(self):
        assert cosine_similarity(None, [1.0]) == 0.0
        assert cosine_similarity([1.0], None) == 0.0

    def test_zero_norm(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0
        assert cosine_similarity([1.0, 2.0], [0.0, 0.0]) == 0.0


# ── score_chunk ──


class TestScoreChunk:
    def test_formula(self):
        chunk = Chunk(text="x" * 1000, embedding=[1.0, 0.0])
        # 0.7 * 1.0 + 0.3 * (1000 / 2000)
        assert score_chunk([1.0, 0.0], chunk) == pytest.approx(0.85)

    def test_length_bonus_caps_at_2000_chars(self):
        long_chunk = Chunk(text="x" * 5000, embedding=[0.0, 1.0])
        assert score_chunk([1.0, 0.0], long_chunk) == pytest.approx(0.3)


# ── retrieve ──


class TestRetrieve:
    def test_empty_candidates(self):
        embedder = _query_embedder([1.0, 0.0])
        assert retrieve("query", [], 3, embedder) == []
        embedder.embed.assert_not_called()

    def test_all_candidates_without_embeddings(self):
        embedder = _query_embedder([1.0, 0.0])
        candidates = [Chunk(text="a"), Chunk(text="b", embedding=[])]
        assert retrieve("query", candidates, 3, embedder) == []
        embedder.embed.assert_not_called()

    def test_drops_empty_embeddings(self):
        embedder = _query_embedder([1.0, 0.0])
        candidates = [
            Chunk(text="valid chunk", embedding=[1.0, 0.0], source_label="doc.txt"),
            Chunk(text="unembedded chunk", embedding=[], source_label="doc.txt"),
        ]
        results = retrieve("query", candidates, 3, embedder)

        assert [r.text for r in results] == ["valid chunk"]
        assert results[0].source_label == "doc.txt"

    def test_ranks_by_similarity(self):
        embedder = _query_embedder([1.0, 0.0])
        candidates = [
            Chunk(text="far", embedding=[0.0, 1.0]),
            Chunk(text="near", embedding=[1.0, 0.1]),
        ]
        results = retrieve("query", candidates, 2, embedder)
        assert [r.text for r in results] == ["near", "far"]

    def test_length_breaks_equal_similarity(self):
        embedder = _query_embedder([1.0, 0.0])
        candidates = [
            Chunk(text="short", embedding=[1.0, 0.0]),
            Chunk(text="much longer fragment " * 20, embedding=[1.0, 0.0]),
        ]
        results = retrieve("query", candidates, 2, embedder)
        assert results[0].text.startswith("much longer")

    def test_ties_keep_candidate_order(self):
        embedder = _query_embedder([1.0, 0.0])
        candidates = [
            Chunk(text=f"same-{i}", embedding=[0.5, 0.5]) for i in range(5)
        ]
        results = retrieve("query", candidates, 5, embedder)
        assert [r.text for r in results] == [f"same-{i}" for i in range(5)]

    def test_top_k_and_non_increasing_scores(self):
        embedder = _query_embedder([1.0, 0.0, 0.0])
        candidates = [
            Chunk(text=f"chunk {i}", embedding=[float(i % 3), float(i % 5), 1.0])
            for i in range(12)
        ]
        results = retrieve("query", candidates, 4, embedder)

        assert len(results) == 4
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)

    def test_top_k_larger_than_candidates(self):
        embedder = _query_embedder([1.0, 0.0])
        candidates = [Chunk(text="only", embedding=[1.0, 0.0])]
        assert len(retrieve("query", candidates, 10, embedder)) == 1

    def test_embeds_query_once(self):
        embedder = _query_embedder([1.0, 0.0])
        candidates = [Chunk(text=str(i), embedding=[1.0, 0.0]) for i in range(3)]
        retrieve("what is this", candidates, 3, embedder)
        embedder.embed.assert_called_once_with("what is this")

    def test_query_embedding_failure_propagates(self):
        embedder = MagicMock()
        embedder.embed = MagicMock(side_effect=EmbeddingFailure("down"))
        with pytest.raises(EmbeddingFailure):
            retrieve("q", [Chunk(text="a", embedding=[1.0])], 3, embedder)


class TestFormatChunks:
    def test_labels_and_separators(self):
        chunks = [
            ScoredChunk(text="alpha", embedding=[1.0], source_label="a.pdf", score=0.9),
            ScoredChunk(text="beta", embedding=[1.0], source_label=None, score=0.5),
        ]
        assert format_chunks(chunks) == "[From a.pdf]: alpha\n\nbeta"

    def test_empty(self):
        assert format_chunks([]) == ""
