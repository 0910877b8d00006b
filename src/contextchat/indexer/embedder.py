"""Embed text via an embedding provider, with a bounded cache and retries."""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict

from contextchat import config
from contextchat.errors import EmbeddingFailure
from contextchat.llm.provider import EmbeddingProvider
from contextchat.storage.sqlite_store import Chunk

logger = logging.getLogger(__name__)

# Errors that will not go away on retry
_FATAL_MARKERS = ("API_KEY_INVALID", "PERMISSION_DENIED")


class EmbeddingCache:
    """Process-wide embedding cache keyed by a fixed-length text prefix.

    Texts sharing the first ``key_chars`` characters share one entry. When the
    cache grows past ``capacity`` the oldest-inserted entry is evicted
    (insertion order, not access order).
    """

    def __init__(
        self,
        capacity: int | None = None,
        key_chars: int | None = None,
    ) -> None:
        self._capacity = capacity if capacity is not None else config.EMBED_CACHE_SIZE
        self._key_chars = key_chars if key_chars is not None else config.EMBED_CACHE_KEY_CHARS
        self._entries: OrderedDict[str, list[float]] = OrderedDict()
        self._lock = threading.Lock()

    def key_for(self, text: str) -> str:
        return text[: self._key_chars]

    def get(self, text: str) -> list[float] | None:
        with self._lock:
            return self._entries.get(self.key_for(text))

    def put(self, text: str, vector: list[float]) -> None:
        with self._lock:
            # Reassigning an existing key keeps its original slot in the order
            self._entries[self.key_for(text)] = vector
            while len(self._entries) > self._capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Embedding cache full, evicted %r", evicted[:40])

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, text: str) -> bool:
        with self._lock:
            return self.key_for(text) in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class NullEmbeddingCache:
    """Cache that never stores anything; every lookup misses."""

    def get(self, text: str) -> list[float] | None:
        return None

    def put(self, text: str, vector: list[float]) -> None:
        pass

    def clear(self) -> None:
        pass

    def __contains__(self, text: str) -> bool:
        return False

    def __len__(self) -> int:
        return 0


class Embedder:
    """Embeds single texts through a provider, caching results and retrying failures."""

    def __init__(
        self,
        provider: EmbeddingProvider | None = None,
        cache: EmbeddingCache | NullEmbeddingCache | None = None,
        max_retries: int | None = None,
        retry_delay: float | None = None,
    ) -> None:
        if provider is None:
            from contextchat.llm.provider import GeminiProvider

            provider = GeminiProvider()
        self._provider = provider
        self._cache = cache if cache is not None else EmbeddingCache()
        self._max_retries = max_retries if max_retries is not None else config.EMBED_MAX_RETRIES
        self._retry_delay = retry_delay if retry_delay is not None else config.EMBED_RETRY_DELAY

    @property
    def cache(self) -> EmbeddingCache | NullEmbeddingCache:
        return self._cache

    def embed(self, text: str) -> list[float]:
        """Return the embedding for ``text``.

        Raises:
            EmbeddingFailure: If the provider still fails after all retries,
                or immediately on an authentication error.
        """
        cached = self._cache.get(text)
        if cached is not None:
            return cached

        attempts = 1 + self._max_retries
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                vector = list(self._provider.embed([text])[0])
            except Exception as e:
                err_str = str(e)
                if any(marker in err_str for marker in _FATAL_MARKERS):
                    raise EmbeddingFailure(f"API key error: {e}") from e
                last_error = e
                logger.warning("Embedding attempt %d/%d failed: %s", attempt, attempts, e)
                if attempt < attempts and self._retry_delay > 0:
                    time.sleep(self._retry_delay)
                continue

            self._cache.put(text, vector)
            return vector

        raise EmbeddingFailure(
            f"Embedding failed after {attempts} attempts: {last_error}"
        ) from last_error

    def try_embed(self, text: str) -> list[float]:
        """Best-effort embed: returns an empty vector instead of raising."""
        try:
            return self.embed(text)
        except EmbeddingFailure as e:
            logger.warning("Continuing without embedding (%d chars): %s", len(text), e)
            return []

    def embed_chunks(self, texts: list[str], source_label: str | None = None) -> list[Chunk]:
        """Embed each text independently.

        A failing text yields a chunk with an empty embedding; the rest of the
        batch is unaffected.
        """
        chunks = [
            Chunk(text=text, embedding=self.try_embed(text), source_label=source_label)
            for text in texts
        ]
        failed = sum(1 for c in chunks if not c.embedding)
        if failed:
            logger.warning("%d/%d chunk(s) left without embeddings", failed, len(chunks))
        return chunks
