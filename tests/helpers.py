"""Shared test helpers — mock Gemini provider factories and an in-memory channel."""

from __future__ import annotations

import hashlib
from unittest.mock import MagicMock

DEFAULT_REPLY_CHUNKS = ["Hello", " there", "!"]
DEFAULT_TITLE = "Friendly Greeting Chat"
DEFAULT_SUMMARY = "The user and AI discussed retry policies for the ingest job."


def _fake_embed(texts: list[str]) -> list[list[float]]:
    """Return deterministic fake embeddings based on text content."""
    results = []
    for t in texts:
        h = hashlib.md5(t.encode()).digest()
        vec = [float(b) / 255.0 + 0.01 for b in h[:8]]
        results.append(vec)
    return results


def _make_chat_provider(
    reply_chunks: list[str] | None = None,
    title: str = DEFAULT_TITLE,
    summary: str = DEFAULT_SUMMARY,
) -> MagicMock:
    """Create a mock provider covering embed, generate and both streaming calls.

    ``generate`` answers summary prompts with ``summary`` and everything else
    (title prompts) with ``title``.
    """
    chunks = list(DEFAULT_REPLY_CHUNKS if reply_chunks is None else reply_chunks)

    def _generate(prompt, system=None, temperature=None, max_output_tokens=None):
        if prompt.startswith("Summarize"):
            return summary
        return title

    provider = MagicMock()
    provider.embed = MagicMock(side_effect=_fake_embed)
    provider.generate = MagicMock(side_effect=_generate)
    provider.generate_stream = MagicMock(side_effect=lambda prompt, history: iter(chunks))
    provider.generate_image_stream = MagicMock(
        side_effect=lambda prompt, image, mime_type: iter(chunks)
    )
    provider.describe_image = MagicMock(return_value="Text read from the image.")
    return provider


class RecordingNotifier:
    """In-memory notification channel that records every published event."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def publish(self, user_id: str, event: dict) -> int:
        self.events.append((user_id, event))
        return 1

    def types(self) -> list[str]:
        return [e["type"] for _, e in self.events]

    def chunks(self) -> list[str]:
        return [e["chunk"] for _, e in self.events if e["type"] == "message-chunk"]
