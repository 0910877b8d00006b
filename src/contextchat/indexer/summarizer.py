"""LLM-summarize windows of past messages so older context stays retrievable."""

from __future__ import annotations

import logging

from contextchat.indexer.embedder import Embedder
from contextchat.llm.provider import GenerationProvider
from contextchat.storage.sqlite_store import Message, Summary

logger = logging.getLogger(__name__)

# A summary is produced every SUMMARY_INTERVAL messages, once past the first window
SUMMARY_INTERVAL = 10

SUMMARY_PROMPT = (
    "Summarize the following conversation, focusing on technical details and "
    "key decisions. Keep the summary concise but include all important information:"
)

FALLBACK_SUMMARY = "Summary unavailable for this part of the conversation."

SUMMARY_TEMPERATURE = 0.2
SUMMARY_MAX_OUTPUT_TOKENS = 4000


def should_summarize(message_count: int) -> bool:
    """True when the conversation has just reached a multiple of 10 messages past 10."""
    return message_count > SUMMARY_INTERVAL and message_count % SUMMARY_INTERVAL == 0


def format_messages(messages: list[Message]) -> str:
    return "\n\n".join(
        f"{'User' if m.sender == 'user' else 'AI'}: {m.content}" for m in messages
    )


class Summarizer:
    """Condenses a window of messages into a Summary with its own embedding."""

    def __init__(self, provider: GenerationProvider, embedder: Embedder) -> None:
        self._provider = provider
        self._embedder = embedder

    def summarize(self, window: list[Message], start: int) -> Summary:
        """Summarize ``window``, which begins at absolute position ``start``.

        Never raises for generation or embedding problems: a failed generation
        yields FALLBACK_SUMMARY with an empty embedding, a failed embedding
        leaves the generated text with an empty embedding.
        """
        end = start + len(window)
        prompt = f"{SUMMARY_PROMPT}\n\n{format_messages(window)}"
        try:
            text = self._provider.generate(
                prompt,
                temperature=SUMMARY_TEMPERATURE,
                max_output_tokens=SUMMARY_MAX_OUTPUT_TOKENS,
            ).strip()
        except Exception as e:
            logger.warning("Summary of messages [%d, %d) failed, using fallback: %s", start, end, e)
            return Summary(text=FALLBACK_SUMMARY, embedding=[], range_start=start, range_end=end)

        if not text:
            logger.warning("Empty summary for messages [%d, %d), using fallback", start, end)
            return Summary(text=FALLBACK_SUMMARY, embedding=[], range_start=start, range_end=end)

        embedding = self._embedder.try_embed(text)
        logger.info("Summarized messages [%d, %d): %d chars", start, end, len(text))
        return Summary(text=text, embedding=embedding, range_start=start, range_end=end)
