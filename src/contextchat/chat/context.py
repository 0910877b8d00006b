"""Assemble grounding context, history, prompts and titles for a chat turn."""

from __future__ import annotations

import logging

from contextchat.errors import EmbeddingFailure
from contextchat.indexer.embedder import Embedder
from contextchat.llm.provider import GenerationProvider, Turn
from contextchat.retrieval.retriever import format_chunks, retrieve
from contextchat.storage.sqlite_store import Chunk, Conversation, FileRecord, Message

logger = logging.getLogger(__name__)

FILE_CONTEXT_TOP_K = 3
MESSAGE_CONTEXT_TOP_K = 3
SUMMARY_CONTEXT_TOP_K = 1
# Most recent messages sent verbatim as history; older ones are only reachable by retrieval
RECENT_WINDOW = 5

CONTEXT_PREAMBLE = "[System] Prioritize (70%) this context over general knowledge:"
CONTEXT_OUTRO = "Now answer the user's query based on this context and your knowledge."

TITLE_MAX_CHARS = 50
FALLBACK_TITLE_MAX_CHARS = 30


def build_file_context(query: str, files: list[FileRecord], embedder: Embedder) -> str:
    """Top file chunks for ``query`` across all referenced files, labelled by file name."""
    candidates = [
        Chunk(text=c.text, embedding=c.embedding, source_label=f.file_name)
        for f in files
        for c in f.chunks
    ]
    if not candidates:
        return ""
    try:
        relevant = retrieve(query, candidates, FILE_CONTEXT_TOP_K, embedder)
    except EmbeddingFailure as e:
        logger.warning("File context unavailable: %s", e)
        return ""
    return format_chunks(relevant)


def build_conversation_context(
    conversation: Conversation, query: str, embedder: Embedder,
) -> str:
    """Relevant older messages, or the best summary when none are embedded.

    ``conversation.messages`` must already include the new user message.
    Messages inside the recent window are left to the history instead.
    """
    messages = conversation.messages
    if len(messages) <= RECENT_WINDOW:
        return ""

    older = [
        Chunk(text=m.content, embedding=m.embedding)
        for m in messages[:-RECENT_WINDOW]
        if m.embedding
    ]
    try:
        if not older:
            return _summary_context(conversation, query, embedder)
        relevant = retrieve(query, older, MESSAGE_CONTEXT_TOP_K, embedder)
    except EmbeddingFailure as e:
        logger.warning("Conversation context unavailable: %s", e)
        return ""
    return "\n\n".join(c.text for c in relevant)


def _summary_context(conversation: Conversation, query: str, embedder: Embedder) -> str:
    if not conversation.summaries:
        return ""
    candidates = [
        Chunk(text=s.text, embedding=s.embedding, source_label="conversation summary")
        for s in conversation.summaries
    ]
    relevant = retrieve(query, candidates, SUMMARY_CONTEXT_TOP_K, embedder)
    return "\n\n".join(f"CONVERSATION SUMMARY: {c.text}" for c in relevant)


def build_history(messages: list[Message]) -> list[Turn]:
    """The RECENT_WINDOW messages before the newest one, as generation turns."""
    recent = messages[-(RECENT_WINDOW + 1):-1]
    return [
        Turn(role="user" if m.sender == "user" else "model", text=m.content)
        for m in recent
    ]


def build_prompt(message: str, file_context: str, conversation_context: str) -> str:
    """Prefix the user's message with the grounding block, if there is any context."""
    if not file_context and not conversation_context:
        return message

    prompt = f"{CONTEXT_PREAMBLE}\n\n"
    if file_context:
        prompt += f"FILE CONTEXT:\n{file_context}\n\n"
    if conversation_context:
        prompt += f"CONVERSATION CONTEXT:\n{conversation_context}\n\n"
    prompt += f"{CONTEXT_OUTRO}\n\n"
    return prompt + message


def clamp_title(title: str) -> str:
    title = title.strip()
    if len(title) > TITLE_MAX_CHARS:
        return title[: TITLE_MAX_CHARS - 3] + "..."
    return title


def fallback_title(message: str) -> str:
    if len(message) > FALLBACK_TITLE_MAX_CHARS:
        return message[: FALLBACK_TITLE_MAX_CHARS - 3] + "..."
    return message


def generate_title(provider: GenerationProvider, prompt: str, fallback: str) -> str:
    """Ask for a short title; any failure or empty answer yields ``fallback``.

    The result is always clamped to TITLE_MAX_CHARS.
    """
    try:
        suggested = provider.generate(prompt).strip()
    except Exception as e:
        logger.warning("Title generation failed, using fallback: %s", e)
        return clamp_title(fallback)
    if not suggested:
        return clamp_title(fallback)
    return clamp_title(suggested)


def chat_title_prompt(message: str, reply: str) -> str:
    return (
        "Based on this conversation, generate a very brief title (max 5 words):\n"
        f"User: {message}\nAI: {reply}"
    )


def image_title_prompt(message: str, reply: str) -> str:
    return (
        "Based on this image analysis, generate a very brief title (max 5 words):\n"
        f"Image description: {message}\n"
        f"AI analysis: {reply[:200]}"
    )
