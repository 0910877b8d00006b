"""Send-message pipeline: persist the user turn, gather context, stream the reply.

A request moves through RECEIVED -> CONTEXT_GATHERED -> GENERATING ->
COMPLETED, or ends in FAILED. Every stage takes a SendState and returns a new
one. Steps run strictly in sequence; the user message is persisted before any
generation starts and is never rolled back.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from pathlib import Path

from contextchat.api.notifier import (
    NotificationChannel,
    chunk_event,
    error_event,
    processing_event,
)
from contextchat.chat.context import (
    build_conversation_context,
    build_file_context,
    build_history,
    build_prompt,
    chat_title_prompt,
    fallback_title,
    generate_title,
    image_title_prompt,
)
from contextchat.errors import ContextChatError, GenerationFailure, NotFound, ValidationFailure
from contextchat.indexer.embedder import Embedder
from contextchat.indexer.ingest import cleanup_file
from contextchat.indexer.summarizer import SUMMARY_INTERVAL, Summarizer, should_summarize
from contextchat.llm.provider import ChatProvider, Turn
from contextchat.storage.sqlite_store import Conversation, FileRecord, FileRef, Message, SqliteStore

logger = logging.getLogger(__name__)

RECEIVED = "received"
CONTEXT_GATHERED = "context_gathered"
GENERATING = "generating"
COMPLETED = "completed"
FAILED = "failed"

DEFAULT_IMAGE_MESSAGE = "Image query"
DEFAULT_IMAGE_PROMPT = "What's in this image?"
IMAGE_FALLBACK_TITLE = "Image Analysis"


@dataclass(frozen=True)
class SendState:
    """Everything one send-message request has learned so far."""

    user_id: str
    message: str
    conversation: Conversation
    stage: str = RECEIVED
    files: tuple[FileRecord, ...] = ()
    needs_title: bool = False
    file_context: str = ""
    conversation_context: str = ""
    history: tuple[Turn, ...] = ()
    prompt: str = ""
    reply: str = ""
    title: str = ""
    chunks_sent: int = 0
    started_at: float = field(default_factory=time.perf_counter)


@dataclass(frozen=True)
class ChatReply:
    response: str
    title: str


def _error_detail(e: Exception) -> str:
    # google-genai APIError carries the upstream message separately
    return getattr(e, "message", None) or str(e)


class ChatOrchestrator:
    """Runs send-message requests against one store, provider and channel."""

    def __init__(
        self,
        store: SqliteStore,
        provider: ChatProvider,
        embedder: Embedder,
        notifier: NotificationChannel | None = None,
        summarizer: Summarizer | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._embedder = embedder
        self._notifier = notifier
        self._summarizer = summarizer or Summarizer(provider, embedder)

    # ── Text messages ──

    def send_message(
        self,
        user_id: str,
        conversation_id: int,
        message: str,
        file_ids: list[int] | None = None,
    ) -> ChatReply:
        """Answer ``message`` in a conversation, streaming the reply to the user's channel.

        Raises:
            ValidationFailure: If the message is empty.
            NotFound: If the conversation doesn't exist or isn't the caller's.
            GenerationFailure: If generation fails. The user message stays persisted.
        """
        if not message or not message.strip():
            raise ValidationFailure("Message is required")
        logger.info("Message for conversation %d: %r", conversation_id, message[:120])

        state = self._receive(user_id, conversation_id, message, file_ids or [])
        self._notify(user_id, processing_event(conversation_id, "started"))

        try:
            state = self._summarize_if_due(state)
            state = self._gather_context(state)
            state = self._generate(state)
            state = self._complete(state)
        except ContextChatError as e:
            self._fail(state, e)
            raise
        except Exception as e:
            self._fail(state, e)
            raise GenerationFailure(_error_detail(e)) from e

        return ChatReply(response=state.reply, title=state.title)

    def _receive(
        self, user_id: str, conversation_id: int, message: str, file_ids: list[int],
    ) -> SendState:
        conversation = self._store.get_conversation(conversation_id, user_id)
        if conversation is None:
            raise NotFound(f"Conversation {conversation_id} not found")

        files = self._store.get_files(file_ids, user_id) if file_ids else []
        if len(files) < len(set(file_ids)):
            logger.warning(
                "Ignoring %d unknown file reference(s) for conversation %d",
                len(set(file_ids)) - len(files), conversation_id,
            )
        user_message = Message(
            sender="user",
            content=message,
            embedding=self._embedder.try_embed(message),
            file_refs=[FileRef(file_id=f.id, file_name=f.file_name) for f in files],
        )
        # First completed turn: nothing has been answered in this conversation yet
        needs_title = not any(m.sender == "ai" for m in conversation.messages)
        self._store.append_message(conversation_id, user_message)

        return SendState(
            user_id=user_id,
            message=message,
            conversation=replace(
                conversation, messages=[*conversation.messages, user_message],
            ),
            files=tuple(files),
            needs_title=needs_title,
            title=conversation.title,
        )

    def _summarize_if_due(self, state: SendState) -> SendState:
        conversation = state.conversation
        count = len(conversation.messages)
        if not should_summarize(count):
            return state

        # The window is the SUMMARY_INTERVAL messages before the new one
        start = count - SUMMARY_INTERVAL - 1
        window = conversation.messages[start:count - 1]
        summary = self._summarizer.summarize(window, start)
        self._store.append_summary(conversation.id, summary)
        logger.info(
            "Conversation %d: appended summary of messages [%d, %d)",
            conversation.id, summary.range_start, summary.range_end,
        )
        return replace(
            state,
            conversation=replace(conversation, summaries=[*conversation.summaries, summary]),
        )

    def _gather_context(self, state: SendState) -> SendState:
        t0 = time.perf_counter()
        file_context = build_file_context(state.message, list(state.files), self._embedder)
        conversation_context = build_conversation_context(
            state.conversation, state.message, self._embedder,
        )
        logger.debug(
            "Context gathered: %d file chars, %d conversation chars (%.2fs)",
            len(file_context), len(conversation_context), time.perf_counter() - t0,
        )
        return replace(
            state,
            stage=CONTEXT_GATHERED,
            file_context=file_context,
            conversation_context=conversation_context,
            history=tuple(build_history(state.conversation.messages)),
            prompt=build_prompt(state.message, file_context, conversation_context),
        )

    def _generate(self, state: SendState) -> SendState:
        state = replace(state, stage=GENERATING)
        conversation_id = state.conversation.id
        parts: list[str] = []
        try:
            for fragment in self._provider.generate_stream(state.prompt, list(state.history)):
                if not fragment:
                    continue
                parts.append(fragment)
                self._notify(state.user_id, chunk_event(conversation_id, fragment))
        except Exception as e:
            raise GenerationFailure(_error_detail(e)) from e

        return replace(state, reply="".join(parts), chunks_sent=len(parts))

    def _complete(self, state: SendState) -> SendState:
        conversation = state.conversation
        title = state.title
        if state.needs_title:
            title = generate_title(
                self._provider,
                chat_title_prompt(state.message, state.reply),
                fallback=fallback_title(state.message),
            )

        ai_message = Message(
            sender="ai",
            content=state.reply,
            embedding=self._embedder.try_embed(state.reply) if state.reply else [],
        )
        self._store.append_message(conversation.id, ai_message)
        if title != conversation.title:
            self._store.set_title(conversation.id, title)

        self._notify(state.user_id, processing_event(conversation.id, "completed", title=title))
        logger.info(
            "Conversation %d: reply complete, %d chunk(s), %d chars, %.2fs",
            conversation.id, state.chunks_sent, len(state.reply),
            time.perf_counter() - state.started_at,
        )
        return replace(
            state,
            stage=COMPLETED,
            title=title,
            conversation=replace(
                conversation, title=title, messages=[*conversation.messages, ai_message],
            ),
        )

    # ── Image messages ──

    def send_image_message(
        self,
        user_id: str,
        conversation_id: int,
        message: str | None,
        image_path: Path | None,
        mime_type: str,
        file_name: str,
    ) -> ChatReply:
        """Answer a question about an uploaded image in one multimodal streaming call.

        Skips retrieval and embeddings entirely. The uploaded image is deleted
        whether the request succeeds or fails.
        """
        if image_path is None:
            raise ValidationFailure("No image uploaded")
        try:
            return self._send_image(user_id, conversation_id, message, image_path, mime_type, file_name)
        finally:
            cleanup_file(image_path)

    def _send_image(
        self,
        user_id: str,
        conversation_id: int,
        message: str | None,
        image_path: Path,
        mime_type: str,
        file_name: str,
    ) -> ChatReply:
        conversation = self._store.get_conversation(conversation_id, user_id)
        if conversation is None:
            raise NotFound(f"Conversation {conversation_id} not found")
        try:
            image = image_path.read_bytes()
        except OSError as e:
            raise ValidationFailure(f"Cannot read uploaded image: {e}") from e

        self._notify(user_id, processing_event(conversation_id, "started"))
        user_message = Message(
            sender="user",
            content=message or DEFAULT_IMAGE_MESSAGE,
            file_refs=[FileRef(file_id=None, file_name=file_name)],
        )
        self._store.append_message(conversation_id, user_message)
        state = SendState(
            user_id=user_id,
            message=message or DEFAULT_IMAGE_MESSAGE,
            conversation=replace(
                conversation, messages=[*conversation.messages, user_message],
            ),
            title=conversation.title,
            prompt=message or DEFAULT_IMAGE_PROMPT,
        )

        try:
            state = replace(state, stage=GENERATING)
            parts: list[str] = []
            try:
                stream = self._provider.generate_image_stream(state.prompt, image, mime_type)
                for fragment in stream:
                    if not fragment:
                        continue
                    parts.append(fragment)
                    self._notify(user_id, chunk_event(conversation_id, fragment))
            except Exception as e:
                raise GenerationFailure(_error_detail(e)) from e
            reply = "".join(parts)

            self._store.append_message(conversation_id, Message(sender="ai", content=reply))
            title = state.title
            if len(state.conversation.messages) + 1 <= 2:
                title = generate_title(
                    self._provider,
                    image_title_prompt(state.message, reply),
                    fallback=IMAGE_FALLBACK_TITLE,
                )
                self._store.set_title(conversation_id, title)

            self._notify(user_id, processing_event(conversation_id, "completed", title=title))
            state = replace(state, stage=COMPLETED, reply=reply, title=title, chunks_sent=len(parts))
            logger.info(
                "Conversation %d: image reply complete, %d chars, %.2fs",
                conversation_id, len(reply), time.perf_counter() - state.started_at,
            )
        except ContextChatError as e:
            self._fail(state, e)
            raise
        except Exception as e:
            self._fail(state, e)
            raise GenerationFailure(_error_detail(e)) from e

        return ChatReply(response=state.reply, title=state.title)

    # ── Shared ──

    def _fail(self, state: SendState, e: Exception) -> SendState:
        logger.exception(
            "Conversation %d failed during %s after %.2fs",
            state.conversation.id, state.stage, time.perf_counter() - state.started_at,
        )
        self._notify(state.user_id, error_event(state.conversation.id, _error_detail(e)))
        return replace(state, stage=FAILED)

    def _notify(self, user_id: str, event: dict) -> None:
        if self._notifier is None:
            return
        self._notifier.publish(user_id, event)
