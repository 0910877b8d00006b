"""FastAPI server: conversations, grounded messages, file uploads, and SSE events."""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
import uuid
from pathlib import Path

from fastapi import FastAPI, File, Form, Header, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from contextchat import config
from contextchat.api.notifier import Notifier
from contextchat.chat.orchestrator import ChatOrchestrator
from contextchat.errors import ContextChatError, NotFound, ValidationFailure
from contextchat.indexer.embedder import Embedder
from contextchat.indexer.ingest import ingest_file, validate_upload
from contextchat.storage.sqlite_store import SqliteStore

# Configure logging on import — before anything else logs
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)-5s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)

logger = logging.getLogger(__name__)

app = FastAPI(title="contextchat", description="Document-grounded streaming chat")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_methods=["*"],
    allow_headers=["*"],
)

_notifier = Notifier()

# Lazy-initialized Gemini client and embedder (created on first request).
# The embedder owns the process-wide embedding cache.
_provider = None
_embedder: Embedder | None = None
_init_lock = threading.RLock()


def _get_provider():
    global _provider
    with _init_lock:
        if _provider is None:
            from contextchat.llm.provider import GeminiProvider

            logger.info("Initializing Gemini provider (model=%s)...", config.GEMINI_MODEL)
            _provider = GeminiProvider()
        return _provider


def _get_embedder() -> Embedder:
    global _embedder
    with _init_lock:
        if _embedder is None:
            _embedder = Embedder(provider=_get_provider())
        return _embedder


def _get_sqlite_store() -> SqliteStore:
    """Fresh connection per request (sqlite3 connections are per-thread)."""
    store = SqliteStore(config.SQLITE_PATH)
    store.init_db()
    return store


def _get_orchestrator(store: SqliteStore) -> ChatOrchestrator:
    return ChatOrchestrator(
        store=store,
        provider=_get_provider(),
        embedder=_get_embedder(),
        notifier=_notifier,
    )


def _http_error(e: ContextChatError, message: str) -> HTTPException:
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail={"message": str(e)})
    if isinstance(e, ValidationFailure):
        return HTTPException(status_code=400, detail={"message": str(e)})
    return HTTPException(status_code=500, detail={"message": message, "error": str(e)})


def _save_upload(data: bytes, filename: str | None) -> Path:
    """Write upload bytes to a uniquely named file under UPLOAD_DIR."""
    config.UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    suffix = Path(filename or "").suffix
    path = config.UPLOAD_DIR / f"upload-{uuid.uuid4().hex}{suffix}"
    path.write_bytes(data)
    return path


class SendMessageRequest(BaseModel):
    message: str
    file_ids: list[int] = []


class SendMessageResponse(BaseModel):
    success: bool
    message: str
    response: str
    title: str


class CreateConversationRequest(BaseModel):
    title: str | None = None


# ── Health ──


@app.get("/health")
def health():
    return {"status": "ok"}


# ── Conversations ──


@app.post("/conversations", status_code=201)
def create_conversation(
    req: CreateConversationRequest | None = None,
    user_id: str = Header(alias="X-User-Id"),
):
    store = _get_sqlite_store()
    try:
        if req and req.title:
            conversation_id = store.create_conversation(user_id, req.title)
        else:
            conversation_id = store.create_conversation(user_id)
        conversation = store.get_conversation(conversation_id, user_id)
    finally:
        store.close()
    return {"id": conversation_id, "title": conversation.title if conversation else ""}


@app.get("/conversations")
def list_conversations(user_id: str = Header(alias="X-User-Id")):
    store = _get_sqlite_store()
    try:
        return store.list_conversations(user_id)
    finally:
        store.close()


@app.get("/conversations/{conversation_id}")
def get_conversation(conversation_id: int, user_id: str = Header(alias="X-User-Id")):
    store = _get_sqlite_store()
    try:
        conversation = store.get_conversation(conversation_id, user_id)
    finally:
        store.close()
    if conversation is None:
        raise HTTPException(status_code=404, detail={"message": "Conversation not found"})
    return {
        "id": conversation.id,
        "title": conversation.title,
        "messages": [
            {
                "sender": m.sender,
                "content": m.content,
                "file_refs": [
                    {"file_id": r.file_id, "file_name": r.file_name} for r in m.file_refs
                ],
            }
            for m in conversation.messages
        ],
        "summary_count": len(conversation.summaries),
    }


@app.delete("/conversations/{conversation_id}")
def delete_conversation(conversation_id: int, user_id: str = Header(alias="X-User-Id")):
    store = _get_sqlite_store()
    try:
        deleted = store.delete_conversation(conversation_id, user_id)
    finally:
        store.close()
    if not deleted:
        raise HTTPException(status_code=404, detail={"message": "Conversation not found"})
    return {"message": "Conversation deleted successfully"}


# ── Messages ──


@app.post("/conversations/{conversation_id}/messages", response_model=SendMessageResponse)
def send_message(
    conversation_id: int,
    req: SendMessageRequest,
    user_id: str = Header(alias="X-User-Id"),
):
    logger.info("POST /conversations/%d/messages message=%r", conversation_id, req.message[:120])
    t0 = time.perf_counter()
    store = _get_sqlite_store()
    try:
        reply = _get_orchestrator(store).send_message(
            user_id, conversation_id, req.message, file_ids=req.file_ids,
        )
    except ContextChatError as e:
        logger.warning("Message failed after %.2fs: %s", time.perf_counter() - t0, e)
        raise _http_error(e, "Gemini API failed")
    finally:
        store.close()
    return SendMessageResponse(
        success=True,
        message="Message sent and processed",
        response=reply.response,
        title=reply.title,
    )


@app.post("/conversations/{conversation_id}/image", response_model=SendMessageResponse)
def send_image_message(
    conversation_id: int,
    image: UploadFile | None = File(None),
    message: str | None = Form(None),
    user_id: str = Header(alias="X-User-Id"),
):
    image_path = None
    mime_type = ""
    file_name = ""
    if image is not None:
        mime_type = image.content_type or ""
        file_name = image.filename or "image"
        if not mime_type.startswith("image/"):
            raise HTTPException(status_code=400, detail={"message": "Upload must be an image"})
        data = image.file.read()
        try:
            validate_upload(mime_type, len(data))
        except ValidationFailure as e:
            raise _http_error(e, "Image upload failed")
        image_path = _save_upload(data, image.filename)

    store = _get_sqlite_store()
    try:
        reply = _get_orchestrator(store).send_image_message(
            user_id, conversation_id, message, image_path, mime_type, file_name,
        )
    except ContextChatError as e:
        raise _http_error(e, "Gemini Vision API failed")
    finally:
        store.close()
    return SendMessageResponse(
        success=True,
        message="Image processed",
        response=reply.response,
        title=reply.title,
    )


# ── Files ──


@app.post("/files", status_code=201)
def upload_file(
    file: UploadFile | None = File(None),
    user_id: str = Header(alias="X-User-Id"),
):
    if file is None:
        raise HTTPException(status_code=400, detail={"message": "No file uploaded"})
    data = file.file.read()
    try:
        validate_upload(file.content_type, len(data))
    except ValidationFailure as e:
        raise _http_error(e, "File upload failed")

    path = _save_upload(data, file.filename)
    store = _get_sqlite_store()
    try:
        record = ingest_file(
            store,
            _get_embedder(),
            user_id,
            path,
            file_name=file.filename or path.name,
            mime_type=file.content_type or "",
            provider=_get_provider(),
        )
    except ContextChatError as e:
        raise _http_error(e, "File upload failed")
    except Exception as e:
        logger.exception("File upload failed for %s", file.filename)
        raise HTTPException(status_code=500, detail={"message": "File upload failed", "error": str(e)})
    finally:
        store.close()
    return {"file_id": record.id, "file_name": record.file_name, "file_type": record.file_type}


@app.get("/files")
def list_files(user_id: str = Header(alias="X-User-Id")):
    store = _get_sqlite_store()
    try:
        return store.list_files(user_id)
    finally:
        store.close()


@app.delete("/files/{file_id}")
def delete_file(file_id: int, user_id: str = Header(alias="X-User-Id")):
    store = _get_sqlite_store()
    try:
        deleted = store.delete_file(file_id, user_id)
    finally:
        store.close()
    if not deleted:
        raise HTTPException(status_code=404, detail={"message": "File not found"})
    return {"message": "File deleted successfully"}


# ── SSE notifications ──


@app.get("/events")
def stream_events(user_id: str = Header(alias="X-User-Id")):
    """SSE stream of processing, message-chunk and error events for the caller."""
    sub_queue = _notifier.subscribe(user_id)

    def event_generator():
        try:
            while True:
                try:
                    event = sub_queue.get(timeout=30)
                    yield f"data: {json.dumps(event)}\n\n"
                except queue.Empty:
                    # Send keepalive
                    yield ": keepalive\n\n"
        finally:
            _notifier.unsubscribe(user_id, sub_queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def main() -> None:
    import uvicorn

    uvicorn.run("contextchat.api.server:app", host=config.HOST, port=config.PORT)
