"""Turn an uploaded file into a stored, chunked and embedded file record."""

from __future__ import annotations

import logging
import time
from pathlib import Path

from pypdf import PdfReader

from contextchat import config
from contextchat.errors import ValidationFailure
from contextchat.indexer.chunker import chunk_text
from contextchat.indexer.embedder import Embedder
from contextchat.llm.provider import ImageDescriber
from contextchat.storage.sqlite_store import FileRecord, SqliteStore

logger = logging.getLogger(__name__)

ALLOWED_TYPES = {
    "application/pdf",
    "image/jpeg",
    "image/png",
    "image/webp",
    "text/plain",
}

OCR_PROMPT = (
    "Extract all text from this image. Return only the extracted text without "
    "any additional comments or explanations."
)


def validate_upload(mime_type: str | None, size: int) -> None:
    """Reject unsupported types and oversized uploads."""
    if mime_type not in ALLOWED_TYPES:
        raise ValidationFailure(
            "Invalid file type. Only PDF, JPG, PNG, WEBP, and TXT files are allowed."
        )
    if size > config.MAX_UPLOAD_BYTES:
        raise ValidationFailure(
            f"File too large ({size} bytes, max {config.MAX_UPLOAD_BYTES})"
        )


def extract_text(path: Path, mime_type: str, provider: ImageDescriber | None = None) -> str:
    """Extract plain text from a PDF, image or text file."""
    if mime_type == "application/pdf":
        reader = PdfReader(str(path))
        return "\n".join(page.extract_text() or "" for page in reader.pages)
    if mime_type.startswith("image/"):
        if provider is None:
            raise ValidationFailure("Image text extraction needs a generation provider")
        return provider.describe_image(OCR_PROMPT, path.read_bytes(), mime_type)
    if mime_type == "text/plain":
        return path.read_text(encoding="utf-8", errors="replace")
    raise ValidationFailure(f"Unsupported file type: {mime_type}")


def cleanup_file(path: Path) -> None:
    """Delete a transient upload. Failures are logged, never raised."""
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Error cleaning up %s: %s", path, e)


def ingest_file(
    store: SqliteStore,
    embedder: Embedder,
    user_id: str,
    path: Path,
    file_name: str,
    mime_type: str,
    provider: ImageDescriber | None = None,
    chunk_size: int | None = None,
    chunk_overlap: int | None = None,
) -> FileRecord:
    """Extract, chunk, embed and store an uploaded file, then delete the upload.

    Chunks whose embedding fails are stored with an empty embedding and are
    skipped at retrieval time.
    """
    t0 = time.perf_counter()
    try:
        validate_upload(mime_type, path.stat().st_size)
        text = extract_text(path, mime_type, provider)
        pieces = chunk_text(
            text,
            max_chunk_size=chunk_size or config.CHUNK_SIZE,
            overlap=chunk_overlap if chunk_overlap is not None else config.CHUNK_OVERLAP,
        )
        chunks = embedder.embed_chunks(pieces, source_label=file_name)
        record = FileRecord(
            id=None,
            user_id=user_id,
            file_name=file_name,
            file_type=mime_type,
            extracted_text=text,
            chunks=chunks,
        )
        record.id = store.insert_file(record)
    finally:
        cleanup_file(path)

    logger.info(
        "Ingested %s for user %s: %d chars, %d chunk(s), %.2fs",
        file_name, user_id, len(text), len(chunks), time.perf_counter() - t0,
    )
    return record
