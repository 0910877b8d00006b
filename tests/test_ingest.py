"""Tests for upload validation, text extraction and file ingestion."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from pypdf import PdfWriter

from contextchat.errors import ValidationFailure
from contextchat.indexer.embedder import Embedder, EmbeddingCache
from contextchat.indexer.ingest import OCR_PROMPT, extract_text, ingest_file, validate_upload
from contextchat.storage.sqlite_store import SqliteStore
from tests.helpers import _fake_embed

LONG_TEXT = " ".join(f"Paragraph sentence number {i} talks about deployments." for i in range(60))


class TestValidateUpload:
    @pytest.mark.parametrize(
        "mime", ["application/pdf", "image/jpeg", "image/png", "image/webp", "text/plain"],
    )
    def test_allowed_types(self, mime):
        validate_upload(mime, 100)

    @pytest.mark.parametrize("mime", ["application/zip", "text/html", "image/gif", None])
    def test_rejected_types(self, mime):
        with pytest.raises(ValidationFailure, match="Invalid file type"):
            validate_upload(mime, 100)

    def test_size_limit(self):
        with patch("contextchat.config.MAX_UPLOAD_BYTES", 1024):
            validate_upload("text/plain", 1024)
            with pytest.raises(ValidationFailure, match="too large"):
                validate_upload("text/plain", 1025)


class TestExtractText:
    def test_plain_text(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("Hello there. General Kenobi.", encoding="utf-8")
        assert extract_text(path, "text/plain") == "Hello there. General Kenobi."

    def test_image_uses_provider(self, tmp_path, provider):
        path = tmp_path / "scan.png"
        path.write_bytes(b"\x89PNG fake")

        assert extract_text(path, "image/png", provider) == "Text read from the image."
        provider.describe_image.assert_called_once_with(OCR_PROMPT, b"\x89PNG fake", "image/png")

    def test_image_without_provider(self, tmp_path):
        path = tmp_path / "scan.png"
        path.write_bytes(b"x")
        with pytest.raises(ValidationFailure):
            extract_text(path, "image/png")

    def test_blank_pdf(self, tmp_path):
        path = tmp_path / "blank.pdf"
        writer = PdfWriter()
        writer.add_blank_page(width=200, height=200)
        with open(path, "wb") as f:
            writer.write(f)

        assert extract_text(path, "application/pdf").strip() == ""


class TestIngestFile:
    def test_stores_chunks_and_deletes_upload(self, tmp_path, store: SqliteStore, embedder):
        path = tmp_path / "upload-1.txt"
        path.write_text(LONG_TEXT, encoding="utf-8")

        record = ingest_file(
            store, embedder, "alice", path, "deploys.txt", "text/plain", chunk_size=500,
        )

        assert not path.exists()
        assert record.id is not None
        assert len(record.chunks) > 1
        assert all(c.embedding for c in record.chunks)

        stored = store.get_files([record.id], "alice")[0]
        assert stored.file_name == "deploys.txt"
        assert stored.extracted_text == LONG_TEXT
        assert [c.text for c in stored.chunks] == [c.text for c in record.chunks]
        assert all(c.source_label == "deploys.txt" for c in stored.chunks)

    def test_image_upload_is_ocrd(self, tmp_path, store, embedder, provider):
        path = tmp_path / "upload-2.png"
        path.write_bytes(b"\x89PNG fake")

        record = ingest_file(store, embedder, "alice", path, "scan.png", "image/png", provider=provider)

        assert record.extracted_text == "Text read from the image."
        assert [c.text for c in record.chunks] == ["Text read from the image."]
        assert not path.exists()

    def test_failed_chunk_embedding_is_kept_empty(self, tmp_path, store):
        def selective_embed(texts):
            if "number 0 " in texts[0]:
                raise RuntimeError("500 INTERNAL")
            return _fake_embed(texts)

        provider = MagicMock()
        provider.embed = MagicMock(side_effect=selective_embed)
        embedder = Embedder(provider=provider, cache=EmbeddingCache(), retry_delay=0)
        path = tmp_path / "upload-3.txt"
        path.write_text(LONG_TEXT, encoding="utf-8")

        record = ingest_file(store, embedder, "alice", path, "d.txt", "text/plain", chunk_size=500)

        stored = store.get_files([record.id], "alice")[0]
        assert stored.chunks[0].embedding == []
        assert all(c.embedding for c in stored.chunks[1:])

    def test_invalid_type_still_deletes_upload(self, tmp_path, store, embedder):
        path = tmp_path / "upload-4.zip"
        path.write_bytes(b"PK")

        with pytest.raises(ValidationFailure):
            ingest_file(store, embedder, "alice", path, "a.zip", "application/zip")

        assert not path.exists()
        assert store.count("files") == 0

    def test_blank_pdf_is_stored(self, tmp_path, store, embedder):
        path = tmp_path / "upload-5.pdf"
        writer = PdfWriter()
        writer.add_blank_page(width=200, height=200)
        with open(path, "wb") as f:
            writer.write(f)

        record = ingest_file(store, embedder, "alice", path, "blank.pdf", "application/pdf")

        assert record.id is not None
        assert record.extracted_text.strip() == ""
        assert store.list_files("alice")[0]["file_name"] == "blank.pdf"
