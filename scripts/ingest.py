#!/usr/bin/env python3
"""CLI: Ingest a local PDF, image or text file into a user's file library."""

from __future__ import annotations

import argparse
import mimetypes
import shutil
import sys
import tempfile
import time
from pathlib import Path

# Ensure the package is importable when running as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from contextchat import config
from contextchat.errors import ContextChatError
from contextchat.indexer.embedder import Embedder
from contextchat.indexer.ingest import ingest_file
from contextchat.llm.provider import GeminiProvider
from contextchat.storage.sqlite_store import SqliteStore


def main() -> None:
    parser = argparse.ArgumentParser(description="Ingest a file for document-grounded chat")
    parser.add_argument("path", type=Path, help="File to ingest (PDF, JPG, PNG, WEBP or TXT)")
    parser.add_argument("--user", required=True, help="Owner user id")
    parser.add_argument(
        "--mime-type",
        type=str,
        default=None,
        help="Override the MIME type guessed from the file extension",
    )
    args = parser.parse_args()

    if not args.path.is_file():
        print(f"Error: {args.path} is not a file.", file=sys.stderr)
        sys.exit(1)
    if not config.GEMINI_API_KEY:
        print("Error: GEMINI_API_KEY is not set.", file=sys.stderr)
        sys.exit(1)

    mime_type = args.mime_type or mimetypes.guess_type(args.path.name)[0] or ""

    store = SqliteStore(config.SQLITE_PATH)
    store.init_db()
    provider = GeminiProvider()
    embedder = Embedder(provider=provider)

    # Ingestion deletes its input, so work on a copy
    with tempfile.TemporaryDirectory() as tmp:
        work_path = Path(tmp) / args.path.name
        shutil.copy2(args.path, work_path)

        print(f"Ingesting {args.path.name} ({mime_type or 'unknown type'}) for user {args.user}...")
        t0 = time.perf_counter()
        try:
            record = ingest_file(
                store, embedder, args.user, work_path,
                file_name=args.path.name, mime_type=mime_type, provider=provider,
            )
        except ContextChatError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)

    embedded = sum(1 for c in record.chunks if c.embedding)
    print(
        f"Stored file id={record.id}: {len(record.chunks)} chunk(s), "
        f"{embedded} embedded, {len(record.extracted_text)} chars "
        f"({time.perf_counter() - t0:.1f}s)"
    )
    store.close()


if __name__ == "__main__":
    main()
