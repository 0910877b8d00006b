"""SQLite storage for conversations, messages, summaries, and uploaded files."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

DEFAULT_TITLE = "New Chat"


@dataclass(frozen=True)
class Chunk:
    """A bounded fragment of source text. Empty embedding means embedding failed."""

    text: str
    embedding: list[float] = field(default_factory=list)
    source_label: str | None = None


@dataclass(frozen=True)
class FileRef:
    file_id: int | None
    file_name: str


@dataclass(frozen=True)
class Message:
    sender: str  # "user" or "ai"
    content: str
    embedding: list[float] = field(default_factory=list)
    file_refs: list[FileRef] = field(default_factory=list)


@dataclass(frozen=True)
class Summary:
    text: str
    embedding: list[float]
    range_start: int
    range_end: int


@dataclass
class Conversation:
    id: int
    user_id: str
    title: str
    messages: list[Message] = field(default_factory=list)
    summaries: list[Summary] = field(default_factory=list)


@dataclass
class FileRecord:
    id: int | None
    user_id: str
    file_name: str
    file_type: str
    extracted_text: str
    chunks: list[Chunk] = field(default_factory=list)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dump_vector(vec: list[float]) -> str:
    return json.dumps(list(vec))


def _load_vector(raw: str | None) -> list[float]:
    if not raw:
        return []
    try:
        return [float(v) for v in json.loads(raw)]
    except (json.JSONDecodeError, TypeError, ValueError):
        return []


class SqliteStore:
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

    def init_db(self) -> None:
        """Create all tables and indexes."""
        cur = self._conn.cursor()
        cur.executescript(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                id INTEGER PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_conversations_user ON conversations(user_id);

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY,
                conversation_id INTEGER NOT NULL,
                position INTEGER NOT NULL,
                sender TEXT NOT NULL,
                content TEXT NOT NULL,
                embedding TEXT,
                file_refs TEXT,
                created_at TEXT NOT NULL,
                UNIQUE(conversation_id, position),
                FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id);

            CREATE TABLE IF NOT EXISTS summaries (
                id INTEGER PRIMARY KEY,
                conversation_id INTEGER NOT NULL,
                text TEXT NOT NULL,
                embedding TEXT,
                range_start INTEGER NOT NULL,
                range_end INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_summaries_conversation ON summaries(conversation_id);

            CREATE TABLE IF NOT EXISTS files (
                id INTEGER PRIMARY KEY,
                user_id TEXT NOT NULL,
                file_name TEXT NOT NULL,
                file_type TEXT NOT NULL,
                extracted_text TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_files_user ON files(user_id);

            CREATE TABLE IF NOT EXISTS file_chunks (
                id INTEGER PRIMARY KEY,
                file_id INTEGER NOT NULL,
                position INTEGER NOT NULL,
                text TEXT NOT NULL,
                embedding TEXT,
                FOREIGN KEY (file_id) REFERENCES files(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_file_chunks_file ON file_chunks(file_id);
            """
        )
        self._conn.commit()

    # ── Conversations ──

    def create_conversation(self, user_id: str, title: str = DEFAULT_TITLE) -> int:
        """Insert an empty conversation. Returns its id."""
        now = _now()
        cur = self._conn.execute(
            "INSERT INTO conversations (user_id, title, created_at, updated_at) VALUES (?, ?, ?, ?)",
            (user_id, title, now, now),
        )
        self._conn.commit()
        return cur.lastrowid  # type: ignore[return-value]

    def get_conversation(self, conversation_id: int, user_id: str) -> Conversation | None:
        """Load a conversation with its messages and summaries, or None if not owned."""
        cur = self._conn.execute(
            "SELECT id, user_id, title FROM conversations WHERE id = ? AND user_id = ?",
            (conversation_id, user_id),
        )
        row = cur.fetchone()
        if not row:
            return None

        cur = self._conn.execute(
            "SELECT sender, content, embedding, file_refs FROM messages "
            "WHERE conversation_id = ? ORDER BY position",
            (conversation_id,),
        )
        messages = [
            Message(
                sender=r["sender"],
                content=r["content"],
                embedding=_load_vector(r["embedding"]),
                file_refs=[
                    FileRef(file_id=ref.get("file_id"), file_name=ref.get("file_name", ""))
                    for ref in json.loads(r["file_refs"] or "[]")
                ],
            )
            for r in cur.fetchall()
        ]

        cur = self._conn.execute(
            "SELECT text, embedding, range_start, range_end FROM summaries "
            "WHERE conversation_id = ? ORDER BY id",
            (conversation_id,),
        )
        summaries = [
            Summary(
                text=r["text"],
                embedding=_load_vector(r["embedding"]),
                range_start=r["range_start"],
                range_end=r["range_end"],
            )
            for r in cur.fetchall()
        ]

        return Conversation(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            messages=messages,
            summaries=summaries,
        )

    def list_conversations(self, user_id: str) -> list[dict]:
        """List a user's conversations, most recently updated first."""
        cur = self._conn.execute(
            """SELECT c.id, c.title, c.created_at, c.updated_at,
                      (SELECT COUNT(*) FROM messages m WHERE m.conversation_id = c.id)
                          AS message_count
               FROM conversations c WHERE c.user_id = ?
               ORDER BY c.updated_at DESC, c.id DESC""",
            (user_id,),
        )
        return [dict(r) for r in cur.fetchall()]

    def delete_conversation(self, conversation_id: int, user_id: str) -> bool:
        """Delete a conversation and everything it owns. Returns False if not found."""
        cur = self._conn.execute(
            "DELETE FROM conversations WHERE id = ? AND user_id = ?",
            (conversation_id, user_id),
        )
        self._conn.commit()
        return cur.rowcount > 0

    def append_message(self, conversation_id: int, message: Message) -> int:
        """Append a message at the end of the conversation. Returns its position."""
        cur = self._conn.execute(
            "SELECT COALESCE(MAX(position) + 1, 0) FROM messages WHERE conversation_id = ?",
            (conversation_id,),
        )
        position = cur.fetchone()[0]
        refs = [{"file_id": r.file_id, "file_name": r.file_name} for r in message.file_refs]
        now = _now()
        self._conn.execute(
            """INSERT INTO messages
               (conversation_id, position, sender, content, embedding, file_refs, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (conversation_id, position, message.sender, message.content,
             _dump_vector(message.embedding), json.dumps(refs), now),
        )
        self._touch(conversation_id, now)
        self._conn.commit()
        return position

    def append_summary(self, conversation_id: int, summary: Summary) -> None:
        now = _now()
        self._conn.execute(
            """INSERT INTO summaries
               (conversation_id, text, embedding, range_start, range_end, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (conversation_id, summary.text, _dump_vector(summary.embedding),
             summary.range_start, summary.range_end, now),
        )
        self._touch(conversation_id, now)
        self._conn.commit()

    def set_title(self, conversation_id: int, title: str) -> None:
        now = _now()
        self._conn.execute(
            "UPDATE conversations SET title = ?, updated_at = ? WHERE id = ?",
            (title, now, conversation_id),
        )
        self._conn.commit()

    def _touch(self, conversation_id: int, now: str) -> None:
        self._conn.execute(
            "UPDATE conversations SET updated_at = ? WHERE id = ?",
            (now, conversation_id),
        )

    # ── Files ──

    def insert_file(self, record: FileRecord) -> int:
        """Insert a file record and its chunks. Returns the new file id."""
        cur = self._conn.execute(
            """INSERT INTO files (user_id, file_name, file_type, extracted_text, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (record.user_id, record.file_name, record.file_type,
             record.extracted_text, _now()),
        )
        file_id = cur.lastrowid
        self._conn.executemany(
            "INSERT INTO file_chunks (file_id, position, text, embedding) VALUES (?, ?, ?, ?)",
            [
                (file_id, i, c.text, _dump_vector(c.embedding))
                for i, c in enumerate(record.chunks)
            ],
        )
        self._conn.commit()
        return file_id  # type: ignore[return-value]

    def get_files(self, file_ids: list[int], user_id: str) -> list[FileRecord]:
        """Load the caller's files among ``file_ids``, with chunks, in id order.

        Ids that don't exist or belong to another user are silently skipped.
        """
        if not file_ids:
            return []
        placeholders = ",".join("?" for _ in file_ids)
        cur = self._conn.execute(
            f"SELECT id, user_id, file_name, file_type, extracted_text FROM files "
            f"WHERE id IN ({placeholders}) AND user_id = ? ORDER BY id",
            (*file_ids, user_id),
        )
        records = []
        for row in cur.fetchall():
            chunk_rows = self._conn.execute(
                "SELECT text, embedding FROM file_chunks WHERE file_id = ? ORDER BY position",
                (row["id"],),
            ).fetchall()
            records.append(FileRecord(
                id=row["id"],
                user_id=row["user_id"],
                file_name=row["file_name"],
                file_type=row["file_type"],
                extracted_text=row["extracted_text"],
                chunks=[
                    Chunk(
                        text=c["text"],
                        embedding=_load_vector(c["embedding"]),
                        source_label=row["file_name"],
                    )
                    for c in chunk_rows
                ],
            ))
        return records

    def list_files(self, user_id: str) -> list[dict]:
        """List a user's files (without text or chunks), newest first."""
        cur = self._conn.execute(
            "SELECT id, file_name, file_type, created_at FROM files "
            "WHERE user_id = ? ORDER BY created_at DESC, id DESC",
            (user_id,),
        )
        return [dict(r) for r in cur.fetchall()]

    def delete_file(self, file_id: int, user_id: str) -> bool:
        """Delete a file and its chunks. Returns False if not found."""
        cur = self._conn.execute(
            "DELETE FROM files WHERE id = ? AND user_id = ?",
            (file_id, user_id),
        )
        self._conn.commit()
        return cur.rowcount > 0

    def count(self, table: str) -> int:
        """Return the row count of a table."""
        cur = self._conn.execute(f"SELECT COUNT(*) FROM {table}")
        return cur.fetchone()[0]

    def close(self) -> None:
        self._conn.close()
