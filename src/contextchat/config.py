"""Configuration loaded from environment variables."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


# Paths
DATA_DIR: Path = Path(os.getenv("DATA_DIR", "./data"))
UPLOAD_DIR: Path = Path(os.getenv("UPLOAD_DIR", "./uploads"))

# API keys
GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")

# Models
GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
EMBEDDING_MODEL: str = os.getenv("EMBEDDING_MODEL", "gemini-embedding-001")
EMBEDDING_DIMS: int = int(os.getenv("EMBEDDING_DIMS", "768"))

# Server
HOST: str = os.getenv("HOST", "0.0.0.0")
PORT: int = int(os.getenv("PORT", "8000"))
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# Chunking
CHUNK_SIZE: int = int(os.getenv("CHUNK_SIZE", "1000"))
CHUNK_OVERLAP: int = int(os.getenv("CHUNK_OVERLAP", "100"))

# Embedding cache and retry policy
EMBED_CACHE_SIZE: int = int(os.getenv("EMBED_CACHE_SIZE", "1000"))
EMBED_CACHE_KEY_CHARS: int = int(os.getenv("EMBED_CACHE_KEY_CHARS", "100"))
EMBED_MAX_RETRIES: int = int(os.getenv("EMBED_MAX_RETRIES", "2"))
EMBED_RETRY_DELAY: float = float(os.getenv("EMBED_RETRY_DELAY", "0.5"))

# Uploads
MAX_UPLOAD_BYTES: int = int(os.getenv("MAX_UPLOAD_BYTES", str(5 * 1024 * 1024)))

# Derived paths
SQLITE_PATH: Path = DATA_DIR / "contextchat.db"
