"""Split extracted document text into overlapping, sentence-aligned chunks."""

from __future__ import annotations

import re

# Boundary after ., ! or ? followed by whitespace; the punctuation stays with its sentence
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


def split_sentences(text: str) -> list[str]:
    return _SENTENCE_BOUNDARY.split(text)


def chunk_text(text: str, max_chunk_size: int = 1000, overlap: int = 100) -> list[str]:
    """Split text into chunks of roughly ``max_chunk_size`` characters.

    Text that already fits is returned whole as a single chunk (even if empty).
    Longer text is accumulated sentence by sentence. When the next sentence
    would overflow the current chunk, the chunk is emitted and a new one starts
    with the last ``overlap`` characters of the emitted chunk, followed
    directly by that sentence.

    A single sentence longer than ``max_chunk_size`` is never cut, so chunks
    can exceed the limit.
    """
    if len(text) <= max_chunk_size:
        return [text]

    chunks: list[str] = []
    current = ""

    for sentence in split_sentences(text):
        if current and len(current) + len(sentence) > max_chunk_size:
            chunks.append(current)
            tail = current[-overlap:] if overlap > 0 else ""
            current = tail + sentence
        elif current:
            current += " " + sentence
        else:
            current = sentence

    if current:
        chunks.append(current)

    return chunks
