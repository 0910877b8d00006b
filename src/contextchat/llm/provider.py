"""LLM provider interface and Gemini implementation."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Iterator, Protocol

from google import genai
from google.genai import types

from contextchat import config

logger = logging.getLogger(__name__)

# Sampling settings for conversational replies
CHAT_TEMPERATURE = 0.7
CHAT_TOP_K = 40
CHAT_TOP_P = 0.95
CHAT_MAX_OUTPUT_TOKENS = 8192


@dataclass(frozen=True)
class Turn:
    """One prior conversational turn. Role is "user" or "model"."""

    role: str
    text: str


class EmbeddingProvider(Protocol):
    """Protocol for embedding providers."""

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed a list of texts, returning a list of float vectors."""
        ...


class GenerationProvider(Protocol):
    """Protocol for single-shot text generation providers."""

    def generate(
        self,
        prompt: str,
        system: str | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> str:
        """Generate text from a prompt, returning the response string."""
        ...


class StreamingProvider(Protocol):
    """Protocol for providers that stream replies as ordered text increments."""

    def generate_stream(self, prompt: str, history: list[Turn]) -> Iterator[str]:
        """Yield text increments for a prompt sent after the given history."""
        ...

    def generate_image_stream(
        self, prompt: str, image: bytes, mime_type: str,
    ) -> Iterator[str]:
        """Yield text increments for a prompt accompanied by an inline image."""
        ...


class ChatProvider(GenerationProvider, StreamingProvider, Protocol):
    """What a chat turn needs: single-shot calls for titles plus streaming replies."""


class ImageDescriber(Protocol):
    """Protocol for single-shot multimodal calls (image text extraction)."""

    def describe_image(self, prompt: str, image: bytes, mime_type: str) -> str:
        ...


class GeminiProvider:
    """Gemini implementation of embedding, generation and streaming."""

    def __init__(
        self,
        api_key: str | None = None,
        embedding_model: str | None = None,
        embedding_dims: int | None = None,
        generation_model: str | None = None,
    ) -> None:
        self._client = genai.Client(api_key=api_key or config.GEMINI_API_KEY)
        self._embedding_model = embedding_model or config.EMBEDDING_MODEL
        self._embedding_dims = embedding_dims or config.EMBEDDING_DIMS
        self._generation_model = generation_model or config.GEMINI_MODEL

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts using Gemini embedding API.

        Args:
            texts: List of strings to embed. Max 250 per call.

        Returns:
            List of float vectors, one per input text.
        """
        total_chars = sum(len(t) for t in texts)
        logger.debug("Embedding %d text(s) (%d chars) via %s", len(texts), total_chars, self._embedding_model)
        t0 = time.perf_counter()
        result = self._client.models.embed_content(
            model=self._embedding_model,
            contents=texts,
            config=types.EmbedContentConfig(
                output_dimensionality=self._embedding_dims,
            ),
        )
        logger.debug("Embed complete: %.0fms", (time.perf_counter() - t0) * 1000)
        return [e.values for e in result.embeddings]

    def generate(
        self,
        prompt: str,
        system: str | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> str:
        """Generate text using Gemini.

        Args:
            prompt: The user prompt.
            system: Optional system instruction.
            temperature: Optional sampling temperature.
            max_output_tokens: Optional cap on reply length.

        Returns:
            The generated text response.
        """
        logger.debug("Generate via %s (%d char prompt)", self._generation_model, len(prompt))
        t0 = time.perf_counter()
        gen_config = None
        if system or temperature is not None or max_output_tokens is not None:
            gen_config = types.GenerateContentConfig(
                system_instruction=system,
                temperature=temperature,
                max_output_tokens=max_output_tokens,
            )
        response = self._client.models.generate_content(
            model=self._generation_model,
            contents=prompt,
            config=gen_config,
        )
        logger.debug("Generate complete: %d chars, %.0fms", len(response.text or ""), (time.perf_counter() - t0) * 1000)
        return response.text or ""

    def generate_stream(self, prompt: str, history: list[Turn]) -> Iterator[str]:
        """Stream a chat reply to ``prompt`` given the prior turns.

        Yields non-empty text increments in the order Gemini produces them.
        """
        contents = [
            types.Content(role=turn.role, parts=[types.Part.from_text(text=turn.text)])
            for turn in history
        ]
        contents.append(
            types.Content(role="user", parts=[types.Part.from_text(text=prompt)])
        )
        logger.debug(
            "Stream via %s (%d turn(s) history, %d char prompt)",
            self._generation_model, len(history), len(prompt),
        )
        yield from self._stream(contents)

    def generate_image_stream(
        self, prompt: str, image: bytes, mime_type: str,
    ) -> Iterator[str]:
        """Stream a reply to a text prompt plus one inline image."""
        contents = [
            types.Content(
                role="user",
                parts=[
                    types.Part.from_text(text=prompt),
                    types.Part.from_bytes(data=image, mime_type=mime_type),
                ],
            )
        ]
        logger.debug(
            "Image stream via %s (%d byte %s image)",
            self._generation_model, len(image), mime_type,
        )
        yield from self._stream(contents)

    def describe_image(self, prompt: str, image: bytes, mime_type: str) -> str:
        """Single-shot multimodal call, used for OCR during file ingestion."""
        t0 = time.perf_counter()
        response = self._client.models.generate_content(
            model=self._generation_model,
            contents=[
                types.Part.from_text(text=prompt),
                types.Part.from_bytes(data=image, mime_type=mime_type),
            ],
        )
        logger.debug("Describe image complete: %.0fms", (time.perf_counter() - t0) * 1000)
        return response.text or ""

    def _stream(self, contents: list[types.Content]) -> Iterator[str]:
        t0 = time.perf_counter()
        total = 0
        stream = self._client.models.generate_content_stream(
            model=self._generation_model,
            contents=contents,
            config=types.GenerateContentConfig(
                temperature=CHAT_TEMPERATURE,
                top_k=CHAT_TOP_K,
                top_p=CHAT_TOP_P,
                max_output_tokens=CHAT_MAX_OUTPUT_TOKENS,
            ),
        )
        for chunk in stream:
            text = chunk.text
            if text:
                total += len(text)
                yield text
        logger.debug("Stream complete: %d chars, %.0fms", total, (time.perf_counter() - t0) * 1000)
