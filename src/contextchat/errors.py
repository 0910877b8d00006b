"""Error taxonomy shared by the chat pipeline and the HTTP layer."""

from __future__ import annotations


class ContextChatError(Exception):
    """Base class for all contextchat failures."""


class NotFound(ContextChatError):
    """Raised when a conversation or file is absent or not owned by the caller."""


class EmbeddingFailure(ContextChatError):
    """Raised when an embedding call still fails after all retries."""


class GenerationFailure(ContextChatError):
    """Raised when the upstream generation call fails."""


class ValidationFailure(ContextChatError):
    """Raised when required input is missing or malformed."""
