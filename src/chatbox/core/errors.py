"""
Exceptions raised by the chat engine.
"""

from typing import Any, Optional


class ChatboxError(Exception):
    """Base exception for chatbox."""

    def __init__(self, message: str, details: Optional[Any] = None):
        self.message = message
        self.details = details
        super().__init__(message)


class StorageError(ChatboxError):
    """A write to the durable store failed; in-memory state is still valid."""

    pass


class SessionNotFoundError(ChatboxError, KeyError):
    """Session not found."""

    def __str__(self) -> str:
        return self.message


class SettingsError(ChatboxError, ValueError):
    """Chat settings outside their valid range."""

    pass


class PromptTemplateError(ChatboxError, ValueError):
    """A user prompt template was rejected (duplicate name, library full)."""

    pass


class PromptNotFoundError(ChatboxError, KeyError):
    """Prompt template not found, or it is a read-only system template."""

    def __str__(self) -> str:
        return self.message
