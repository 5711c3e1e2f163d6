"""Error kinds raised by the conversation engine.

``ValidationError`` is raised before any I/O and never reaches the message
log. ``NetworkError``, ``ProtocolError`` and ``RemoteError`` end a request and
are turned into a single system message unless the request was cancelled.
``PersistenceWarning`` is logged by the persistence bridge and never surfaced.
"""

from __future__ import annotations


class ConversationError(Exception):
    """Base class for all conversation engine errors."""


class ValidationError(ConversationError):
    """A local precondition failed (empty command, agent busy, approval pending)."""


class NetworkError(ConversationError):
    """The transport failed before or while reading a response."""


class ProtocolError(ConversationError):
    """The response stream was malformed, empty or ended before completion."""


class RemoteError(ConversationError):
    """The remote agent reported an error, either as a frame or an HTTP status."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PersistenceWarning(ConversationError):
    """A durable-store write failed. The in-memory log stays authoritative."""
