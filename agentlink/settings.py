"""Centralized environment configuration for agentlink.

All environment variables are read through this module using the AGENTLINK_
prefix for consistency. Values are read on every call so that tests and the
CLI can override them through the environment.

Usage:
    from agentlink.settings import settings

    url = settings.agent_url()
"""

from __future__ import annotations

import os

DEFAULT_APPROVAL_TOOLS = ("Write", "Edit", "MultiEdit", "NotebookEdit", "Bash")

DEFAULT_CONTINUATION_DIRECTIVE = (
    "The requested tool use was approved by the operator. "
    "Continue with the approved action and report the outcome."
)


def _get(name: str, default: str = "") -> str:
    """Get an environment variable value."""
    return os.environ.get(name, "").strip() or default


def _get_bool(name: str, default: bool = False) -> bool:
    """Get a boolean environment variable."""
    value = os.environ.get(name, "").strip()
    if not value:
        return default
    return value.lower() in ("1", "true", "yes")


def _get_int(name: str, default: int = 0) -> int:
    """Get an integer environment variable."""
    value = os.environ.get(name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(name: str, default: float = 0.0) -> float:
    """Get a float environment variable."""
    value = os.environ.get(name, "").strip()
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_list(name: str, default: tuple[str, ...] = ()) -> list[str]:
    """Get a comma-separated list environment variable."""
    value = os.environ.get(name, "").strip()
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings:
    """Centralized settings for agentlink.

    Environment variables use the AGENTLINK_ prefix.
    """

    # -------------------------------------------------------------------------
    # Remote agent
    # -------------------------------------------------------------------------

    @staticmethod
    def agent_url() -> str:
        """Base URL of the agent server.

        Env: AGENTLINK_AGENT_URL (default: http://localhost:3000)
        """
        return _get("AGENTLINK_AGENT_URL", default="http://localhost:3000").rstrip("/")

    @staticmethod
    def workspace_id() -> str:
        """Workspace the agents belong to.

        Env: AGENTLINK_WORKSPACE_ID (default: default)
        """
        return _get("AGENTLINK_WORKSPACE_ID", default="default")

    @staticmethod
    def model() -> str:
        """Model name sent with every command.

        Env: AGENTLINK_MODEL (default: claude)
        """
        return _get("AGENTLINK_MODEL", default="claude")

    @staticmethod
    def request_timeout_seconds() -> float:
        """Timeout for non-streaming requests. Streams have no read timeout.

        Env: AGENTLINK_REQUEST_TIMEOUT_SECONDS (default: 30)
        """
        return _get_float("AGENTLINK_REQUEST_TIMEOUT_SECONDS", default=30.0)

    # -------------------------------------------------------------------------
    # Tool approval
    # -------------------------------------------------------------------------

    @staticmethod
    def approval_tools() -> list[str]:
        """Tools that require operator approval before the agent may continue.

        Env: AGENTLINK_APPROVAL_TOOLS (comma-separated,
        default: Write,Edit,MultiEdit,NotebookEdit,Bash)
        """
        return _get_list("AGENTLINK_APPROVAL_TOOLS", default=DEFAULT_APPROVAL_TOOLS)

    @staticmethod
    def continuation_directive() -> str:
        """Command sent to the agent after the operator approves a tool use.

        Env: AGENTLINK_CONTINUATION_DIRECTIVE
        """
        return _get("AGENTLINK_CONTINUATION_DIRECTIVE", default=DEFAULT_CONTINUATION_DIRECTIVE)

    @staticmethod
    def auto_continue() -> bool:
        """Send the continuation directive automatically after an approval.

        Env: AGENTLINK_AUTO_CONTINUE (default: true)
        """
        return _get_bool("AGENTLINK_AUTO_CONTINUE", default=True)

    # -------------------------------------------------------------------------
    # Persistence and continuity
    # -------------------------------------------------------------------------

    @staticmethod
    def persist_every_chunks() -> int:
        """Persist the streaming message after this many chunks.

        Env: AGENTLINK_PERSIST_EVERY_CHUNKS (default: 5)
        """
        return _get_int("AGENTLINK_PERSIST_EVERY_CHUNKS", default=5)

    @staticmethod
    def persist_every_seconds() -> float:
        """Persist the streaming message when this much time has passed.

        Env: AGENTLINK_PERSIST_EVERY_SECONDS (default: 2.0)
        """
        return _get_float("AGENTLINK_PERSIST_EVERY_SECONDS", default=2.0)

    @staticmethod
    def inflight_window_seconds() -> int:
        """How recent an unanswered command must be to count as still running.

        Env: AGENTLINK_INFLIGHT_WINDOW_SECONDS (default: 180)
        """
        return _get_int("AGENTLINK_INFLIGHT_WINDOW_SECONDS", default=180)

    @staticmethod
    def reattach_sessions() -> bool:
        """Attempt a session restore on reload when a session id is known.

        Env: AGENTLINK_REATTACH_SESSIONS (default: true)
        """
        return _get_bool("AGENTLINK_REATTACH_SESSIONS", default=True)

    # -------------------------------------------------------------------------
    # Conversation store service
    # -------------------------------------------------------------------------

    @staticmethod
    def host() -> str:
        """Host to bind the conversation store service to.

        Env: AGENTLINK_HOST (default: 127.0.0.1)
        """
        return _get("AGENTLINK_HOST", default="127.0.0.1")

    @staticmethod
    def port() -> int:
        """Port to bind the conversation store service to.

        Env: AGENTLINK_PORT (default: 8790)
        """
        return _get_int("AGENTLINK_PORT", default=8790)

    @staticmethod
    def data_dir() -> str:
        """Directory for the conversation store database.

        Env: AGENTLINK_DATA_DIR (default: ~/.local/share/agentlink)
        """
        value = _get("AGENTLINK_DATA_DIR")
        if value:
            return os.path.abspath(value)

        from agentlink.config import data_dir_default

        return str(data_dir_default())

    @staticmethod
    def session_restore_max_age_hours() -> int:
        """Maximum age of a recorded session that may still be restored.

        Env: AGENTLINK_SESSION_RESTORE_MAX_AGE_HOURS (default: 24)
        """
        return _get_int("AGENTLINK_SESSION_RESTORE_MAX_AGE_HOURS", default=24)

    # -------------------------------------------------------------------------
    # Logging Settings
    # -------------------------------------------------------------------------

    @staticmethod
    def log_level() -> str:
        """Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).

        Env: AGENTLINK_LOG_LEVEL (default: INFO)
        """
        return _get("AGENTLINK_LOG_LEVEL", default="INFO").upper()

    @staticmethod
    def log_format() -> str:
        """Log format: "console" for dev-friendly, "json" for structured.

        Env: AGENTLINK_LOG_FORMAT (default: console)
        """
        return _get("AGENTLINK_LOG_FORMAT", default="console").lower()


# Singleton instance for convenient imports
settings = Settings()
