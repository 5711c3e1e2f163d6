"""Pydantic models for conversation messages and SQLModel tables for the store service."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field as PydanticField
from sqlmodel import Field, SQLModel


class Role(str, Enum):
    """Author of a conversation message."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Backend(str, Enum):
    """Completion tag carried by every persisted assistant snapshot."""
    STREAMING_LIVE = "streaming-live"
    STREAMING_COMPLETE = "streaming-complete"


class _OpenModel(BaseModel):
    """Metadata payloads keep unknown keys so they survive a round trip."""
    model_config = ConfigDict(extra="allow")


class Usage(_OpenModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int | None = None


class ToolUseEvent(_OpenModel):
    id: str | None = None
    name: str = ""
    input: dict[str, Any] | None = None
    operation_summary: str | None = None


class ToolResultEvent(_OpenModel):
    tool_use_id: str | None = None
    is_error: bool = False
    content: Any = None
    content_preview: str | None = None


class ThinkingEvent(_OpenModel):
    content: str | None = None


class ResultInfo(_OpenModel):
    duration_ms: float = 0
    total_cost_usd: float | None = None
    num_turns: int | None = None


class MessageMetadata(_OpenModel):
    """Out-of-band data collected from metadata sentinels of one assistant reply."""
    model: str | None = None
    session_id: str | None = None
    tools: list[str] = PydanticField(default_factory=list)
    usage: Usage | None = None
    tool_uses: list[ToolUseEvent] = PydanticField(default_factory=list)
    tool_results: list[ToolResultEvent] = PydanticField(default_factory=list)
    thinking: list[ThinkingEvent] = PydanticField(default_factory=list)
    result: ResultInfo | None = None
    # Free-form on purpose: older stores wrote values like "streaming".
    backend: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.backend != Backend.STREAMING_LIVE.value


class Message(BaseModel):
    """One entry of the conversation log."""
    id: str
    timestamp: str
    role: Role
    content: str = ""
    metadata: MessageMetadata | None = None

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class PendingApproval(BaseModel):
    """A tool use waiting for the operator's decision."""
    tool_name: str
    operation: str
    message_id: str
    tool_use_id: str | None = None
    requires_approval: Literal[True] = True


class ErrorDetail(BaseModel):
    """Structured error payload for API responses."""
    code: str
    message: str
    details: Any = None


class ErrorResponse(BaseModel):
    """Envelope for API error responses."""
    error: ErrorDetail


# --- Database Tables (SQLModel with table=True) ---


class StoredMessage(SQLModel, table=True):
    """Conversation message row, keyed by (workspace, agent, message id)."""
    __tablename__ = "messages"

    workspace_id: str = Field(primary_key=True)
    agent_id: str = Field(primary_key=True)
    id: str = Field(primary_key=True)
    seq: int = Field(index=True)
    role: str
    content: str = ""
    timestamp: str
    metadata_json: Optional[str] = None


class AgentRecord(SQLModel, table=True):
    """Per-agent bookkeeping: last remote session and approved tools."""
    __tablename__ = "agents"

    workspace_id: str = Field(primary_key=True)
    agent_id: str = Field(primary_key=True)
    last_session_id: Optional[str] = None
    last_session_at: Optional[str] = None
    allowed_tools_json: str = "[]"
    last_activity_at: Optional[str] = None
