"""Pydantic request/response models for API endpoints."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from agentlink.models import Message, MessageMetadata, Role


class _WireModel(BaseModel):
    """Wire fields are camelCase; Python code may use either name."""
    model_config = ConfigDict(populate_by_name=True)


# --- Request Models ---


class SaveMessageRequest(_WireModel):
    """Request body for writing one message to the conversation log."""

    message: str = ""
    role: Role = Role.USER
    message_id: str | None = Field(None, alias="messageId")
    timestamp: str | None = None
    metadata: MessageMetadata | None = None
    save_only: bool = Field(False, alias="saveOnly")


class ToolApprovalRequest(_WireModel):
    """Request body for recording a tool approval decision."""

    message_id: str | None = Field(None, alias="messageId")
    tool_name: str = Field(..., alias="toolName", min_length=1)
    approved: bool


class SessionRestoreRequest(_WireModel):
    """Request body for reattaching to a previous agent session."""

    session_id: str = Field(..., alias="sessionId", min_length=1)
    model: str | None = None


# --- Response Models ---


class HealthResponse(BaseModel):
    status: str = "ok"


class ConversationResponse(BaseModel):
    success: bool = True
    messages: list[Message]
    agent_id: str
    workspace_id: str


class SaveMessageResponse(_WireModel):
    success: bool = True
    message_id: str = Field(..., alias="messageId")
    created: bool


class ToolApprovalResponse(_WireModel):
    success: bool = True
    tool_name: str = Field(..., alias="toolName")
    approved: bool
    allowed_tools: list[str] = Field(default_factory=list, alias="allowedTools")


class SessionRestoreResponse(_WireModel):
    success: bool = True
    restored: bool
    session_id: str = Field(..., alias="sessionId")
    reason: str
