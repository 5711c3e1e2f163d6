"""Conversation log, tool approval and session restore endpoints."""

from __future__ import annotations

import structlog
from fastapi import APIRouter

from agentlink.api.schemas import (
    ConversationResponse,
    SaveMessageRequest,
    SaveMessageResponse,
    SessionRestoreRequest,
    SessionRestoreResponse,
    ToolApprovalRequest,
    ToolApprovalResponse,
)
from agentlink.messages import new_message_id, utc_now_iso
from agentlink.middleware import raise_http_error
from agentlink.models import Message
from agentlink.store import store

router = APIRouter(prefix="/workspaces/{workspace_id}/agents/{agent_id}", tags=["conversation"])
logger = structlog.get_logger(__name__)


@router.get(
    "/conversation",
    response_model=ConversationResponse,
    response_model_exclude_none=True,
)
async def get_conversation(workspace_id: str, agent_id: str) -> ConversationResponse:
    """Return the agent's full message log in insertion order."""
    messages = store.list_messages(workspace_id, agent_id)
    logger.info("Listed conversation", count=len(messages))
    return ConversationResponse(messages=messages, agent_id=agent_id, workspace_id=workspace_id)


@router.post("/conversation", response_model=SaveMessageResponse)
async def save_message(
    workspace_id: str, agent_id: str, payload: SaveMessageRequest
) -> SaveMessageResponse:
    """Upsert one message. Only persistence writes (``saveOnly``) are accepted."""
    if not payload.save_only:
        raise_http_error(
            "UNSUPPORTED",
            "Only saveOnly writes are accepted; commands go to the agent server",
            400,
        )
    message = Message(
        id=payload.message_id or new_message_id(),
        timestamp=payload.timestamp or utc_now_iso(),
        role=payload.role,
        content=payload.message,
        metadata=payload.metadata,
    )
    created = store.save_message(workspace_id, agent_id, message)
    logger.debug(
        "Message saved",
        message_id=message.id,
        role=message.role.value,
        created=created,
        backend=message.metadata.backend if message.metadata else None,
    )
    return SaveMessageResponse(message_id=message.id, created=created)


@router.post("/tool-approval", response_model=ToolApprovalResponse)
async def tool_approval(
    workspace_id: str, agent_id: str, payload: ToolApprovalRequest
) -> ToolApprovalResponse:
    """Record the operator's decision on a tool use."""
    allowed = store.record_tool_approval(
        workspace_id, agent_id, payload.tool_name, payload.approved
    )
    logger.info(
        "Tool approval recorded",
        tool_name=payload.tool_name,
        approved=payload.approved,
        message_id=payload.message_id,
    )
    return ToolApprovalResponse(
        tool_name=payload.tool_name,
        approved=payload.approved,
        allowed_tools=allowed,
    )


@router.post("/session-restore", response_model=SessionRestoreResponse)
async def session_restore(
    workspace_id: str, agent_id: str, payload: SessionRestoreRequest
) -> SessionRestoreResponse:
    """Report whether the agent's previous session can be resumed."""
    restored, reason = store.restore_session(workspace_id, agent_id, payload.session_id)
    logger.info(
        "Session restore requested",
        session_id=payload.session_id,
        restored=restored,
        reason=reason,
    )
    return SessionRestoreResponse(
        restored=restored,
        session_id=payload.session_id,
        reason=reason,
    )
