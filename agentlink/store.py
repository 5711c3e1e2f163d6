"""Durable conversation storage backed by SQLModel."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from threading import Lock

import structlog
from sqlalchemy import func as sa_func
from sqlmodel import Session, select

from agentlink.db import session_scope
from agentlink.messages import parse_timestamp, utc_now_iso
from agentlink.models import AgentRecord, Message, MessageMetadata, Role, StoredMessage
from agentlink.settings import settings

logger = structlog.get_logger("agentlink.store")


class ConversationStore:
    """Message logs and per-agent bookkeeping, keyed by workspace and agent.

    Messages are upserted by id. An update keeps the message's original
    position in the log, so checkpoints of a streaming reply never reorder it.
    """

    def __init__(self) -> None:
        self._db_lock = Lock()

    @staticmethod
    def _to_message(row: StoredMessage) -> Message:
        metadata = None
        if row.metadata_json:
            metadata = MessageMetadata.model_validate(json.loads(row.metadata_json))
        return Message(
            id=row.id,
            timestamp=row.timestamp,
            role=Role(row.role),
            content=row.content,
            metadata=metadata,
        )

    @staticmethod
    def _agent_record(db: Session, workspace_id: str, agent_id: str) -> AgentRecord:
        record = db.get(AgentRecord, (workspace_id, agent_id))
        if record is None:
            record = AgentRecord(workspace_id=workspace_id, agent_id=agent_id)
        return record

    def list_messages(self, workspace_id: str, agent_id: str) -> list[Message]:
        """Return an agent's log in insertion order."""
        with self._db_lock:
            with session_scope() as db:
                rows = db.exec(
                    select(StoredMessage)
                    .where(StoredMessage.workspace_id == workspace_id)
                    .where(StoredMessage.agent_id == agent_id)
                    .order_by(StoredMessage.seq)
                ).all()
                return [self._to_message(row) for row in rows]

    def save_message(self, workspace_id: str, agent_id: str, message: Message) -> bool:
        """Insert or overwrite one message. Returns True if it was new."""
        metadata_json = (
            json.dumps(message.metadata.model_dump(mode="json", exclude_none=True))
            if message.metadata
            else None
        )
        now = utc_now_iso()
        with self._db_lock:
            with session_scope() as db:
                row = db.get(StoredMessage, (workspace_id, agent_id, message.id))
                created = row is None
                if row is None:
                    max_seq = db.exec(
                        select(sa_func.max(StoredMessage.seq))
                        .where(StoredMessage.workspace_id == workspace_id)
                        .where(StoredMessage.agent_id == agent_id)
                    ).one()
                    row = StoredMessage(
                        workspace_id=workspace_id,
                        agent_id=agent_id,
                        id=message.id,
                        seq=(max_seq or 0) + 1,
                        role=message.role.value,
                        timestamp=message.timestamp,
                    )
                row.role = message.role.value
                row.content = message.content
                row.timestamp = message.timestamp
                row.metadata_json = metadata_json
                db.add(row)

                record = self._agent_record(db, workspace_id, agent_id)
                record.last_activity_at = now
                if message.role == Role.ASSISTANT and message.metadata and message.metadata.session_id:
                    if record.last_session_id != message.metadata.session_id:
                        logger.info(
                            "Agent session recorded",
                            agent_id=agent_id,
                            session_id=message.metadata.session_id,
                        )
                    record.last_session_id = message.metadata.session_id
                    record.last_session_at = now
                db.add(record)
        return created

    def record_tool_approval(
        self, workspace_id: str, agent_id: str, tool_name: str, approved: bool
    ) -> list[str]:
        """Add or remove a tool from the agent's allowed tools; return the list."""
        with self._db_lock:
            with session_scope() as db:
                record = self._agent_record(db, workspace_id, agent_id)
                allowed: list[str] = json.loads(record.allowed_tools_json or "[]")
                if approved and tool_name not in allowed:
                    allowed.append(tool_name)
                elif not approved and tool_name in allowed:
                    allowed.remove(tool_name)
                record.allowed_tools_json = json.dumps(allowed)
                record.last_activity_at = utc_now_iso()
                db.add(record)
                return allowed

    def restore_session(self, workspace_id: str, agent_id: str, session_id: str) -> tuple[bool, str]:
        """Check whether ``session_id`` can be resumed.

        Returns:
            ``(restored, reason)`` where reason is one of ``restored``,
            ``no_session``, ``session_mismatch`` or ``expired``.
        """
        with self._db_lock:
            with session_scope() as db:
                record = db.get(AgentRecord, (workspace_id, agent_id))
                if record is None or not record.last_session_id:
                    return False, "no_session"
                if record.last_session_id != session_id:
                    return False, "session_mismatch"
                recorded_at = parse_timestamp(record.last_session_at or "")

        max_age = timedelta(hours=settings.session_restore_max_age_hours())
        if recorded_at is None or datetime.now(timezone.utc) - recorded_at > max_age:
            return False, "expired"
        return True, "restored"


store = ConversationStore()
