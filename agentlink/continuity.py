"""Reloading an agent's conversation from the durable store."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

import structlog

from agentlink.controller import AgentController
from agentlink.errors import NetworkError, ProtocolError, RemoteError
from agentlink.messages import parse_timestamp
from agentlink.models import Backend, Message, Role

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TurnStatus(str, Enum):
    """What a reloaded log says about its last turn."""
    IN_FLIGHT = "in_flight"
    ABANDONED = "abandoned"
    DONE = "done"


@dataclass
class ReloadResult:
    agent_id: str
    message_count: int
    status: TurnStatus
    fetched: bool = True
    remote_busy_seconds: float = 0.0
    session_restored: bool | None = None


class ContinuityManager:
    """Restores an agent's view after a mount, a page reload or a tab switch.

    Whether the last turn is still running cannot be known for sure. A turn is
    taken to be in flight only if it is unanswered (or its reply is still
    tagged as streaming) and younger than ``window_seconds``. The controller
    then shows the agent as busy until the window ends, which can never hang
    the input because no request token is involved.

    Args:
        window_seconds: Recency window for the in-flight heuristic.
        reattach: Try to reattach to the last remote session on reload.
        now: Wall clock returning an aware UTC datetime.
    """

    def __init__(
        self,
        *,
        window_seconds: float = 180,
        reattach: bool = True,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._window = window_seconds
        self._reattach = reattach
        self._now = now

    def _pending_age(self, messages: Sequence[Message], now: datetime) -> float | None:
        """Age in seconds of an unfinished last turn, or None if it is finished."""
        if not messages:
            return None
        last = messages[-1]
        if last.role == Role.USER:
            pending = True
        elif last.role == Role.ASSISTANT and last.metadata is not None:
            pending = last.metadata.backend == Backend.STREAMING_LIVE.value
        else:
            pending = False
        if not pending:
            return None

        sent_at = parse_timestamp(last.timestamp)
        if sent_at is None:
            return float("inf")
        return max(0.0, (now - sent_at).total_seconds())

    def classify_turn(self, messages: Sequence[Message], now: datetime | None = None) -> TurnStatus:
        age = self._pending_age(messages, now or self._now())
        if age is None:
            return TurnStatus.DONE
        return TurnStatus.IN_FLIGHT if age <= self._window else TurnStatus.ABANDONED

    @staticmethod
    def _finality(message: Message) -> tuple[int, int]:
        """Order copies of one message: a streaming copy ranks below a finished one.

        Two streaming copies are ordered by length, since content only grows.
        """
        if message.metadata is not None and message.metadata.backend == Backend.STREAMING_LIVE.value:
            return 0, len(message.content)
        return 1, 0

    def reconcile(
        self,
        remote: Sequence[Message],
        local: Sequence[Message],
        *,
        live_id: str | None = None,
    ) -> list[Message]:
        """Combine the stored log with the in-memory one, message by message.

        The stored order is kept. For a message known on both sides the stored
        copy is used unless the local one is further along: a finished reply
        beats a streaming checkpoint, and a longer checkpoint beats a shorter
        one. The message being streamed right now (``live_id``) always keeps
        its local copy. Local messages the store has not seen are appended in
        their local order.
        """
        local_by_id = {m.id: m for m in local}
        merged = []
        for stored in remote:
            mine = local_by_id.get(stored.id)
            if mine is not None and (
                stored.id == live_id or self._finality(mine) > self._finality(stored)
            ):
                merged.append(mine)
            else:
                merged.append(stored)
        remote_ids = {m.id for m in remote}
        merged.extend(m for m in local if m.id not in remote_ids)
        return merged

    async def reload(self, controller: AgentController) -> ReloadResult:
        """Merge the stored log into the controller's and restore state.

        A failed fetch keeps the in-memory log. A failed session reattach is
        ignored; the next command starts a fresh remote session.
        """
        agent_id = controller.agent_id
        await controller.persistence.flush()
        try:
            remote = await controller.client.get_conversation(agent_id)
        except (NetworkError, ProtocolError, RemoteError) as e:
            logger.warning("Reload failed, keeping in-memory log", agent_id=agent_id, error=str(e))
            return ReloadResult(
                agent_id=agent_id,
                message_count=len(controller.store),
                status=self.classify_turn(controller.messages),
                fetched=False,
            )

        # The fetch may have raced a reply, so the in-memory state is read
        # only now and replaced without another suspension point.
        merged = self.reconcile(remote, controller.messages, live_id=controller.store.live_id)
        controller.store.replace_all(merged)

        result = ReloadResult(agent_id=agent_id, message_count=len(merged), status=TurnStatus.DONE)
        if controller.in_flight:
            result.status = TurnStatus.IN_FLIGHT
        else:
            now = self._now()
            age = self._pending_age(merged, now)
            if age is not None and age <= self._window:
                result.status = TurnStatus.IN_FLIGHT
                result.remote_busy_seconds = max(0.0, self._window - age)
                controller.mark_remote_busy(result.remote_busy_seconds)
            else:
                result.status = TurnStatus.DONE if age is None else TurnStatus.ABANDONED
                controller.clear_remote_busy()

            session_id = controller.session_id
            if self._reattach and session_id:
                result.session_restored = await self._restore(controller, session_id)

        logger.info(
            "Conversation reloaded",
            agent_id=agent_id,
            messages=result.message_count,
            status=result.status.value,
            session_restored=result.session_restored,
        )
        await controller.publish_status()
        return result

    async def _restore(self, controller: AgentController, session_id: str) -> bool:
        try:
            restored = await controller.client.restore_session(
                controller.agent_id, session_id, controller.model
            )
        except (NetworkError, ProtocolError, RemoteError) as e:
            logger.info(
                "Session reattach failed",
                agent_id=controller.agent_id,
                session_id=session_id,
                error=str(e),
            )
            return False
        if not restored:
            logger.info("Session not restored", agent_id=controller.agent_id, session_id=session_id)
        return restored
