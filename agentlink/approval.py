"""Operator approval of tool uses reported by the agent."""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import TYPE_CHECKING, Protocol

import structlog

from agentlink.decoder import describe_tool_use
from agentlink.errors import NetworkError, ProtocolError, RemoteError, ValidationError
from agentlink.models import PendingApproval, ToolUseEvent

if TYPE_CHECKING:
    from agentlink.controller import AgentController

logger = structlog.get_logger(__name__)


class GateState(str, Enum):
    """Lifecycle of a single approval."""
    IDLE = "idle"
    TOOL_DETECTED = "tool_detected"
    AWAITING_DECISION = "awaiting_decision"
    APPROVED = "approved"
    DENIED = "denied"


_VALID_TRANSITIONS = {
    GateState.IDLE: {GateState.TOOL_DETECTED},
    GateState.TOOL_DETECTED: {GateState.AWAITING_DECISION},
    GateState.AWAITING_DECISION: {GateState.APPROVED, GateState.DENIED},
    GateState.APPROVED: {GateState.IDLE},
    GateState.DENIED: {GateState.IDLE},
}


class ApprovalGate:
    """Holds at most one pending approval for an agent.

    The gate never pauses the reply stream. While a decision is awaited it only
    blocks new commands. A second approval-worthy tool use that arrives while
    one is pending is not stacked; the agent re-emits it after resolution.

    Args:
        approval_tools: Tool names that need approval (case-insensitive).
    """

    def __init__(self, approval_tools: Iterable[str]) -> None:
        self._tools = {name.strip().lower() for name in approval_tools if name.strip()}
        self._state = GateState.IDLE
        self._pending: PendingApproval | None = None
        self.last_decision: GateState | None = None

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def pending(self) -> PendingApproval | None:
        return self._pending

    @property
    def awaiting(self) -> bool:
        return self._pending is not None

    def requires_approval(self, tool_name: str) -> bool:
        return (tool_name or "").strip().lower() in self._tools

    def _transition(self, new_state: GateState) -> None:
        if new_state not in _VALID_TRANSITIONS[self._state]:
            raise ValidationError(f"Invalid approval transition {self._state.value} -> {new_state.value}")
        self._state = new_state

    def observe(self, tool_use: ToolUseEvent, message_id: str) -> PendingApproval | None:
        """Inspect a tool use; open an approval when the tool needs one."""
        if not self.requires_approval(tool_use.name):
            return None
        if self._state is not GateState.IDLE:
            logger.info(
                "Approval already pending, tool use not stacked",
                tool_name=tool_use.name,
                pending_tool=self._pending.tool_name if self._pending else None,
            )
            return None

        self._transition(GateState.TOOL_DETECTED)
        self._pending = PendingApproval(
            tool_name=tool_use.name,
            operation=describe_tool_use(tool_use),
            message_id=message_id,
            tool_use_id=tool_use.id,
        )
        self._transition(GateState.AWAITING_DECISION)
        logger.info("Tool approval requested", tool_name=tool_use.name, message_id=message_id)
        return self._pending

    def resolve(self, approved: bool) -> PendingApproval:
        """Record the operator's decision and return to idle.

        Raises:
            ValidationError: No approval is pending.
        """
        if self._state is not GateState.AWAITING_DECISION or self._pending is None:
            raise ValidationError("No tool approval is pending")
        pending = self._pending
        decision = GateState.APPROVED if approved else GateState.DENIED
        self._transition(decision)
        self.last_decision = decision
        self._pending = None
        self._transition(GateState.IDLE)
        logger.info(
            "Tool approval resolved",
            tool_name=pending.tool_name,
            decision=decision.value,
        )
        return pending

    def reset(self) -> None:
        """Drop any pending approval, e.g. when the log is cleared."""
        self._state = GateState.IDLE
        self._pending = None


class OnApproved(Protocol):
    """Action run by the controller after the operator approves a tool use."""

    async def __call__(self, controller: AgentController, approval: PendingApproval) -> None: ...


class RecordApprovalOnly:
    """Report the approval to the remote side and do nothing else."""

    async def __call__(self, controller: AgentController, approval: PendingApproval) -> None:
        try:
            await controller.client.submit_tool_approval(
                controller.agent_id,
                message_id=approval.message_id,
                tool_name=approval.tool_name,
                approved=True,
            )
        except (NetworkError, ProtocolError, RemoteError) as e:
            logger.warning(
                "Failed to record tool approval",
                agent_id=controller.agent_id,
                tool_name=approval.tool_name,
                error=str(e),
            )


class ContinueAfterApproval(RecordApprovalOnly):
    """Report the approval, then send a fixed continuation command.

    The continuation supersedes a reply stream that is still open for the
    tool-use turn.
    """

    def __init__(self, directive: str) -> None:
        self._directive = directive

    async def __call__(self, controller: AgentController, approval: PendingApproval) -> None:
        await super().__call__(controller, approval)
        await controller.send(self._directive, supersede=True)
