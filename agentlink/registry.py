"""One controller per agent, addressed by agent id."""

from __future__ import annotations

from collections.abc import Callable, Iterable

import structlog

from agentlink.approval import ApprovalGate, ContinueAfterApproval, OnApproved, RecordApprovalOnly
from agentlink.client import AgentClient
from agentlink.continuity import ContinuityManager, ReloadResult
from agentlink.controller import AgentController, ConversationListener
from agentlink.persistence import ChunkThrottle, PersistenceBridge
from agentlink.settings import settings

logger = structlog.get_logger(__name__)


class AgentRegistry:
    """Owns the controllers of a workspace and tracks which agent is on screen.

    Only the selected agent's controller is attached. Selecting another agent
    detaches the previous one, which cancels its in-flight request so its
    output can never reach the newly visible transcript.
    """

    def __init__(
        self,
        client: AgentClient,
        continuity: ContinuityManager,
        *,
        model: str,
        approval_tools: Iterable[str] = (),
        on_approved: OnApproved | None = None,
        persist_every_chunks: int = 5,
        persist_every_seconds: float = 2.0,
        listener_factory: Callable[[str], ConversationListener] | None = None,
    ) -> None:
        self.client = client
        self.continuity = continuity
        self._model = model
        self._approval_tools = tuple(approval_tools)
        self._on_approved = on_approved
        self._persist_every_chunks = persist_every_chunks
        self._persist_every_seconds = persist_every_seconds
        self._listener_factory = listener_factory
        self._controllers: dict[str, AgentController] = {}
        self._selected: str | None = None
        self._visible = True

    @classmethod
    def from_settings(
        cls,
        client: AgentClient,
        *,
        listener_factory: Callable[[str], ConversationListener] | None = None,
    ) -> AgentRegistry:
        """Build a registry configured from ``AGENTLINK_*`` settings."""
        if settings.auto_continue():
            on_approved: OnApproved = ContinueAfterApproval(settings.continuation_directive())
        else:
            on_approved = RecordApprovalOnly()
        continuity = ContinuityManager(
            window_seconds=settings.inflight_window_seconds(),
            reattach=settings.reattach_sessions(),
        )
        return cls(
            client,
            continuity,
            model=settings.model(),
            approval_tools=settings.approval_tools(),
            on_approved=on_approved,
            persist_every_chunks=settings.persist_every_chunks(),
            persist_every_seconds=settings.persist_every_seconds(),
            listener_factory=listener_factory,
        )

    @property
    def selected(self) -> AgentController | None:
        return self._controllers.get(self._selected) if self._selected else None

    @property
    def agent_ids(self) -> list[str]:
        return list(self._controllers)

    def controller(self, agent_id: str) -> AgentController:
        """Return the agent's controller, creating a detached one if needed."""
        controller = self._controllers.get(agent_id)
        if controller is None:
            controller = AgentController(
                agent_id,
                self.client,
                model=self._model,
                gate=ApprovalGate(self._approval_tools),
                persistence=PersistenceBridge(self.client, agent_id),
                throttle=ChunkThrottle(self._persist_every_chunks, self._persist_every_seconds),
                listener=self._listener_factory(agent_id) if self._listener_factory else None,
                on_approved=self._on_approved,
            )
            controller.detach()
            self._controllers[agent_id] = controller
            logger.debug("Controller created", agent_id=agent_id)
        return controller

    async def select(self, agent_id: str) -> ReloadResult:
        """Show ``agent_id``: detach the previous agent, attach this one, reload."""
        previous = self.selected
        if previous is not None and previous.agent_id != agent_id:
            previous.detach()
            logger.info("Agent view detached", agent_id=previous.agent_id)

        controller = self.controller(agent_id)
        controller.attach()
        self._selected = agent_id
        return await self.continuity.reload(controller)

    async def set_visible(self, visible: bool) -> ReloadResult | None:
        """Track document visibility; reload the selected agent when it reappears."""
        was_visible = self._visible
        self._visible = visible
        if visible and not was_visible and self.selected is not None:
            return await self.continuity.reload(self.selected)
        return None

    async def close(self) -> None:
        """Detach every controller and flush outstanding writes."""
        for controller in self._controllers.values():
            controller.detach()
            await controller.persistence.close()
        self._controllers.clear()
        self._selected = None
