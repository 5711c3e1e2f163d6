"""Per-agent send/cancel controller.

Each agent gets its own :class:`AgentController` holding its message log, its
approval gate and the cancellation token of the one request whose output may
currently be applied. Output of any other request, or of a request whose view
has been detached, is dropped instead of mutating the log.
"""

from __future__ import annotations

import asyncio
import secrets
import time
from collections.abc import Callable
from typing import Protocol

import structlog

from agentlink.approval import ApprovalGate, OnApproved
from agentlink.client import AgentClient
from agentlink.decoder import (
    FrameType,
    apply_metadata,
    decode_frames,
    describe_tool_use,
    split_sentinels,
)
from agentlink.errors import NetworkError, ProtocolError, RemoteError, ValidationError
from agentlink.messages import MessageStore, new_message_id, utc_now_iso
from agentlink.models import Message, PendingApproval, Role, ToolUseEvent
from agentlink.persistence import ChunkThrottle, PersistenceBridge

logger = structlog.get_logger(__name__)

_REQUEST_ERRORS = (NetworkError, ProtocolError, RemoteError)


class CancelToken:
    """Cooperative cancellation handle for one request.

    Cancelling stops the client from applying the request's output and closes
    the local end of its reply stream. The remote agent may keep running.
    """

    def __init__(self) -> None:
        self.request_id = secrets.token_hex(4)
        self.message_id: str | None = None
        self._cancelled = False
        self._task: asyncio.Task | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def bind(self, task: asyncio.Task) -> None:
        self._task = task

    def cancel(self) -> None:
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()


class ConversationListener(Protocol):
    """Callbacks through which a controller reports changes to its view."""

    async def on_message(self, agent_id: str, message: Message) -> None:
        """A message was added to the log, or an assistant reply was finished."""
        ...

    async def on_content(self, agent_id: str, message_id: str, text: str) -> None: ...

    async def on_status(self, agent_id: str, *, busy: bool, processing: bool) -> None: ...

    async def on_approval_requested(self, agent_id: str, approval: PendingApproval) -> None: ...

    async def on_operation(self, agent_id: str, operation: str | None) -> None: ...


class NullListener:
    """Listener that ignores everything."""

    async def on_message(self, agent_id: str, message: Message) -> None:
        pass

    async def on_content(self, agent_id: str, message_id: str, text: str) -> None:
        pass

    async def on_status(self, agent_id: str, *, busy: bool, processing: bool) -> None:
        pass

    async def on_approval_requested(self, agent_id: str, approval: PendingApproval) -> None:
        pass

    async def on_operation(self, agent_id: str, operation: str | None) -> None:
        pass


class AgentController:
    """Sends commands to one agent and applies its streamed replies.

    Args:
        agent_id: Agent this controller is bound to.
        client: Started :class:`AgentClient` for the agent's workspace.
        model: Model name sent with every command.
        gate: Approval gate; defaults to one with no approval-required tools.
        persistence: Bridge used for every message write.
        throttle: Checkpoint throttle for streaming replies.
        listener: Receiver of view updates.
        on_approved: Action run after the operator approves a tool use.
        clock: Monotonic clock, used for the remote-busy window.
    """

    def __init__(
        self,
        agent_id: str,
        client: AgentClient,
        *,
        model: str,
        gate: ApprovalGate | None = None,
        persistence: PersistenceBridge | None = None,
        throttle: ChunkThrottle | None = None,
        listener: ConversationListener | None = None,
        on_approved: OnApproved | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.agent_id = agent_id
        self.client = client
        self.model = model
        self.gate = gate or ApprovalGate(())
        self.persistence = persistence or PersistenceBridge(client, agent_id)
        self.throttle = throttle or ChunkThrottle()
        self.listener: ConversationListener = listener or NullListener()
        self.on_approved = on_approved
        self._clock = clock
        self._store = MessageStore()
        self._active: CancelToken | None = None
        self._attached = True
        self._processing = False
        self._operation: str | None = None
        self._remote_busy_until: float | None = None

    # --- State ---

    @property
    def store(self) -> MessageStore:
        return self._store

    @property
    def messages(self) -> list[Message]:
        return self._store.snapshot()

    @property
    def attached(self) -> bool:
        return self._attached

    @property
    def in_flight(self) -> bool:
        """True while a request started by this controller is running."""
        return self._active is not None

    @property
    def remote_busy(self) -> bool:
        """True while a turn found on reload is presumed to still be running."""
        if self._remote_busy_until is None:
            return False
        if self._clock() >= self._remote_busy_until:
            self._remote_busy_until = None
            return False
        return True

    @property
    def busy(self) -> bool:
        return self.in_flight or self.remote_busy

    @property
    def processing(self) -> bool:
        """True between sending a command and the first visible reply text."""
        return self._processing

    @property
    def current_operation(self) -> str | None:
        return self._operation

    @property
    def session_id(self) -> str | None:
        """Remote session id carried by the last assistant reply, if any.

        Older replies are not consulted: a last reply without a session id
        means the remote side did not report one for the current session.
        """
        for message in reversed(list(self._store)):
            if message.role == Role.ASSISTANT:
                return message.metadata.session_id if message.metadata else None
        return None

    def mark_remote_busy(self, seconds: float) -> None:
        """Show the agent as busy for ``seconds`` without an active request."""
        self._remote_busy_until = self._clock() + seconds if seconds > 0 else None

    def clear_remote_busy(self) -> None:
        self._remote_busy_until = None

    # --- Operations ---

    async def send(self, command: str, *, supersede: bool = False) -> Message:
        """Send a command and apply the streamed reply until it ends.

        All preconditions are checked before the first suspension point, so
        two sends issued back to back can never both pass them.

        Args:
            command: Command text; must not be blank.
            supersede: Cancel an in-flight request instead of rejecting.

        Returns:
            The user message that was appended.

        Raises:
            ValidationError: Blank command, agent busy, approval pending, or
                the view is detached.
        """
        text = (command or "").strip()
        if not text:
            raise ValidationError("Command is empty")
        if not self._attached:
            raise ValidationError(f"Agent {self.agent_id} is not attached")
        if self.gate.awaiting:
            raise ValidationError("A tool approval is pending")
        if self.busy and not supersede:
            raise ValidationError(f"Agent {self.agent_id} is busy")

        if self._active is not None:
            logger.info(
                "Superseding in-flight request",
                agent_id=self.agent_id,
                request_id=self._active.request_id,
            )
            self._cancel_active()
        self._remote_busy_until = None

        token = CancelToken()
        self._active = token
        user_message = self._store.append(
            Message(id=new_message_id(), timestamp=utc_now_iso(), role=Role.USER, content=text)
        )
        self.persistence.save(user_message)
        self._processing = True
        self._operation = None
        logger.info(
            "Command sent",
            agent_id=self.agent_id,
            request_id=token.request_id,
            message_id=user_message.id,
        )

        task = asyncio.create_task(self._run_request(token, user_message))
        token.bind(task)
        try:
            await self._notify("on_message", user_message)
            await self.publish_status()
            await asyncio.wait({task})
        except asyncio.CancelledError:
            token.cancel()
            self._finish(token)
            raise

        error = None if task.cancelled() else task.exception()
        if error is not None and not isinstance(error, _REQUEST_ERRORS):
            self._finish(token)
            raise error
        if error is not None:
            if self._applies(token):
                await self._report_error(error)
            else:
                logger.debug(
                    "Error of cancelled request suppressed",
                    agent_id=self.agent_id,
                    request_id=token.request_id,
                    error=str(error),
                )
        if self._finish(token):
            await self.publish_status()
        return user_message

    async def cancel(self) -> bool:
        """Cancel the in-flight request. Returns False if there was none."""
        if self._active is None:
            return False
        self._cancel_active()
        await self.publish_status()
        return True

    def attach(self) -> None:
        """Mark the agent's view as visible so replies may be applied."""
        self._attached = True

    def detach(self) -> None:
        """Mark the view as gone and cancel the in-flight request."""
        self._attached = False
        if self._active is not None:
            self._cancel_active()

    async def approve(self) -> PendingApproval:
        """Approve the pending tool use and run the on-approved action.

        Raises:
            ValidationError: No approval is pending.
        """
        approval = self.gate.resolve(True)
        if self.on_approved is not None:
            await self.on_approved(self, approval)
        return approval

    async def deny(self) -> PendingApproval:
        """Deny the pending tool use. Only a local system message is recorded.

        Raises:
            ValidationError: No approval is pending.
        """
        approval = self.gate.resolve(False)
        await self._append_system(f"✗ Denied: {approval.operation}")
        return approval

    async def clear(self) -> None:
        """Empty the in-memory log. The durable store is left untouched."""
        if self._active is not None:
            self._cancel_active()
        self._remote_busy_until = None
        self.gate.reset()
        self._store.clear()
        await self.publish_status()

    # --- Request internals ---

    def _applies(self, token: CancelToken) -> bool:
        return token is self._active and not token.cancelled and self._attached

    def _cancel_active(self) -> None:
        token = self._active
        if token is None:
            return
        token.cancel()
        self._finish(token)
        logger.info("Request cancelled", agent_id=self.agent_id, request_id=token.request_id)

    def _finish(self, token: CancelToken) -> bool:
        """Release ``token`` if it is still the active one."""
        if self._active is not token:
            return False
        self._active = None
        self._processing = False
        self._operation = None
        if token.message_id:
            self._store.release_live(token.message_id)
        return True

    async def _run_request(self, token: CancelToken, user_message: Message) -> None:
        lines = self.client.stream_command(
            self.agent_id,
            user_message.content,
            model=self.model,
            user_message_id=user_message.id,
            timestamp=user_message.timestamp,
        )
        frames = decode_frames(lines)
        completed = False
        try:
            async for event in frames:
                if not self._applies(token):
                    logger.debug(
                        "Dropping output of superseded request",
                        agent_id=self.agent_id,
                        request_id=token.request_id,
                    )
                    break
                if event.type is FrameType.START:
                    await self._ensure_live(token)
                elif event.type is FrameType.CHUNK:
                    await self._apply_chunk(token, event.content)
                elif event.type is FrameType.COMPLETE:
                    await self._complete(token)
                    completed = True
                    break
                elif event.type is FrameType.ERROR:
                    raise RemoteError(event.error or "Unknown error")
        finally:
            await frames.aclose()
            await lines.aclose()

        if not completed and self._applies(token):
            raise ProtocolError("Reply stream ended before completion")

    async def _ensure_live(self, token: CancelToken) -> str:
        if token.message_id is None:
            placeholder = self._store.begin_live()
            token.message_id = placeholder.id
            self.throttle.reset()
            self.persistence.save(placeholder)
            await self._notify("on_message", placeholder)
        return token.message_id

    async def _apply_chunk(self, token: CancelToken, content: str) -> None:
        message_id = await self._ensure_live(token)
        if not self._applies(token):
            return
        visible, sentinels = split_sentinels(content)
        if sentinels:
            metadata = self._store.live_metadata(message_id)
            for sentinel in sentinels:
                tool_use = apply_metadata(metadata, sentinel)
                if tool_use is not None:
                    await self._on_tool_use(message_id, tool_use)
                    if not self._applies(token):
                        return

        if visible:
            self._store.append_content(message_id, visible)
            if self._processing:
                self._processing = False
                await self.publish_status()
            await self._notify("on_content", message_id, visible)

        if self._applies(token) and self.throttle.note_chunk():
            message = self._store.get(message_id)
            if message is not None:
                self.persistence.save(message)

    async def _on_tool_use(self, message_id: str, tool_use: ToolUseEvent) -> None:
        approval = self.gate.observe(tool_use, message_id)
        self._operation = describe_tool_use(tool_use)
        await self._notify("on_operation", self._operation)
        if approval is not None:
            await self._notify("on_approval_requested", approval)

    async def _complete(self, token: CancelToken) -> None:
        message_id = await self._ensure_live(token)
        if not self._applies(token):
            return
        message = self._store.finalize(message_id)
        self.persistence.save(message)
        self._operation = None
        logger.info(
            "Reply complete",
            agent_id=self.agent_id,
            request_id=token.request_id,
            message_id=message_id,
            chars=len(message.content),
        )
        await self._notify("on_message", message)

    async def _report_error(self, error: Exception) -> None:
        logger.warning(
            "Request failed",
            agent_id=self.agent_id,
            kind=type(error).__name__,
            error=str(error),
        )
        await self._append_system(f"✗ Error: {error}")

    async def _append_system(self, text: str) -> Message:
        message = self._store.append(
            Message(id=new_message_id(), timestamp=utc_now_iso(), role=Role.SYSTEM, content=text)
        )
        self.persistence.save(message)
        await self._notify("on_message", message)
        return message

    async def publish_status(self) -> None:
        await self._notify("on_status", busy=self.busy, processing=self._processing)

    async def _notify(self, hook: str, *args, **kwargs) -> None:
        try:
            await getattr(self.listener, hook)(self.agent_id, *args, **kwargs)
        except Exception:
            logger.exception("Listener hook failed", agent_id=self.agent_id, hook=hook)
