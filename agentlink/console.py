"""Line-oriented operator console for one workspace."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Callable, Coroutine
from typing import Any, TextIO

import structlog

from agentlink.client import AgentClient
from agentlink.continuity import ReloadResult, TurnStatus
from agentlink.controller import AgentController
from agentlink.errors import ValidationError
from agentlink.models import Message, MessageMetadata, PendingApproval, Role
from agentlink.registry import AgentRegistry
from agentlink.settings import settings

logger = structlog.get_logger(__name__)

HELP_TEXT = """Commands:
  /approve            approve the pending tool use
  /deny               deny the pending tool use
  /cancel             cancel the running request
  /clear              clear the screen log (the stored log is kept)
  /reload             reload the conversation from the store
  /switch AGENT_ID    switch to another agent
  /history            list previous commands
  /quit               leave the console
Anything else is sent to the agent."""

_ROLE_PREFIX = {
    Role.USER: "you> ",
    Role.ASSISTANT: "agent> ",
    Role.SYSTEM: "system> ",
}


def format_footer(metadata: MessageMetadata | None) -> str:
    """Summarise reply metadata, e.g. ``[claude · 120 in / 45 out · 1.2s · $0.0031]``."""
    if metadata is None:
        return ""
    parts: list[str] = []
    if metadata.model:
        parts.append(metadata.model)
    if metadata.usage:
        parts.append(f"{metadata.usage.input_tokens:,} in / {metadata.usage.output_tokens:,} out")
    if metadata.result:
        if metadata.result.duration_ms:
            parts.append(f"{metadata.result.duration_ms / 1000:.1f}s")
        if metadata.result.total_cost_usd:
            parts.append(f"${metadata.result.total_cost_usd:.4f}")
    if metadata.session_id:
        parts.append(f"session …{metadata.session_id[-8:]}")
    return f"[{' · '.join(parts)}]" if parts else ""


def parse_approval_reply(text: str) -> bool | None:
    """Interpret a bare reply while an approval is pending.

    Returns True to approve, False to deny, None if the text is not a decision.
    """
    lower = text.strip().lower()
    if lower in ("allow", "approve", "yes", "y", "ok", "proceed"):
        return True
    if lower in ("deny", "reject", "no", "n"):
        return False
    return None


class ConsoleListener:
    """Prints one agent's conversation as it changes."""

    def __init__(self, agent_id: str, out: TextIO) -> None:
        self.agent_id = agent_id
        self._out = out
        self._streaming: str | None = None

    def _write(self, text: str) -> None:
        self._out.write(text)
        self._out.flush()

    def _end_stream(self) -> None:
        if self._streaming is not None:
            self._write("\n")
            self._streaming = None

    async def on_message(self, agent_id: str, message: Message) -> None:
        if message.role == Role.USER:
            return
        if message.role == Role.SYSTEM:
            self._end_stream()
            self._write(f"{_ROLE_PREFIX[Role.SYSTEM]}{message.content}\n")
            return
        if message.metadata is not None and not message.metadata.is_complete:
            self._end_stream()
            self._write(_ROLE_PREFIX[Role.ASSISTANT])
            self._streaming = message.id
            return
        self._end_stream()
        footer = format_footer(message.metadata)
        if footer:
            self._write(f"{footer}\n")

    async def on_content(self, agent_id: str, message_id: str, text: str) -> None:
        if self._streaming != message_id:
            self._end_stream()
            self._write(_ROLE_PREFIX[Role.ASSISTANT])
            self._streaming = message_id
        self._write(text)

    async def on_status(self, agent_id: str, *, busy: bool, processing: bool) -> None:
        pass

    async def on_approval_requested(self, agent_id: str, approval: PendingApproval) -> None:
        self._end_stream()
        self._write(f"⚠ Approval required: {approval.operation}  (/approve or /deny)\n")

    async def on_operation(self, agent_id: str, operation: str | None) -> None:
        if operation:
            self._end_stream()
            self._write(f"→ {operation}\n")


class Console:
    """Dispatches operator input to the selected agent's controller.

    Commands and approvals run as background tasks so the console keeps
    reading input (``/cancel``, ``/approve``) while a reply streams in.
    """

    def __init__(self, registry: AgentRegistry, out: TextIO) -> None:
        self.registry = registry
        self._out = out
        self._tasks: set[asyncio.Task] = set()

    def _print(self, text: str = "") -> None:
        self._out.write(f"{text}\n")
        self._out.flush()

    @property
    def controller(self) -> AgentController:
        controller = self.registry.selected
        if controller is None:
            raise RuntimeError("No agent selected")
        return controller

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, ValidationError):
            self._print(f"✗ {exc}")
        elif exc is not None:
            logger.error("Console task failed", exc_info=exc)

    def render(self, messages: list[Message]) -> None:
        for message in messages:
            self._print(f"{_ROLE_PREFIX[message.role]}{message.content}")
            if message.role == Role.ASSISTANT:
                footer = format_footer(message.metadata)
                if footer:
                    self._print(footer)

    def _report_reload(self, result: ReloadResult) -> None:
        if not result.fetched:
            self._print("✗ Could not reach the conversation store; showing local log")
        if result.status is TurnStatus.IN_FLIGHT and result.remote_busy_seconds:
            self._print(
                f"… agent appears to still be working (input locked for up to "
                f"{int(result.remote_busy_seconds)}s)"
            )
        if result.session_restored:
            self._print("↺ previous session reattached")

    async def switch(self, agent_id: str) -> None:
        result = await self.registry.select(agent_id)
        self._print(f"── {agent_id} ──")
        self.render(self.controller.messages)
        self._report_reload(result)

    async def handle(self, line: str) -> bool:
        """Handle one input line. Returns False when the console should exit."""
        text = line.strip()
        if not text:
            return True
        controller = self.controller

        if not text.startswith("/"):
            decision = parse_approval_reply(text) if controller.gate.awaiting else None
            if decision is True:
                self._spawn(controller.approve())
            elif decision is False:
                await self._deny(controller)
            else:
                self._spawn(controller.send(text))
            return True

        command, _, arg = text.partition(" ")
        command = command.lower()
        if command in ("/quit", "/exit"):
            return False
        if command == "/approve":
            self._spawn(controller.approve())
        elif command == "/deny":
            await self._deny(controller)
        elif command == "/cancel":
            if not await controller.cancel():
                self._print("Nothing to cancel")
        elif command == "/clear":
            await controller.clear()
            self._print("── cleared ──")
        elif command == "/reload":
            result = await self.registry.continuity.reload(controller)
            self._print(f"── {controller.agent_id} (reloaded) ──")
            self.render(controller.messages)
            self._report_reload(result)
        elif command == "/switch":
            if not arg.strip():
                self._print("Usage: /switch AGENT_ID")
            else:
                await self.switch(arg.strip())
        elif command == "/history":
            history = controller.store.command_history()
            if not history:
                self._print("No commands yet")
            for i, entry in enumerate(history, start=1):
                self._print(f"{i:>3}  {entry}")
        else:
            self._print(HELP_TEXT)
        return True

    async def _deny(self, controller: AgentController) -> None:
        try:
            await controller.deny()
        except ValidationError as e:
            self._print(f"✗ {e}")

    async def shutdown(self) -> None:
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)
        await self.registry.close()


async def run_console(
    agent_id: str,
    *,
    input_func: Callable[[str], str] = input,
    out: TextIO | None = None,
) -> None:
    """Run the console until the operator quits or input ends."""
    out = out or sys.stdout
    async with AgentClient(
        settings.agent_url(),
        settings.workspace_id(),
        timeout=settings.request_timeout_seconds(),
    ) as client:
        registry = AgentRegistry.from_settings(
            client, listener_factory=lambda aid: ConsoleListener(aid, out)
        )
        console = Console(registry, out)
        out.write(f"agentlink · {settings.agent_url()} · workspace {settings.workspace_id()}\n")
        out.write("Type /help for commands.\n")
        await console.switch(agent_id)
        try:
            while True:
                try:
                    line = await asyncio.to_thread(input_func, "")
                except EOFError:
                    break
                if not await console.handle(line):
                    break
        finally:
            await console.shutdown()
