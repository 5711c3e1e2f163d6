"""Tests for the per-agent send/cancel controller."""

import asyncio
import json

import pytest

from agentlink.approval import ContinueAfterApproval, GateState
from agentlink.controller import AgentController
from agentlink.errors import ValidationError
from agentlink.models import Role


def _chunk(content: str) -> dict:
    return {"type": "chunk", "content": content}


def _sentinel(kind: str, payload) -> str:
    return f"<<<METADATA:{kind}:{json.dumps(payload)}>>>"


START = {"type": "start"}
COMPLETE = {"type": "complete"}


def _assistant(controller: AgentController) -> list:
    return [m for m in controller.messages if m.role == Role.ASSISTANT]


def _system(controller: AgentController) -> list:
    return [m for m in controller.messages if m.role == Role.SYSTEM]


class RecordingListener:
    def __init__(self) -> None:
        self.events: list[tuple] = []

    async def on_message(self, agent_id, message) -> None:
        self.events.append(("message", message.role.value, message.content))

    async def on_content(self, agent_id, message_id, text) -> None:
        self.events.append(("content", text))

    async def on_status(self, agent_id, *, busy, processing) -> None:
        self.events.append(("status", busy, processing))

    async def on_approval_requested(self, agent_id, approval) -> None:
        self.events.append(("approval", approval.tool_name))

    async def on_operation(self, agent_id, operation) -> None:
        self.events.append(("operation", operation))


class TestSend:
    """Test the normal request path."""

    @pytest.mark.anyio
    async def test_ls_la_round(self, controller, fake_agent) -> None:
        """Command, start, one chunk, complete."""
        fake_agent.script("ls -la", [START, _chunk("Found 3 files"), COMPLETE])

        user = await controller.send("ls -la")

        messages = controller.messages
        assert [m.role for m in messages] == [Role.USER, Role.ASSISTANT]
        assert messages[0].id == user.id
        assert messages[1].content == "Found 3 files"
        assert messages[1].metadata.backend == "streaming-complete"
        assert controller.busy is False
        assert controller.processing is False

        request = fake_agent.stream_requests[0]
        assert request["message"] == "ls -la"
        assert request["model"] == "claude"
        assert request["userMessageId"] == user.id
        assert request["timestamp"] == user.timestamp

    @pytest.mark.anyio
    async def test_visible_text_excludes_sentinels(self, controller, fake_agent) -> None:
        fake_agent.script(
            "explain",
            [
                START,
                _chunk(_sentinel("SYSTEM", {"model": "opus", "session_id": "sess-1"})),
                _chunk("Hello"),
                _chunk(", " + _sentinel("USAGE", {"input_tokens": 12, "output_tokens": 3}) + "world"),
                _chunk(_sentinel("RESULT", {"duration_ms": 900, "total_cost_usd": 0.002})),
                COMPLETE,
            ],
        )

        await controller.send("explain")

        reply = _assistant(controller)[0]
        assert reply.content == "Hello, world"
        assert "<<<" not in reply.content
        assert reply.metadata.model == "opus"
        assert reply.metadata.usage.output_tokens == 3
        assert reply.metadata.result.total_cost_usd == 0.002
        assert controller.session_id == "sess-1"

    @pytest.mark.anyio
    async def test_session_id_comes_from_last_reply_only(self, controller, fake_agent) -> None:
        fake_agent.script(
            "explain",
            [START, _chunk(_sentinel("SYSTEM", {"session_id": "sess-1"})), _chunk("hi"), COMPLETE],
        )
        await controller.send("explain")
        assert controller.session_id == "sess-1"

        await controller.send("ls")
        assert controller.session_id is None

    @pytest.mark.anyio
    async def test_complete_without_start(self, controller, fake_agent) -> None:
        fake_agent.script("quiet", [COMPLETE])
        await controller.send("quiet")
        reply = _assistant(controller)[0]
        assert reply.content == ""
        assert reply.metadata.backend == "streaming-complete"

    @pytest.mark.anyio
    @pytest.mark.parametrize("command", ["", "   ", "\n"])
    async def test_blank_command_rejected(self, controller, fake_agent, command: str) -> None:
        with pytest.raises(ValidationError):
            await controller.send(command)
        assert len(controller.store) == 0
        assert fake_agent.stream_requests == []

    @pytest.mark.anyio
    async def test_detached_controller_rejects(self, controller, fake_agent) -> None:
        controller.detach()
        with pytest.raises(ValidationError):
            await controller.send("ls")
        assert fake_agent.stream_requests == []

    @pytest.mark.anyio
    async def test_listener_sees_stream(self, controller, fake_agent) -> None:
        listener = RecordingListener()
        controller.listener = listener
        fake_agent.script("hi", [START, _chunk("a"), _chunk("b"), COMPLETE])

        await controller.send("hi")

        assert listener.events[0] == ("message", "user", "hi")
        assert ("status", True, True) in listener.events
        assert ("status", True, False) in listener.events
        assert [e for e in listener.events if e[0] == "content"] == [("content", "a"), ("content", "b")]
        assert ("message", "assistant", "ab") in listener.events
        assert listener.events[-1] == ("status", False, False)

    @pytest.mark.anyio
    async def test_listener_failure_does_not_break_stream(self, controller, fake_agent) -> None:
        class Broken(RecordingListener):
            async def on_content(self, agent_id, message_id, text) -> None:
                raise RuntimeError("render failed")

        controller.listener = Broken()
        fake_agent.script("hi", [START, _chunk("still here"), COMPLETE])
        await controller.send("hi")
        assert _assistant(controller)[0].content == "still here"


class TestBusy:
    """Concurrent sends for one agent are rejected unless superseding."""

    @pytest.mark.anyio
    async def test_send_while_busy_is_noop(self, controller, fake_agent, wait_until) -> None:
        hold = asyncio.Event()
        fake_agent.script("slow", [START, _chunk("working")], hold=hold, tail=[COMPLETE])
        task = asyncio.create_task(controller.send("slow"))
        await wait_until(lambda: any(m.content == "working" for m in controller.messages))

        before = (len(controller.store), len(fake_agent.stream_requests))
        with pytest.raises(ValidationError):
            await controller.send("another")
        assert (len(controller.store), len(fake_agent.stream_requests)) == before

        hold.set()
        await task
        assert controller.busy is False

    @pytest.mark.anyio
    async def test_superseding_send_drops_prior_output(self, controller, fake_agent, wait_until) -> None:
        """Two rapid sends: only b's stream is reflected; a's late chunks never land."""
        hold_a = asyncio.Event()
        fake_agent.script("a", [START, _chunk("A1")], hold=hold_a, tail=[_chunk("A-late"), COMPLETE])
        fake_agent.script("b", [START, _chunk("B"), COMPLETE])

        task_a = asyncio.create_task(controller.send("a"))
        await wait_until(lambda: any(m.content == "A1" for m in controller.messages))

        await controller.send("b", supersede=True)
        hold_a.set()
        await asyncio.wait_for(task_a, timeout=2)

        contents = [m.content for m in _assistant(controller)]
        assert contents.count("B") == 1
        assert not any("A-late" in c for c in contents)
        assert _assistant(controller)[-1].metadata.backend == "streaming-complete"
        assert _system(controller) == []
        assert controller.busy is False


class TestErrors:
    """Request failures become one system message unless cancelled."""

    @pytest.mark.anyio
    async def test_error_frame(self, controller, fake_agent) -> None:
        fake_agent.script("fail", [START, {"type": "error", "error": "model overloaded"}])
        await controller.send("fail")

        system = _system(controller)
        assert len(system) == 1
        assert system[0].content == "✗ Error: model overloaded"
        assert controller.busy is False

        await controller.persistence.flush()
        assert fake_agent.stored("agent-1")[-1]["role"] == "system"

    @pytest.mark.anyio
    async def test_stream_closed_before_complete(self, controller, fake_agent) -> None:
        fake_agent.script("cut", [START, _chunk("partial")])
        await controller.send("cut")

        reply = _assistant(controller)[0]
        assert reply.content == "partial"
        assert reply.metadata.backend == "streaming-live"
        assert controller.store.live_id is None
        assert "ended before completion" in _system(controller)[0].content

    @pytest.mark.anyio
    async def test_http_error_status(self, controller, fake_agent) -> None:
        fake_agent.stream_status = 502
        await controller.send("ls")
        assert _system(controller)[0].content == "✗ Error: 502: agent unavailable"
        assert _assistant(controller) == []

    @pytest.mark.anyio
    async def test_cancelled_request_error_suppressed(self, controller, fake_agent, wait_until) -> None:
        hold = asyncio.Event()
        fake_agent.script(
            "doomed",
            [START, _chunk("thinking")],
            hold=hold,
            tail=[{"type": "error", "error": "late failure"}],
        )
        task = asyncio.create_task(controller.send("doomed"))
        await wait_until(lambda: any(m.content == "thinking" for m in controller.messages))

        assert await controller.cancel() is True
        hold.set()
        await asyncio.wait_for(task, timeout=2)

        assert _system(controller) == []
        assert controller.busy is False
        assert await controller.cancel() is False

    @pytest.mark.anyio
    async def test_detach_stops_mutation(self, controller, fake_agent, wait_until) -> None:
        hold = asyncio.Event()
        fake_agent.script("long", [START, _chunk("first")], hold=hold, tail=[_chunk(" second"), COMPLETE])
        task = asyncio.create_task(controller.send("long"))
        await wait_until(lambda: any(m.content == "first" for m in controller.messages))

        controller.detach()
        hold.set()
        await asyncio.wait_for(task, timeout=2)

        assert _assistant(controller)[0].content == "first"
        assert _system(controller) == []


class TestApproval:
    """Tool approvals block input but never the stream."""

    @pytest.mark.anyio
    async def test_stalled_tool_use_blocks_input(self, controller, fake_agent, wait_until) -> None:
        hold = asyncio.Event()
        fake_agent.script(
            "write it",
            [START, _chunk(_sentinel("TOOL_USE", {"name": "Write"}))],
            hold=hold,
            tail=[COMPLETE],
        )
        task = asyncio.create_task(controller.send("write it"))
        await wait_until(lambda: controller.gate.state is GateState.AWAITING_DECISION)

        assert controller.current_operation == "Write"
        assert controller.processing is True
        before = len(controller.store)
        with pytest.raises(ValidationError):
            await controller.send("anything")
        with pytest.raises(ValidationError):
            await controller.send("anything", supersede=True)
        assert len(controller.store) == before

        hold.set()
        await task
        assert controller.gate.awaiting

    @pytest.mark.anyio
    async def test_gate_set_before_following_text(self, controller, fake_agent) -> None:
        listener = RecordingListener()
        controller.listener = listener
        fake_agent.script(
            "edit",
            [START, _chunk(_sentinel("TOOL_USE", {"name": "Edit", "input": {"file_path": "a.py"}})), _chunk("Editing"), COMPLETE],
        )
        await controller.send("edit")

        approval_at = listener.events.index(("approval", "Edit"))
        cleared_at = listener.events.index(("status", True, False))
        assert approval_at < cleared_at
        assert ("operation", "Edit: a.py") in listener.events

    @pytest.mark.anyio
    async def test_read_only_tool_needs_no_approval(self, controller, fake_agent) -> None:
        fake_agent.script("look", [START, _chunk(_sentinel("TOOL_USE", {"name": "Read"})), COMPLETE])
        await controller.send("look")
        assert controller.gate.state is GateState.IDLE
        assert _assistant(controller)[0].metadata.tool_uses[0].name == "Read"

    @pytest.mark.anyio
    async def test_approve_continues(self, controller, fake_agent, wait_until) -> None:
        controller.on_approved = ContinueAfterApproval("continue")
        hold = asyncio.Event()
        fake_agent.script(
            "write it",
            [START, _chunk(_sentinel("TOOL_USE", {"id": "tu1", "name": "Write"}))],
            hold=hold,
        )
        fake_agent.script("continue", [START, _chunk("Wrote the file"), COMPLETE])
        task = asyncio.create_task(controller.send("write it"))
        await wait_until(lambda: controller.gate.awaiting)

        approval = await controller.approve()
        await asyncio.wait_for(task, timeout=2)

        assert approval.tool_use_id == "tu1"
        assert fake_agent.approvals[0]["toolName"] == "Write"
        assert fake_agent.approvals[0]["approved"] is True
        assert [r["message"] for r in fake_agent.stream_requests] == ["write it", "continue"]
        assert _assistant(controller)[-1].content == "Wrote the file"
        assert controller.gate.state is GateState.IDLE
        assert controller.busy is False

    @pytest.mark.anyio
    async def test_deny_is_local(self, controller, fake_agent, wait_until) -> None:
        hold = asyncio.Event()
        fake_agent.script(
            "run it",
            [START, _chunk(_sentinel("TOOL_USE", {"name": "Bash", "input": {"command": "rm -rf /tmp/x"}}))],
            hold=hold,
            tail=[COMPLETE],
        )
        task = asyncio.create_task(controller.send("run it"))
        await wait_until(lambda: controller.gate.awaiting)

        await controller.deny()

        assert _system(controller)[-1].content == "✗ Denied: Bash: rm -rf /tmp/x"
        assert fake_agent.approvals == []
        assert len(fake_agent.stream_requests) == 1
        assert controller.gate.state is GateState.IDLE
        hold.set()
        await task

    @pytest.mark.anyio
    async def test_approve_without_pending(self, controller) -> None:
        with pytest.raises(ValidationError):
            await controller.approve()


class TestPersistenceCalls:
    """Reserve, checkpoint and complete writes."""

    @pytest.mark.anyio
    async def test_checkpoint_every_five_chunks(self, controller, fake_agent) -> None:
        fake_agent.script("count", [START] + [_chunk(str(i)) for i in range(12)] + [COMPLETE])
        await controller.send("count")
        await controller.persistence.flush()

        roles = [r["role"] for r in fake_agent.save_requests]
        assert roles.count("user") == 1
        writes = [r for r in fake_agent.save_requests if r["role"] == "assistant"]
        # placeholder, chunk 5, chunk 10, completion
        assert [w["message"] for w in writes] == ["", "01234", "0123456789", "01234567891011"]
        assert writes[0]["metadata"]["backend"] == "streaming-live"
        assert writes[-1]["metadata"]["backend"] == "streaming-complete"

    @pytest.mark.anyio
    async def test_clear_keeps_store(self, controller, fake_agent) -> None:
        await controller.send("ls")
        await controller.persistence.flush()
        await controller.clear()
        assert controller.messages == []
        assert len(fake_agent.stored("agent-1")) == 2


class TestRemoteBusy:
    """Busy indicator restored from a reload."""

    @pytest.mark.anyio
    async def test_expires(self, agent_client, fake_agent) -> None:
        now = [1000.0]
        ctl = AgentController("agent-9", agent_client, model="claude", clock=lambda: now[0])
        ctl.mark_remote_busy(30)
        assert ctl.busy is True
        with pytest.raises(ValidationError):
            await ctl.send("hello")

        now[0] += 31
        assert ctl.busy is False
        await ctl.send("hello")
        assert len(fake_agent.stream_requests) == 1
        await ctl.persistence.close()

    @pytest.mark.anyio
    async def test_supersede_overrides(self, agent_client, fake_agent) -> None:
        ctl = AgentController("agent-9", agent_client, model="claude")
        ctl.mark_remote_busy(120)
        await ctl.send("hello", supersede=True)
        assert ctl.remote_busy is False
        assert _assistant(ctl)[0].content == "ok"
        await ctl.persistence.close()
