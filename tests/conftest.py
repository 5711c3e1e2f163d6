"""Shared pytest fixtures for agentlink tests."""

import asyncio
import json
import os
from collections.abc import Callable
from typing import AsyncGenerator, Generator

import httpx
import pytest

# Ensure the developer's own configuration does not affect test results.
for k in [k for k in os.environ if k.startswith("AGENTLINK_")]:
    os.environ.pop(k, None)

from agentlink.approval import ApprovalGate
from agentlink.client import AgentClient
from agentlink.controller import AgentController
from agentlink.models import Message
from agentlink.persistence import ChunkThrottle
from agentlink.server import app
from agentlink.settings import DEFAULT_APPROVAL_TOOLS
from agentlink.store import ConversationStore

AGENT_URL = "http://agent.test"
WORKSPACE_ID = "ws-test"

DEFAULT_REPLY = [
    {"type": "start"},
    {"type": "chunk", "content": "ok"},
    {"type": "complete"},
]


def _encode(frame: dict | str) -> bytes:
    if isinstance(frame, dict):
        return f"data: {json.dumps(frame)}\n\n".encode()
    return f"{frame}\n".encode()


class FakeAgentServer:
    """In-process stand-in for the agent server, mounted via httpx.MockTransport.

    Replies are scripted per command text. A script may hold the stream open
    on an ``asyncio.Event`` and emit ``tail`` frames once it is set.
    Conversation reads can be held the same way with ``read_hold``. The
    conversation endpoints are backed by an in-memory dict that keeps
    insertion order on overwrite, like the real store.
    """

    def __init__(self) -> None:
        self.scripts: dict[str, tuple[list, asyncio.Event | None, list]] = {}
        self.stream_requests: list[dict] = []
        self.conversations: dict[str, dict[str, dict]] = {}
        self.save_requests: list[dict] = []
        self.approvals: list[dict] = []
        self.restores: list[dict] = []
        self.restore_result = True
        self.fail_saves = False
        self.fail_reads = False
        self.reads = 0
        self.read_hold: asyncio.Event | None = None
        self.read_body: str | None = None
        self.fail_approvals = False
        self.stream_status = 200

    def script(
        self,
        command: str,
        frames: list,
        *,
        hold: asyncio.Event | None = None,
        tail: list | tuple = (),
    ) -> None:
        self.scripts[command] = (list(frames), hold, list(tail))

    def seed(self, agent_id: str, messages: list[Message]) -> None:
        conversation = self.conversations.setdefault(agent_id, {})
        for message in messages:
            conversation[message.id] = message.to_wire()

    def stored(self, agent_id: str) -> list[dict]:
        return list(self.conversations.get(agent_id, {}).values())

    async def handle(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")
        agent_id = parts[4]
        endpoint = "/".join(parts[5:])
        body = json.loads(request.content) if request.content else {}

        if endpoint == "conversation/stream":
            return self._stream(body)
        if endpoint == "conversation" and request.method == "GET":
            self.reads += 1
            if self.fail_reads:
                return httpx.Response(503, json={"error": "store unavailable"})
            if self.read_body is not None:
                return httpx.Response(200, text=self.read_body)
            # The reply reflects the store when the request arrived.
            messages = self.stored(agent_id)
            if self.read_hold is not None:
                await self.read_hold.wait()
            return httpx.Response(200, json={"success": True, "messages": messages})
        if endpoint == "conversation":
            self.save_requests.append(body)
            if self.fail_saves:
                return httpx.Response(500, json={"error": "disk full"})
            wire = {
                "id": body["messageId"],
                "timestamp": body["timestamp"],
                "role": body["role"],
                "content": body["message"],
            }
            if body.get("metadata") is not None:
                wire["metadata"] = body["metadata"]
            self.conversations.setdefault(agent_id, {})[body["messageId"]] = wire
            return httpx.Response(200, json={"success": True})
        if endpoint == "tool-approval":
            self.approvals.append(body)
            if self.fail_approvals:
                return httpx.Response(500, json={"error": "approval store down"})
            return httpx.Response(200, json={"success": True})
        if endpoint == "session-restore":
            self.restores.append(body)
            return httpx.Response(200, json={"success": True, "restored": self.restore_result})
        return httpx.Response(404, json={"error": "not found"})

    def _stream(self, body: dict) -> httpx.Response:
        self.stream_requests.append(body)
        if self.stream_status >= 400:
            return httpx.Response(self.stream_status, json={"error": "agent unavailable"})
        frames, hold, tail = self.scripts.get(body.get("message"), (DEFAULT_REPLY, None, []))

        async def reply():
            for frame in frames:
                yield _encode(frame)
            if hold is not None:
                await hold.wait()
                for frame in tail:
                    yield _encode(frame)

        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=reply())


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture(autouse=True)
def clean_agentlink_env(monkeypatch) -> None:
    """Remove AGENTLINK_* overrides set by earlier tests."""
    for k in [k for k in os.environ if k.startswith("AGENTLINK_")]:
        monkeypatch.delenv(k, raising=False)


@pytest.fixture
def wait_until() -> Callable:
    """Poll a condition while letting background tasks run."""
    return _wait_until


@pytest.fixture
def fake_agent() -> FakeAgentServer:
    return FakeAgentServer()


@pytest.fixture
async def agent_client(fake_agent: FakeAgentServer) -> AsyncGenerator[AgentClient, None]:
    """AgentClient wired to the fake agent server."""
    client = AgentClient(AGENT_URL, WORKSPACE_ID, transport=httpx.MockTransport(fake_agent.handle))
    await client.start()
    yield client
    await client.stop()


@pytest.fixture
async def controller(agent_client: AgentClient) -> AsyncGenerator[AgentController, None]:
    """Attached controller for ``agent-1`` with the default approval tools."""
    ctl = AgentController(
        "agent-1",
        agent_client,
        model="claude",
        gate=ApprovalGate(DEFAULT_APPROVAL_TOOLS),
        throttle=ChunkThrottle(5, 2.0),
    )
    yield ctl
    ctl.detach()
    await ctl.persistence.close()


@pytest.fixture
def temp_data_dir(tmp_path, monkeypatch) -> str:
    """Create a temporary data directory for test isolation."""
    data_dir = str(tmp_path / "data")
    os.makedirs(data_dir, exist_ok=True)
    monkeypatch.setenv("AGENTLINK_DATA_DIR", data_dir)
    # Reset the db engine so it picks up the new data dir
    from agentlink.db import dispose_engine, init_db

    dispose_engine()
    init_db()
    return data_dir


@pytest.fixture
def fresh_store(temp_data_dir, monkeypatch) -> Generator[ConversationStore, None, None]:
    """A ConversationStore on the temporary database, patched into the API."""
    new_store = ConversationStore()
    import agentlink.api.conversation
    import agentlink.store

    monkeypatch.setattr(agentlink.store, "store", new_store)
    monkeypatch.setattr(agentlink.api.conversation, "store", new_store)
    yield new_store
    from agentlink.db import dispose_engine

    dispose_engine()


@pytest.fixture
async def api_client(fresh_store) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Async HTTP client talking to the store service in-process."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Force the AnyIO pytest plugin to run tests under asyncio.

    The engine uses asyncio primitives directly (tasks, queues, events).
    """
    return "asyncio"
