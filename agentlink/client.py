"""HTTP client for the agent server and its conversation store."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import pydantic
import structlog

from agentlink.errors import NetworkError, PersistenceWarning, ProtocolError, RemoteError
from agentlink.models import Message

logger = structlog.get_logger(__name__)


def _error_text(body: bytes, status_code: int) -> str:
    """Extract a readable error from an error response body."""
    text = body.decode("utf-8", errors="replace").strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            error = error.get("message")
        if error:
            return f"{status_code}: {error}"
    return f"{status_code}: {text[:200]}" if text else f"HTTP {status_code}"


def _json_object(resp: httpx.Response) -> dict:
    """Decode a successful response body that must be a JSON object.

    An empty body counts as an empty object.

    Raises:
        ProtocolError: The body is not JSON, or not an object.
    """
    if not resp.content.strip():
        return {}
    try:
        data = resp.json()
    except ValueError as e:
        raise ProtocolError(f"Malformed response from {resp.request.url.path}: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError(
            f"Expected a JSON object from {resp.request.url.path}, got {type(data).__name__}"
        )
    return data


class AgentClient:
    """Async HTTP client for one workspace on the agent server.

    Every agent endpoint lives under
    ``{base_url}/api/workspaces/{workspace_id}/agents/{agent_id}``.

    Args:
        base_url: Agent server base URL (e.g., "http://localhost:3000").
        workspace_id: Workspace the agents belong to.
        timeout: Timeout in seconds for non-streaming requests.
        transport: Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        base_url: str,
        workspace_id: str,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._workspace_id = workspace_id
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the HTTP session."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> AgentClient:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    def _require_client(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("AgentClient not started")
        return self._client

    def _agent_url(self, agent_id: str, path: str) -> str:
        return f"{self._base_url}/api/workspaces/{self._workspace_id}/agents/{agent_id}{path}"

    async def _post_json(self, url: str, payload: dict) -> dict:
        client = self._require_client()
        try:
            resp = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise NetworkError(str(e) or e.__class__.__name__) from e
        if resp.status_code >= 400:
            raise RemoteError(_error_text(resp.content, resp.status_code), status_code=resp.status_code)
        return _json_object(resp)

    async def stream_command(
        self,
        agent_id: str,
        message: str,
        *,
        model: str,
        user_message_id: str | None = None,
        timestamp: str | None = None,
    ) -> AsyncIterator[str]:
        """POST a command and yield the raw lines of the streamed reply.

        The read timeout is disabled: a stalled agent leaves the stream open
        until the caller stops iterating.
        """
        client = self._require_client()
        url = self._agent_url(agent_id, "/conversation/stream")
        payload: dict[str, Any] = {"message": message, "model": model}
        if user_message_id:
            payload["userMessageId"] = user_message_id
        if timestamp:
            payload["timestamp"] = timestamp

        try:
            async with client.stream(
                "POST",
                url,
                json=payload,
                timeout=httpx.Timeout(self._timeout, read=None),
            ) as resp:
                if resp.status_code >= 400:
                    body = await resp.aread()
                    raise RemoteError(_error_text(body, resp.status_code), status_code=resp.status_code)
                async for line in resp.aiter_lines():
                    yield line
        except httpx.HTTPError as e:
            logger.error("Reply stream failed", agent_id=agent_id, error=str(e))
            raise NetworkError(str(e) or e.__class__.__name__) from e

    async def get_conversation(self, agent_id: str) -> list[Message]:
        """Fetch the durable message log for an agent.

        Entries that are not valid messages are skipped.

        Raises:
            NetworkError: The store could not be reached.
            RemoteError: The store answered with an error status.
            ProtocolError: The reply is not a JSON object with a message list.
        """
        client = self._require_client()
        url = self._agent_url(agent_id, "/conversation")
        try:
            resp = await client.get(url)
        except httpx.HTTPError as e:
            raise NetworkError(str(e) or e.__class__.__name__) from e
        if resp.status_code != 200:
            raise RemoteError(_error_text(resp.content, resp.status_code), status_code=resp.status_code)

        entries = _json_object(resp).get("messages") or []
        if not isinstance(entries, list):
            raise ProtocolError(f"Expected a message list, got {type(entries).__name__}")

        messages: list[Message] = []
        for raw in entries:
            try:
                messages.append(Message.model_validate(raw))
            except pydantic.ValidationError:
                logger.warning(
                    "Skipping invalid stored message",
                    agent_id=agent_id,
                    message_id=raw.get("id") if isinstance(raw, dict) else None,
                )
        return messages

    async def save_message(self, agent_id: str, message: Message) -> None:
        """Upsert one message in the durable store (last write wins).

        Raises:
            PersistenceWarning: The write did not reach the store.
        """
        payload = {
            "message": message.content,
            "role": message.role.value,
            "messageId": message.id,
            "timestamp": message.timestamp,
            "metadata": message.metadata.model_dump(mode="json", exclude_none=True)
            if message.metadata
            else None,
            "saveOnly": True,
        }
        try:
            await self._post_json(self._agent_url(agent_id, "/conversation"), payload)
        except (NetworkError, ProtocolError, RemoteError) as e:
            raise PersistenceWarning(f"Failed to save message {message.id}: {e}") from e

    async def submit_tool_approval(
        self, agent_id: str, *, message_id: str, tool_name: str, approved: bool
    ) -> dict:
        """Report the operator's decision on a tool use."""
        payload = {"messageId": message_id, "toolName": tool_name, "approved": approved}
        return await self._post_json(self._agent_url(agent_id, "/tool-approval"), payload)

    async def restore_session(self, agent_id: str, session_id: str, model: str) -> bool:
        """Ask the remote side to reattach to a previous session."""
        payload = {"sessionId": session_id, "model": model}
        data = await self._post_json(self._agent_url(agent_id, "/session-restore"), payload)
        return bool(data.get("restored"))
