"""Decoding of the agent's streamed reply.

The reply body is a sequence of ``data: <json>`` records. Each record becomes a
:class:`StreamEvent`. Chunk content may additionally carry inline metadata
sentinels of the form ``<<<METADATA:<TYPE>:<json>>>>``; those are split off
from the visible text by :func:`split_sentinels` and folded into the message
metadata by :func:`apply_metadata`.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass
from enum import Enum
from typing import Any

import pydantic
import structlog

from agentlink.models import (
    MessageMetadata,
    ResultInfo,
    ThinkingEvent,
    ToolResultEvent,
    ToolUseEvent,
    Usage,
)

logger = structlog.get_logger(__name__)

_DATA_PREFIX = "data:"

# Some agent servers prefix sentinels with CLAUDE_; both are accepted.
SENTINEL_OPENERS = ("<<<METADATA:", "<<<CLAUDE_METADATA:")
SENTINEL_CLOSER = ">>>"

_json_decoder = json.JSONDecoder()

# Input keys that best describe what a tool is about to do, most specific first.
_OPERATION_KEYS = ("command", "file_path", "notebook_path", "path", "pattern", "url", "query")


class FrameType(str, Enum):
    """Frame types of the reply stream."""
    START = "start"
    CHUNK = "chunk"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    """One decoded frame."""
    type: FrameType
    content: str = ""
    error: str | None = None
    message_id: str | None = None


def parse_frame(line: str) -> StreamEvent | None:
    """Decode one line of the stream, or return None if it carries no event.

    Blank lines, SSE comments and the empty ``data:`` terminator are skipped
    silently. Anything else that cannot be decoded is logged and dropped.
    """
    line = line.strip()
    if not line or line.startswith(":"):
        return None
    if not line.startswith(_DATA_PREFIX):
        logger.warning("Unexpected line in reply stream", line=line[:100])
        return None

    payload = line[len(_DATA_PREFIX):].strip()
    if not payload:
        return None

    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.warning("Invalid JSON in reply frame", payload=payload[:100])
        return None
    if not isinstance(data, dict):
        logger.warning("Reply frame is not an object", payload=payload[:100])
        return None

    try:
        frame_type = FrameType(data.get("type"))
    except ValueError:
        logger.debug("Ignoring frame of unknown type", frame_type=data.get("type"))
        return None

    if frame_type is FrameType.CHUNK:
        content = data.get("content")
        if not isinstance(content, str):
            logger.warning("Chunk frame without text content", payload=payload[:100])
            return None
        return StreamEvent(FrameType.CHUNK, content=content)
    if frame_type is FrameType.ERROR:
        error = data.get("error") or data.get("message") or "Unknown error"
        return StreamEvent(FrameType.ERROR, error=str(error))
    if frame_type is FrameType.COMPLETE:
        message_id = data.get("message_id")
        return StreamEvent(FrameType.COMPLETE, message_id=str(message_id) if message_id else None)
    return StreamEvent(FrameType.START)


async def decode_frames(lines: AsyncIterable[str]) -> AsyncIterator[StreamEvent]:
    """Turn an async iterable of text lines into events, preserving order."""
    async for line in lines:
        event = parse_frame(line)
        if event is not None:
            yield event


# ---------------------------------------------------------------------------
# Metadata sentinels
# ---------------------------------------------------------------------------


class MetadataKind(str, Enum):
    """Metadata buckets a sentinel can address."""
    SYSTEM = "SYSTEM"
    USAGE = "USAGE"
    TOOL_USE = "TOOL_USE"
    TOOL_RESULT = "TOOL_RESULT"
    THINKING = "THINKING"
    RESULT = "RESULT"


@dataclass(frozen=True)
class MetadataSentinel:
    kind: MetadataKind
    payload: Any


def _match_sentinel(content: str, start: int) -> tuple[MetadataSentinel, int] | None:
    """Match a complete sentinel at ``start``; return it and the end offset."""
    for opener in SENTINEL_OPENERS:
        if content.startswith(opener, start):
            break
    else:
        return None

    type_start = start + len(opener)
    colon = content.find(":", type_start)
    if colon < 0:
        return None
    try:
        kind = MetadataKind(content[type_start:colon])
    except ValueError:
        return None

    # The payload ends where the JSON value ends, so ">>>" inside a JSON
    # string cannot terminate the sentinel early.
    try:
        payload, end = _json_decoder.raw_decode(content, colon + 1)
    except json.JSONDecodeError:
        return None
    if not content.startswith(SENTINEL_CLOSER, end):
        return None
    return MetadataSentinel(kind, payload), end + len(SENTINEL_CLOSER)


def split_sentinels(content: str) -> tuple[str, list[MetadataSentinel]]:
    """Separate visible text from metadata sentinels.

    Returns the visible text (content with every well-formed sentinel removed)
    and the sentinels in order of appearance. A malformed sentinel is kept
    verbatim as visible text.
    """
    if "<<<" not in content:
        return content, []

    visible: list[str] = []
    sentinels: list[MetadataSentinel] = []
    cursor = 0
    pos = 0
    while True:
        start = content.find("<<<", pos)
        if start < 0:
            break
        match = _match_sentinel(content, start)
        if match is None:
            if content.startswith(SENTINEL_OPENERS, start):
                logger.warning(
                    "Malformed metadata sentinel kept as text",
                    snippet=content[start:start + 80],
                )
            pos = start + 1
            continue
        sentinel, end = match
        visible.append(content[cursor:start])
        sentinels.append(sentinel)
        cursor = pos = end
    visible.append(content[cursor:])
    return "".join(visible), sentinels


def apply_metadata(metadata: MessageMetadata, sentinel: MetadataSentinel) -> ToolUseEvent | None:
    """Fold a sentinel into ``metadata``.

    Returns the recorded tool use for ``TOOL_USE`` sentinels so the caller can
    surface the current operation and consult the approval gate.
    """
    payload = sentinel.payload
    if not isinstance(payload, dict):
        logger.warning("Metadata payload is not an object", kind=sentinel.kind.value)
        return None

    try:
        if sentinel.kind is MetadataKind.SYSTEM:
            if payload.get("model"):
                metadata.model = str(payload["model"])
            if payload.get("session_id"):
                metadata.session_id = str(payload["session_id"])
            tools = payload.get("tools")
            if isinstance(tools, list):
                metadata.tools = [str(t) for t in tools]
        elif sentinel.kind is MetadataKind.USAGE:
            metadata.usage = Usage.model_validate(payload)
        elif sentinel.kind is MetadataKind.TOOL_USE:
            tool_use = ToolUseEvent.model_validate(payload)
            metadata.tool_uses.append(tool_use)
            return tool_use
        elif sentinel.kind is MetadataKind.TOOL_RESULT:
            metadata.tool_results.append(ToolResultEvent.model_validate(payload))
        elif sentinel.kind is MetadataKind.THINKING:
            metadata.thinking.append(ThinkingEvent.model_validate(payload))
        elif sentinel.kind is MetadataKind.RESULT:
            metadata.result = ResultInfo.model_validate(payload)
    except pydantic.ValidationError as exc:
        logger.warning(
            "Invalid metadata payload dropped",
            kind=sentinel.kind.value,
            error=str(exc),
        )
    return None


def describe_tool_use(tool_use: ToolUseEvent) -> str:
    """Short human-readable description of a tool use, e.g. ``Bash: ls -la``."""
    if tool_use.operation_summary:
        return tool_use.operation_summary
    name = tool_use.name or "tool"
    if isinstance(tool_use.input, dict):
        for key in _OPERATION_KEYS:
            value = tool_use.input.get(key)
            if value:
                detail = str(value).strip().splitlines()[0] if str(value).strip() else ""
                if len(detail) > 80:
                    detail = detail[:77] + "..."
                if detail:
                    return f"{name}: {detail}"
    return name
