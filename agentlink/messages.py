"""In-memory conversation log for one agent."""

from __future__ import annotations

import itertools
import secrets
import time
from collections.abc import Iterable, Iterator
from datetime import datetime, timezone

from agentlink.models import Message, MessageMetadata, Role

_id_counter = itertools.count(1)


def new_message_id() -> str:
    """Return a message id that is unique and increasing within this process."""
    return f"msg_{int(time.time() * 1000)}_{next(_id_counter):06d}_{secrets.token_hex(3)}"


def utc_now_iso() -> str:
    """Return an ISO8601 UTC timestamp with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime | None:
    """Parse an ISO8601 timestamp, or return None when it is unusable."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class MessageStore:
    """Ordered message log with a single mutable "live" assistant message.

    Messages are only ever appended. The one exception is the assistant
    message currently being streamed, whose content and metadata change in
    place until it is finalized; after that it is treated as immutable.
    """

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: list[Message] = list(messages)
        self._index: dict[str, int] = {m.id: i for i, m in enumerate(self._messages)}
        self._live_id: str | None = None

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    @property
    def live_id(self) -> str | None:
        return self._live_id

    def get(self, message_id: str) -> Message | None:
        idx = self._index.get(message_id)
        return self._messages[idx] if idx is not None else None

    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def append(self, message: Message) -> Message:
        """Append a finished message (user, system, or a restored assistant reply)."""
        if message.id in self._index:
            raise ValueError(f"Duplicate message id: {message.id}")
        self._index[message.id] = len(self._messages)
        self._messages.append(message)
        return message

    def begin_live(self, message_id: str | None = None) -> Message:
        """Append an empty assistant placeholder and make it the live message."""
        message = Message(
            id=message_id or new_message_id(),
            timestamp=utc_now_iso(),
            role=Role.ASSISTANT,
            content="",
            metadata=MessageMetadata(backend="streaming-live"),
        )
        self.append(message)
        self._live_id = message.id
        return message

    def _require_live(self, message_id: str) -> Message:
        if message_id != self._live_id:
            raise ValueError(f"Message {message_id} is not streaming")
        message = self.get(message_id)
        if message is None:
            raise ValueError(f"Message {message_id} is not in the log")
        return message

    def append_content(self, message_id: str, text: str) -> Message:
        """Append visible text to the live message."""
        message = self._require_live(message_id)
        message.content += text
        return message

    def live_metadata(self, message_id: str) -> MessageMetadata:
        """Return the mutable metadata of the live message."""
        message = self._require_live(message_id)
        if message.metadata is None:
            message.metadata = MessageMetadata(backend="streaming-live")
        return message.metadata

    def finalize(self, message_id: str, *, complete: bool = True) -> Message:
        """Freeze the live message; ``complete`` stamps the authoritative tag."""
        message = self._require_live(message_id)
        if complete:
            self.live_metadata(message_id).backend = "streaming-complete"
        self._live_id = None
        return message

    def release_live(self, message_id: str) -> None:
        """Stop treating ``message_id`` as live without marking it complete."""
        if self._live_id == message_id:
            self._live_id = None

    def replace_all(self, messages: Iterable[Message]) -> None:
        """Replace the whole log, e.g. with the durable store's copy."""
        self._messages = list(messages)
        self._index = {m.id: i for i, m in enumerate(self._messages)}
        if self._live_id not in self._index:
            self._live_id = None

    def clear(self) -> None:
        """Empty the log. This is an explicit operator action, not protocol."""
        self._messages = []
        self._index = {}
        self._live_id = None

    def snapshot(self) -> list[Message]:
        """Return deep copies of all messages."""
        return [m.model_copy(deep=True) for m in self._messages]

    def command_history(self) -> list[str]:
        """Return the operator's previous commands, oldest first."""
        return [m.content for m in self._messages if m.role == Role.USER]
