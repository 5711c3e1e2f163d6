"""Fire-and-forget persistence of conversation messages."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from contextlib import suppress

import structlog

from agentlink.client import AgentClient
from agentlink.errors import PersistenceWarning
from agentlink.models import Message

logger = structlog.get_logger(__name__)


class ChunkThrottle:
    """Decides when a streaming message is due for a checkpoint write.

    A write is due after ``every_chunks`` chunks or once ``every_seconds``
    have passed since the last write, whichever comes first. The check runs
    when a chunk arrives.
    """

    def __init__(
        self,
        every_chunks: int = 5,
        every_seconds: float = 2.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._every_chunks = max(1, every_chunks)
        self._every_seconds = every_seconds
        self._clock = clock
        self._chunks = 0
        self._last_write = clock()

    def reset(self) -> None:
        self._chunks = 0
        self._last_write = self._clock()

    def note_chunk(self) -> bool:
        """Record one chunk; return True when a checkpoint write is due."""
        self._chunks += 1
        elapsed = self._clock() - self._last_write
        if self._chunks >= self._every_chunks or elapsed >= self._every_seconds:
            self.reset()
            return True
        return False


class PersistenceBridge:
    """Pushes message snapshots to the durable store for one agent.

    ``save()`` never blocks and never raises. Snapshots are written by a single
    background worker in the order they were saved, so a completion write can
    never be overtaken by an earlier checkpoint of the same message. Failed
    writes are logged and dropped.
    """

    def __init__(self, client: AgentClient, agent_id: str) -> None:
        self._client = client
        self._agent_id = agent_id
        self._queue: asyncio.Queue[Message] = asyncio.Queue()
        self._worker: asyncio.Task | None = None

    @property
    def pending(self) -> int:
        """Number of snapshots not yet written."""
        return self._queue.qsize()

    def save(self, message: Message) -> None:
        """Queue a snapshot of ``message`` for writing."""
        self._queue.put_nowait(message.model_copy(deep=True))
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def flush(self) -> None:
        """Wait until every queued snapshot has been written or dropped."""
        if self._worker is not None and not self._worker.done():
            await self._queue.join()

    async def close(self) -> None:
        """Flush outstanding writes and stop the worker."""
        await self.flush()
        if self._worker is not None:
            self._worker.cancel()
            with suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None

    async def _run(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self._client.save_message(self._agent_id, message)
                logger.debug(
                    "Message persisted",
                    agent_id=self._agent_id,
                    message_id=message.id,
                    backend=message.metadata.backend if message.metadata else None,
                )
            except PersistenceWarning as e:
                logger.warning(str(e), agent_id=self._agent_id, message_id=message.id)
            except Exception:
                logger.exception(
                    "Unexpected persistence failure",
                    agent_id=self._agent_id,
                    message_id=message.id,
                )
            finally:
                self._queue.task_done()
