"""
Tracked background writes.

Fire-and-forget memory writes (fact extraction, tool interaction logs) are
spawned through a ``BackgroundWriter`` instead of bare ``create_task`` so
that:

- each write is bounded by its own timeout
- failures are logged, never raised into the turn
- the owner can ``flush()`` to wait until every write it issued settled

The pipeline keeps one writer per turn and flushes it before the next turn
for the same user retrieves memory.
"""
import asyncio
from typing import Awaitable, Callable, List, Optional, Set

import structlog

logger = structlog.get_logger()


class BackgroundWriter:

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._pending: Set[asyncio.Task] = set()
        self.failures = 0
        self._idle_callbacks: List[Callable[[], None]] = []

    @property
    def pending(self) -> int:
        return len(self._pending)

    def spawn(self, coro: Awaitable, name: str) -> asyncio.Task:
        """Schedule a write; returns immediately."""
        task = asyncio.create_task(self._guarded(coro, name), name=name)
        self._pending.add(task)
        task.add_done_callback(self._settled)
        return task

    def _settled(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not self._pending:
            callbacks, self._idle_callbacks = self._idle_callbacks, []
            for callback in callbacks:
                callback()

    def when_idle(self, callback: Callable[[], None]) -> None:
        """Call ``callback`` once every write issued so far has settled (now, if none is pending)."""
        if self._pending:
            self._idle_callbacks.append(callback)
        else:
            callback()

    async def _guarded(self, coro: Awaitable, name: str) -> None:
        try:
            await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError:
            self.failures += 1
            logger.warning("background_write_timeout", write=name, timeout=self.timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.warning("background_write_failed", write=name, error=str(e))

    async def flush(self, timeout: Optional[float] = None) -> None:
        """Wait for every write issued so far to settle (success, failure or timeout)."""
        if not self._pending:
            return
        pending = list(self._pending)
        done, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            logger.warning("background_flush_incomplete", pending=len(still_pending))
