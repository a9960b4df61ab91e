"""
Active turn registry.

At most one turn per user is active. Starting a new turn (or an explicit
interrupt) supersedes the previous one: its cancellation flag is set, its
generation task is cancelled, and its stream stops emitting events.
"""
import asyncio
import uuid
from functools import partial
from dataclasses import dataclass, field
from typing import Dict, Optional

import structlog

from .background import BackgroundWriter

logger = structlog.get_logger()


@dataclass
class TurnHandle:
    user_id: str
    request_id: str
    writer: BackgroundWriter
    # Writes of the turn this one superseded; flushed before memory retrieval
    previous_writer: Optional[BackgroundWriter] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    generation_task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self, reason: str) -> None:
        if self.cancel_event.is_set():
            return
        self.cancel_event.set()
        if self.generation_task is not None and not self.generation_task.done():
            self.generation_task.cancel()
        logger.info("turn_cancelled", request_id=self.request_id, reason=reason)


class TurnRegistry:

    def __init__(self, write_timeout: float = 5.0):
        self.write_timeout = write_timeout
        self._active: Dict[str, TurnHandle] = {}
        self._last_writer: Dict[str, BackgroundWriter] = {}

    def begin(self, user_id: str) -> TurnHandle:
        """Register a new turn for ``user_id``, superseding any active one."""
        existing = self._active.get(user_id)
        if existing is not None:
            existing.cancel("superseded")

        handle = TurnHandle(
            user_id=user_id,
            request_id=uuid.uuid4().hex[:12],
            writer=BackgroundWriter(timeout=self.write_timeout),
            previous_writer=self._last_writer.get(user_id),
        )
        self._active[user_id] = handle
        self._last_writer[user_id] = handle.writer
        return handle

    def interrupt(self, user_id: str) -> bool:
        """Cancel the user's active turn. Returns False if none was running."""
        handle = self._active.get(user_id)
        if handle is None or handle.cancelled:
            return False
        handle.cancel("interrupted")
        return True

    def finish(self, handle: TurnHandle) -> None:
        if self._active.get(handle.user_id) is handle:
            del self._active[handle.user_id]
        # The writer stays reachable until its writes settle so the next turn can flush them
        handle.writer.when_idle(partial(self._release_writer, handle))

    def _release_writer(self, handle: TurnHandle) -> None:
        if self._last_writer.get(handle.user_id) is handle.writer:
            del self._last_writer[handle.user_id]

    def active(self, user_id: str) -> Optional[TurnHandle]:
        return self._active.get(user_id)
