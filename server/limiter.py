# =============================================================================
# Trifecta Overlay - Global Backend Concurrency Limiter
# =============================================================================
# One limiter instance is shared by every WebSocket connection and every
# endpoint kind.  At most ``max_concurrent`` backend calls run at once;
# further calls wait in FIFO order and are promoted one by one as slots free.
#
# A slot belongs to the underlying call, not to the coroutine awaiting it: if
# the awaiting side is cancelled (e.g. its connection closed) the slot is only
# returned once the call itself has finished, so the cap also bounds the real
# number of open upstream requests.
# =============================================================================

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class _Slot:
    """A queued call waiting for a concurrency token."""

    task: Callable[[], Awaitable[Any]]
    granted: asyncio.Future = field(default=None)


class ConcurrencyLimiter:
    """
    FIFO concurrency limiter for asyncio callables.

    Args:
        max_concurrent: Maximum number of calls active at once (minimum 1).
    """

    def __init__(self, max_concurrent: int = 6):
        self._max = max(1, int(max_concurrent or 1))
        self._active = 0
        self._queue: Deque[_Slot] = deque()

    @property
    def max_concurrent(self) -> int:
        return self._max

    @property
    def active(self) -> int:
        """Number of calls currently holding a slot."""
        return self._active

    @property
    def queued(self) -> int:
        """Number of calls waiting for a slot."""
        return len(self._queue)

    async def run(self, task: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run ``task()`` once a slot is free and return its result.

        Exceptions from the task propagate to the caller; the slot is released
        on every exit path.

        Args:
            task: Zero-argument callable returning an awaitable.
        """
        loop = asyncio.get_running_loop()
        slot = _Slot(task=task, granted=loop.create_future())
        self._queue.append(slot)
        self._promote()

        try:
            await slot.granted
        except asyncio.CancelledError:
            if slot.granted.done() and not slot.granted.cancelled():
                # Promoted in the same tick we were cancelled: hand it back.
                self._release()
            else:
                self._discard(slot)
            raise

        try:
            inner = asyncio.ensure_future(task())
        except BaseException:
            self._release()
            raise

        inner.add_done_callback(self._on_done)
        return await asyncio.shield(inner)

    def _promote(self) -> None:
        while self._active < self._max and self._queue:
            slot = self._queue.popleft()
            if slot.granted.done():
                continue
            self._active += 1
            slot.granted.set_result(None)

    def _on_done(self, fut: asyncio.Future) -> None:
        if not fut.cancelled():
            # Retrieved here in case the awaiting side is already gone.
            fut.exception()
        self._release()

    def _release(self) -> None:
        self._active -= 1
        self._promote()

    def _discard(self, slot: _Slot) -> None:
        try:
            self._queue.remove(slot)
        except ValueError:
            pass
