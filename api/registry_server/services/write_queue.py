import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger("agrinet.registry")

T = TypeVar("T")


class WriteSerializer:
    """
    Runs write operations one at a time, in arrival order.

    Each operation waits until every previously queued operation has settled
    (successfully or not). A failing operation releases the queue like any
    other, so it never blocks the writes behind it. Reads do not go through
    here.
    """

    def __init__(self):
        self._lock: Optional[asyncio.Lock] = None
        self._pending = 0

    @property
    def pending(self) -> int:
        """Operations queued or running."""
        return self._pending

    def _get_lock(self) -> asyncio.Lock:
        # created lazily so the lock belongs to the loop that serves requests
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def run(self, operation: Callable[[], Awaitable[T]], label: str = "write") -> T:
        self._pending += 1
        if self._pending > 1:
            logger.debug("[writes] %s queued behind %d operation(s)", label, self._pending - 1)
        try:
            async with self._get_lock():
                return await operation()
        finally:
            self._pending -= 1
