"""
Process-wide admission guards: in-flight link registry, per-chat rate
limiter and the upload permit pool.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, Set

logger = logging.getLogger(__name__)


class InFlightLinks:
    """Set of links currently being processed. Claim and release are atomic."""

    def __init__(self) -> None:
        self._links: Set[str] = set()
        self._lock = asyncio.Lock()

    async def claim(self, url: str) -> bool:
        """Claim ``url``; False if another task already holds it."""
        async with self._lock:
            if url in self._links:
                return False
            self._links.add(url)
            return True

    async def release(self, url: str) -> None:
        async with self._lock:
            self._links.discard(url)

    def __contains__(self, url: object) -> bool:
        return url in self._links

    def __len__(self) -> int:
        return len(self._links)


class ChatRateLimiter:
    """Spaces accepted submissions from one chat by a minimum interval."""

    def __init__(
        self,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.interval = interval
        self._clock = clock
        self._last_send: Dict[int, float] = {}
        self._lock = asyncio.Lock()

    async def wait(self, chat_id: int) -> float:
        """
        Sleep until ``interval`` has passed since the chat's last accepted
        submission. Returns the time slept.

        The slot is reserved under the lock before sleeping, so concurrent
        submissions from one chat queue up ``interval`` apart without
        blocking other chats.
        """
        async with self._lock:
            now = self._clock()
            last = self._last_send.get(chat_id)
            scheduled = now if last is None else max(now, last + self.interval)
            self._prune(now)
            self._last_send[chat_id] = scheduled

        waited = scheduled - now
        if waited > 0:
            logger.info("Rate limiting: waiting %.2fs for chat %s", waited, chat_id)
            await asyncio.sleep(waited)
        return waited

    def _prune(self, now: float) -> None:
        """Forget chats whose last send is more than ``interval`` ago; they would not wait."""
        stale = [chat_id for chat_id, last in self._last_send.items() if now - last > self.interval]
        for chat_id in stale:
            del self._last_send[chat_id]

    def __len__(self) -> int:
        return len(self._last_send)


class UploadPermits:
    """Fixed pool of tokens bounding concurrent download+upload work."""

    def __init__(self, size: int) -> None:
        self.size = max(1, size)
        self._semaphore = asyncio.Semaphore(self.size)
        self.in_use = 0
        self.acquired = 0
        self.released = 0

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        await self._semaphore.acquire()
        self.in_use += 1
        self.acquired += 1
        try:
            yield
        finally:
            self.in_use -= 1
            self.released += 1
            self._semaphore.release()
