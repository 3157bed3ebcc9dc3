"""
Process-wide serialization gate for certificate operations.

At most one issue, renew or revoke talks to the CA at a time. The gate
also tracks a *processing* flag that interested parties (the UI status
websocket) can subscribe to.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class CertGate:
    """
    Mutual exclusion plus a broadcast of the processing status.

    Subscribers get a bounded queue that immediately receives the
    current status. Publishing never blocks: a subscriber whose queue is
    full misses that update.
    """

    def __init__(self, subscriber_queue_size: int = 8):
        self._lock = asyncio.Lock()
        self._processing = False
        self._subscribers: set[asyncio.Queue] = set()
        self._subscriber_queue_size = subscriber_queue_size

    async def acquire(self) -> None:
        """Block until no other certificate operation is in flight."""
        await self._lock.acquire()
        self._processing = True
        self._publish(True)

    def release(self) -> None:
        self._processing = False
        self._publish(False)
        self._lock.release()

    def is_processing(self) -> bool:
        return self._processing

    @asynccontextmanager
    async def hold(self):
        await self.acquire()
        try:
            yield self
        finally:
            self.release()

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._subscriber_queue_size)
        queue.put_nowait(self._processing)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def _publish(self, status: bool) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(status)
            except asyncio.QueueFull:
                logger.debug("Processing status subscriber is full, skipping update")


# Singleton instance
_cert_gate: CertGate | None = None


def get_cert_gate() -> CertGate:
    """Get the global certificate gate instance."""
    global _cert_gate
    if _cert_gate is None:
        _cert_gate = CertGate()
    return _cert_gate
