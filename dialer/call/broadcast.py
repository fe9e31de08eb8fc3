"""
Server-Sent Events fan-out of provider pingbacks to connected dialers.
"""

import asyncio
import json
from typing import AsyncGenerator, Optional, Set

from dialer.call.pingback import PingbackEvent
from dialer.config import settings
from dialer.utils.logging import LoggerMixin


def format_sse(event: PingbackEvent) -> str:
    return f"data: {json.dumps(event.to_dict(), default=str)}\n\n"


class PingbackBroadcaster(LoggerMixin):
    """Keeps one queue per connected listener and copies every pingback to each."""

    def __init__(self, keepalive_interval: Optional[float] = None, max_queue_size: int = 100):
        self.keepalive_interval = (
            settings.pingback_keepalive_interval if keepalive_interval is None else keepalive_interval
        )
        self.max_queue_size = max_queue_size
        self._listeners: Set[asyncio.Queue] = set()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def register(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._listeners.add(queue)
        self.logger.info("Pingback listener connected", listeners=len(self._listeners))
        return queue

    def unregister(self, queue: asyncio.Queue):
        self._listeners.discard(queue)
        self.logger.info("Pingback listener disconnected", listeners=len(self._listeners))

    def broadcast(self, event: PingbackEvent) -> int:
        """
        Queue a pingback for every listener.

        Returns:
            Number of listeners that received it
        """
        delivered = 0
        for queue in list(self._listeners):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                self.logger.warning("Pingback listener is not keeping up, dropping event", kind=event.kind.value)

        self.logger.info(
            "Pingback broadcast",
            kind=event.kind.value,
            call_id=event.call_id,
            listeners=delivered,
        )
        return delivered

    async def stream(self) -> AsyncGenerator[str, None]:
        """Yield SSE frames for one listener until the client goes away."""
        queue = self.register()
        try:
            yield ": connected\n\n"
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=self.keepalive_interval)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield format_sse(event)
        finally:
            self.unregister(queue)
