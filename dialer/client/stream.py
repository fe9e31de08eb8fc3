"""
Listener for the backend's pingback event stream.
"""

import asyncio
import json
from typing import TYPE_CHECKING, Optional

import aiohttp

from dialer.call.pingback import PingbackEvent, PingbackKind
from dialer.config import settings
from dialer.utils.logging import LoggerMixin, call_context

if TYPE_CHECKING:
    from dialer.call.controller import CallController

PINGBACK_STREAM_PATH = "/pingback/stream"


def parse_sse_data(line: str) -> Optional[PingbackEvent]:
    """Turn one ``data:`` line of the stream into a pingback, if it is one."""
    if not line.startswith("data:"):
        return None

    try:
        message = json.loads(line[len("data:"):].strip())
        kind = PingbackKind(message["type"])
    except (ValueError, KeyError, TypeError):
        return None

    return PingbackEvent(
        kind=kind,
        data=message.get("data") or {},
        timestamp=message.get("timestamp") or "",
    )


def reconnect_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff for the given attempt number, capped."""
    return min(base_delay * (2 ** attempt), max_delay)


class PingbackListener(LoggerMixin):
    """
    Feeds pingbacks from the backend stream into a call controller.

    run() makes a single connection; run_forever() keeps reconnecting
    with exponential backoff until stop() is called or too many
    consecutive attempts fail.
    """

    def __init__(
        self,
        controller: "CallController",
        base_url: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.controller = controller
        self.base_url = (base_url or settings.backend_base_url).rstrip("/")
        self.session = session
        self.connected = False
        self.connections = 0
        self._stopped = False

    def stop(self):
        """Finish after the current line and stop reconnecting."""
        self._stopped = True

    def handle_line(self, line: str) -> Optional[PingbackEvent]:
        """Apply one stream line; comments and keepalives are ignored."""
        event = parse_sse_data(line)
        if event is None:
            return None

        with call_context(event.call_id):
            try:
                self.controller.handle_pingback(event)
            except Exception as e:
                self.log_error("apply_pingback", e, kind=event.kind.value)
        return event

    async def run(self):
        """Consume the stream until it closes."""
        owns_session = self.session is None
        session = self.session or aiohttp.ClientSession()
        url = f"{self.base_url}{PINGBACK_STREAM_PATH}"

        try:
            async with session.get(url, timeout=aiohttp.ClientTimeout(total=None)) as response:
                response.raise_for_status()
                self.connected = True
                self.connections += 1
                self.logger.info("Pingback stream connected")

                async for raw in response.content:
                    self.handle_line(raw.decode("utf-8", errors="replace").strip())
                    if self._stopped:
                        break

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.log_error("pingback_stream", e)
            raise
        finally:
            self.connected = False
            if owns_session:
                await session.close()

    async def run_forever(
        self,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
    ):
        """
        Keep the stream open across disconnects.

        Args:
            max_attempts: Consecutive failed attempts before giving up
            base_delay: First backoff delay in seconds
            max_delay: Upper bound for the backoff delay

        Raises:
            aiohttp.ClientError: The last connection error, once
                max_attempts consecutive attempts have failed
        """
        max_attempts = settings.pingback_reconnect_attempts if max_attempts is None else max_attempts
        base_delay = settings.pingback_reconnect_base_delay if base_delay is None else base_delay
        max_delay = settings.pingback_reconnect_max_delay if max_delay is None else max_delay

        self._stopped = False
        attempts = 0
        while not self._stopped:
            connections = self.connections
            try:
                await self.run()
            except (aiohttp.ClientError, asyncio.TimeoutError):
                if self.connections > connections:
                    attempts = 0
                if attempts >= max_attempts:
                    self.logger.error("Pingback stream reconnect attempts exhausted", attempts=attempts)
                    raise
                attempts += 1
            else:
                attempts = 0

            if self._stopped:
                break

            delay = reconnect_delay(attempts, base_delay, max_delay)
            self.logger.info("Reconnecting to pingback stream", attempt=attempts, delay=delay)
            await asyncio.sleep(delay)
