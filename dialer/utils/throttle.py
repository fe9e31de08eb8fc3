"""
Rate limiting and debouncing for UI-triggered call actions.
"""

import asyncio
import functools
import inspect
import time
from typing import Any, Awaitable, Callable, Optional

from dialer.utils.logging import get_logger

logger = get_logger(__name__)


class RateLimited:
    """
    Wraps an async callable so it runs at most once per interval.

    Calls made while an invocation is in flight join it and receive the
    same result. Calls made within ``min_interval`` seconds of the last
    invocation's start are dropped and resolve to ``None``.
    """

    def __init__(
        self,
        func: Callable[..., Awaitable[Any]],
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.func = func
        self.min_interval = min_interval
        self._clock = clock
        self._last_call: Optional[float] = None
        self._pending: Optional[asyncio.Future] = None
        functools.update_wrapper(self, func, updated=())

    @property
    def in_flight(self) -> bool:
        return self._pending is not None and not self._pending.done()

    async def __call__(self, *args, **kwargs) -> Any:
        if self.in_flight:
            # Shielded so a cancelled joiner does not abort the shared call
            return await asyncio.shield(self._pending)

        now = self._clock()
        if self._last_call is not None and now - self._last_call < self.min_interval:
            logger.debug(
                "Rate limited call dropped",
                func=getattr(self.func, "__qualname__", repr(self.func)),
                since_last_ms=(now - self._last_call) * 1000,
            )
            return None

        self._last_call = now
        self._pending = asyncio.ensure_future(self.func(*args, **kwargs))
        return await asyncio.shield(self._pending)

    def reset(self):
        """Forget the last invocation time."""
        self._last_call = None


def rate_limit(func: Callable[..., Awaitable[Any]], min_interval: float) -> RateLimited:
    """
    Create a rate-limited version of an async function.

    Args:
        func: Coroutine function to wrap
        min_interval: Minimum seconds between invocation starts

    Returns:
        Wrapper whose state is private to this call
    """
    return RateLimited(func, min_interval)


class Debounced:
    """
    Coalesces rapid calls into one execution with the latest arguments.

    The wrapped callable runs once ``wait`` seconds pass without another
    call. Coroutine functions are scheduled as tasks on the running loop.
    """

    def __init__(self, func: Callable[..., Any], wait: float):
        self.func = func
        self.wait = wait
        self._handle: Optional[asyncio.TimerHandle] = None
        self._args: tuple = ()
        self._kwargs: dict = {}
        self._task: Optional[asyncio.Task] = None
        functools.update_wrapper(self, func, updated=())

    @property
    def pending(self) -> bool:
        return self._handle is not None

    @property
    def last_task(self) -> Optional[asyncio.Task]:
        """Task of the last coroutine execution, if any."""
        return self._task

    def __call__(self, *args, **kwargs) -> None:
        loop = asyncio.get_running_loop()
        if self._handle is not None:
            self._handle.cancel()
        self._args = args
        self._kwargs = kwargs
        self._handle = loop.call_later(self.wait, self._fire)

    def cancel(self):
        """Drop the pending execution, if any."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def flush(self):
        """Run the pending execution now instead of waiting."""
        if self._handle is not None:
            self._handle.cancel()
            self._fire()

    def _fire(self):
        self._handle = None
        args, kwargs = self._args, self._kwargs
        self._args, self._kwargs = (), {}

        try:
            result = self.func(*args, **kwargs)
        except Exception as e:
            logger.error(
                "Debounced call failed",
                func=getattr(self.func, "__qualname__", repr(self.func)),
                error=str(e),
            )
            return

        if inspect.isawaitable(result):
            self._task = asyncio.ensure_future(result)
            self._task.add_done_callback(self._log_task_failure)

    def _log_task_failure(self, task: asyncio.Task):
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Debounced call failed",
                func=getattr(self.func, "__qualname__", repr(self.func)),
                error=str(task.exception()),
            )


def debounce(func: Callable[..., Any], wait: float) -> Debounced:
    """
    Create a debounced version of a function.

    Args:
        func: Function or coroutine function to wrap
        wait: Quiet period in seconds before the call goes through

    Returns:
        Wrapper that must be called from a running event loop
    """
    return Debounced(func, wait)
