"""
Scheduling Module
=================

Cancellable timers for every ambient delay in the client core: typing
throttle and display expiry, reconnect backoff, heartbeat, overlay purge and
remote call timeouts.

Two implementations share one interface:
- AsyncioScheduler: real event loop timers
- VirtualScheduler: a manual clock driven by tests via ``await advance()``
"""

import asyncio
import inspect
import logging
import time
from abc import ABC, abstractmethod
from functools import partial
from typing import Any, Awaitable, Callable, List, Optional, Set

from .errors import NetworkError, RemoteTimeoutError

logger = logging.getLogger("chatsync.scheduling")

Callback = Callable[[], Any]


class ScheduledTask:
    """
    Handle for a scheduled callback.

    Attributes:
        when: Scheduler time at which the callback fires next
        interval: Repeat interval in seconds, or None for one-shot tasks
    """

    def __init__(self, when: float, callback: Callback, interval: Optional[float] = None):
        self.when = when
        self.callback = callback
        self.interval = interval
        self.sequence = 0
        self._cancelled = False
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class Scheduler(ABC):
    """Clock plus cancellable one-shot and repeating timers."""

    @abstractmethod
    def now(self) -> float:
        """Current time in seconds."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callback) -> ScheduledTask:
        """Run callback once after delay seconds."""

    @abstractmethod
    def call_every(self, interval: float, callback: Callback) -> ScheduledTask:
        """Run callback every interval seconds until cancelled."""


class AsyncioScheduler(Scheduler):
    """Scheduler backed by the running asyncio event loop."""

    def __init__(self):
        # Keeps coroutine callbacks alive until they finish
        self._running: Set[asyncio.Task] = set()

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callback) -> ScheduledTask:
        task = ScheduledTask(self.now() + delay, callback)
        self._arm(task, delay)
        return task

    def call_every(self, interval: float, callback: Callback) -> ScheduledTask:
        task = ScheduledTask(self.now() + interval, callback, interval=interval)
        self._arm(task, interval)
        return task

    def _arm(self, task: ScheduledTask, delay: float) -> None:
        loop = asyncio.get_running_loop()
        task._handle = loop.call_later(max(delay, 0.0), self._fire, task)

    def _fire(self, task: ScheduledTask) -> None:
        if task.cancelled:
            return

        if task.interval is not None:
            task.when = self.now() + task.interval
            self._arm(task, task.interval)
        else:
            task._handle = None

        try:
            result = task.callback()
        except Exception as e:
            logger.error(f"Scheduled callback failed: {e}", exc_info=True)
            return

        if inspect.isawaitable(result):
            running = asyncio.ensure_future(result)
            self._running.add(running)
            running.add_done_callback(self._finished)

    def _finished(self, running: asyncio.Task) -> None:
        self._running.discard(running)
        if not running.cancelled() and running.exception() is not None:
            logger.error(
                f"Scheduled coroutine failed: {running.exception()}",
                exc_info=running.exception()
            )


class VirtualScheduler(Scheduler):
    """
    Manually advanced clock for deterministic tests.

    Nothing fires until ``advance()`` is awaited. Due tasks run in time
    order, ties in the order they were scheduled; coroutine callbacks are
    awaited before the next task fires.

    Example:
        scheduler = VirtualScheduler()
        scheduler.call_later(2.0, handler)
        await scheduler.advance(2.0)  # handler has run
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._tasks: List[ScheduledTask] = []
        self._sequence = 0

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callback) -> ScheduledTask:
        return self._add(ScheduledTask(self._now + max(delay, 0.0), callback))

    def call_every(self, interval: float, callback: Callback) -> ScheduledTask:
        return self._add(ScheduledTask(self._now + interval, callback, interval=interval))

    @property
    def pending(self) -> List[ScheduledTask]:
        """Scheduled tasks that have neither fired nor been cancelled."""
        return [t for t in self._tasks if not t.cancelled]

    async def advance(self, seconds: float) -> None:
        target = self._now + seconds

        while True:
            self._tasks = [t for t in self._tasks if not t.cancelled]
            due = [t for t in self._tasks if t.when <= target]
            if not due:
                break

            task = min(due, key=lambda t: (t.when, t.sequence))
            self._now = task.when

            if task.interval is not None:
                task.when += task.interval
                task.sequence = self._next_sequence()
            else:
                self._tasks.remove(task)

            try:
                result = task.callback()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Scheduled callback failed: {e}", exc_info=True)

            # Let tasks woken by the callback run before the next timer
            await asyncio.sleep(0)

        self._now = target
        await asyncio.sleep(0)

    def _add(self, task: ScheduledTask) -> ScheduledTask:
        task.sequence = self._next_sequence()
        self._tasks.append(task)
        return task

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence


# ============================================================================
# Remote Call Timeout
# ============================================================================

def _discard_late_result(operation: str, call: asyncio.Future) -> None:
    if call.cancelled():
        return
    exc = call.exception()
    if exc is not None:
        logger.debug(f"Late failure of {operation} discarded: {exc}")
    else:
        logger.info(f"Late completion of {operation} discarded after timeout")


async def call_remote(
    awaitable: Awaitable[Any],
    *,
    timeout: float,
    scheduler: Scheduler,
    operation: str,
) -> Any:
    """
    Await a repository call, racing it against a scheduler timeout.

    The underlying call is never cancelled: on timeout the caller gets a
    RemoteTimeoutError and the eventual result is logged and dropped.

    Args:
        awaitable: Repository call returning a RepoResult
        timeout: Deadline in seconds
        scheduler: Clock used for the deadline
        operation: Name used in errors and logs

    Returns:
        The RepoResult payload

    Raises:
        RemoteTimeoutError: Deadline elapsed first
        NetworkError: Repository returned an error string
    """
    call = asyncio.ensure_future(awaitable)
    expired = asyncio.get_running_loop().create_future()

    def _expire() -> None:
        if not expired.done():
            expired.set_result(None)

    timer = scheduler.call_later(timeout, _expire)
    try:
        await asyncio.wait({call, expired}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        timer.cancel()

    if not call.done():
        call.add_done_callback(partial(_discard_late_result, operation))
        logger.warning(
            f"{operation} timed out",
            extra={"operation": operation, "timeout": timeout}
        )
        raise RemoteTimeoutError(operation, timeout)

    result = call.result()
    if not result.ok:
        raise NetworkError(result.error, status_code=result.status_code)
    return result.data
