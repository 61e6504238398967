"""
Confirmation Poll Loop
----------------------
Fixed-interval status polling bounded by a deadline. Both timers live on the
running event loop; cancel() stops them synchronously. A tick that fires while
the previous query is still outstanding is skipped, so at most one query per
loop is ever in flight.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from cvpay.errors import NetworkError
from cvpay.observability.logging import log
import cvpay.observability.metrics as metrics
from cvpay.store.models import StatusResult


class StatusPoller:
    def __init__(
        self,
        query: Callable[[], Awaitable[StatusResult]],
        on_result: Callable[[StatusResult], Awaitable[None]],
        on_timeout: Callable[[], None],
        *,
        interval_sec: float,
        timeout_sec: float,
        name: str = "",
    ):
        if interval_sec <= 0 or timeout_sec <= 0:
            raise ValueError("interval_sec and timeout_sec must be positive")
        self._query = query
        self._on_result = on_result
        self._on_timeout = on_timeout
        self.interval_sec = float(interval_sec)
        self.timeout_sec = float(timeout_sec)
        self.name = name

        self._interval_handle: Optional[asyncio.TimerHandle] = None
        self._deadline_handle: Optional[asyncio.TimerHandle] = None
        self._in_flight: Optional[asyncio.Task] = None
        self._cancelled = False
        self._started = False

        self.ticks = 0
        self.skipped_ticks = 0
        self.errors = 0

    @property
    def running(self) -> bool:
        return self._started and not self._cancelled

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def start(self) -> None:
        if self._started:
            raise RuntimeError("StatusPoller can only be started once")
        loop = asyncio.get_running_loop()
        self._started = True
        self._interval_handle = loop.call_later(self.interval_sec, self._tick)
        self._deadline_handle = loop.call_later(self.timeout_sec, self._expire)
        log(event="poll_started", poller=self.name, intervalSec=self.interval_sec, timeoutSec=self.timeout_sec)

    def cancel(self) -> None:
        """Stop both timers. An in-flight query may still finish; its result is dropped."""
        if self._cancelled:
            return
        self._cancelled = True
        if self._interval_handle is not None:
            self._interval_handle.cancel()
            self._interval_handle = None
        if self._deadline_handle is not None:
            self._deadline_handle.cancel()
            self._deadline_handle = None
        log(event="poll_stopped", poller=self.name, ticks=self.ticks, skippedTicks=self.skipped_ticks, errors=self.errors)

    async def aclose(self) -> None:
        """cancel() plus abandon the in-flight query (component teardown)."""
        self.cancel()
        task = self._in_flight
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _tick(self) -> None:
        if self._cancelled:
            return
        loop = asyncio.get_running_loop()
        self._interval_handle = loop.call_later(self.interval_sec, self._tick)
        if self.in_flight:
            self.skipped_ticks += 1
            log(event="poll_tick_skipped", poller=self.name, reason="previous_poll_in_flight")
            return
        self.ticks += 1
        self._in_flight = loop.create_task(self._run_once())
        self._in_flight.add_done_callback(self._report_failure)

    async def _run_once(self) -> None:
        metrics.increment("poll_attempts")
        try:
            result = await self._query()
        except NetworkError as e:
            # Transient: the next tick retries, the deadline still applies
            self.errors += 1
            metrics.increment("poll_errors")
            log(event="poll_error", poller=self.name, error=str(e)[:200])
            return
        if self._cancelled:
            log(event="poll_result_discarded", poller=self.name, status=result.status)
            return
        await self._on_result(result)

    def _report_failure(self, task: asyncio.Task) -> None:
        # Nothing awaits a tick task; surface its exception here instead of at interpreter exit
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.errors += 1
            log(event="poll_task_failed", poller=self.name, errorType=type(exc).__name__, error=str(exc)[:300])

    def _expire(self) -> None:
        if self._cancelled:
            return
        self._deadline_handle = None
        log(event="poll_deadline_reached", poller=self.name, ticks=self.ticks, errors=self.errors)
        self.cancel()
        self._on_timeout()
