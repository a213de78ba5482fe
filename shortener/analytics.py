"""Background click recording for the redirect path.

Redirects must not wait on analytics, and analytics must not vanish just
because the HTTP response was sent or the process is shutting down. The
``ClickDispatcher`` sits between the two: the request hands off a
``ClickEventPayload`` without blocking, and a single worker task drains
the queue into the analytics sink and the URL store.

Flow Diagram — Click Dispatch
=============================
::
    request task                         worker task
    ┌─────────────┐                      ┌─────────────────┐
    │ resolve()   │                      │ queue.get()     │
    │ result done │                      └────────┬────────┘
    └──────┬──────┘                               ▼
           ▼                             ┌─────────────────┐
    ┌─────────────┐   put_nowait   ┌────▶│ record_click()  │── fail → log
    │ dispatch()  │───────────────▶│     └────────┬────────┘
    └──────┬──────┘  (full → drop) │              ▼
           ▼                       │     ┌─────────────────┐
    ┌─────────────┐                │     │ increment_      │── fail → log
    │ return URL  │          bounded     │ clicks()        │
    └─────────────┘          queue       └─────────────────┘

Shutdown
========
::
    stop()  →  refuse new events  →  wait for queue.join() (bounded by
    drain_timeout)  →  cancel worker  →  log undelivered count

Key Behaviours
===============
- ``dispatch`` never awaits; a full queue drops the event and counts it.
- The two side effects of a click fail independently and are never retried.
- The worker runs on its own task, so cancelling a request after dispatch
  does not cancel the recorded work.
"""

import asyncio
import contextlib
import logging

from prometheus_client import Counter, Gauge

from shortener.config import get_settings
from shortener.enums import RequestStatus
from shortener.repositories import AnalyticsRepository, URLRepository
from shortener.schemas import ClickEventPayload

__all__ = ["ClickDispatcher"]

settings = get_settings()

ANALYTICS_EVENTS_TOTAL = Counter(
    "url_shortener_analytics_events_total",
    "Click events handed to the analytics dispatcher",
    ["outcome"],
)
ANALYTICS_RECORD_TOTAL = Counter(
    "url_shortener_analytics_record_total",
    "Click event appends performed by the analytics worker",
    ["status"],
)
CLICK_INCREMENTS_TOTAL = Counter(
    "url_shortener_click_increments_total",
    "Click counter increments performed by the analytics worker",
    ["status"],
)
ANALYTICS_QUEUE_DEPTH = Gauge(
    "url_shortener_analytics_queue_depth",
    "Click events waiting for the analytics worker",
)


class ClickDispatcher:
    """Bounded queue plus one worker that records clicks off the request path."""

    def __init__(
        self,
        url_repository: URLRepository,
        analytics_repository: AnalyticsRepository,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        max_queue_size: int = settings.ANALYTICS_QUEUE_SIZE,
        drain_timeout: float = settings.ANALYTICS_DRAIN_TIMEOUT_SECONDS,
    ) -> None:
        assert max_queue_size > 0, f"max_queue_size must be positive, got {max_queue_size!r}"
        self._urls = url_repository
        self._analytics = analytics_repository
        self._logger = logger or logging.getLogger("urlshortener")
        self._queue: asyncio.Queue[ClickEventPayload] = asyncio.Queue(maxsize=max_queue_size)
        self._drain_timeout = drain_timeout
        self._worker: asyncio.Task[None] | None = None
        self._accepting = False

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self.running:
            return
        self._accepting = True
        self._worker = asyncio.create_task(self._run(), name="click-dispatcher")
        self._logger.info("Click dispatcher started")

    def dispatch(self, event: ClickEventPayload) -> bool:
        """Queue a click without waiting. Returns False when the event was dropped."""
        if not self._accepting:
            ANALYTICS_EVENTS_TOTAL.labels(outcome="rejected").inc()
            self._logger.warning(f"Click dispatcher not accepting events, dropped click for {event.short_code}")
            return False

        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            ANALYTICS_EVENTS_TOTAL.labels(outcome="dropped").inc()
            self._logger.warning(f"Analytics queue full, dropped click for {event.short_code}")
            return False

        ANALYTICS_EVENTS_TOTAL.labels(outcome="queued").inc()
        ANALYTICS_QUEUE_DEPTH.set(self._queue.qsize())
        return True

    async def join(self) -> None:
        """Wait until every queued event has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        """Stop intake, drain what is queued within the timeout, then stop the worker."""
        self._accepting = False
        if self._worker is None:
            return

        try:
            await asyncio.wait_for(self._queue.join(), timeout=self._drain_timeout)
        except TimeoutError:
            self._logger.error(
                f"Analytics drain timed out after {self._drain_timeout}s, "
                f"{self._queue.qsize()} click events undelivered"
            )

        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None
        self._logger.info("Click dispatcher stopped")

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._handle(event)
            finally:
                self._queue.task_done()
                ANALYTICS_QUEUE_DEPTH.set(self._queue.qsize())

    async def _handle(self, event: ClickEventPayload) -> None:
        try:
            await self._analytics.record_click(event)
            ANALYTICS_RECORD_TOTAL.labels(status=RequestStatus.SUCCESS).inc()
        except Exception as exc:
            ANALYTICS_RECORD_TOTAL.labels(status=RequestStatus.ERROR).inc()
            self._logger.error(f"Failed to record analytics for {event.short_code}: {exc}")

        try:
            await self._urls.increment_clicks(event.short_code)
            CLICK_INCREMENTS_TOTAL.labels(status=RequestStatus.SUCCESS).inc()
        except Exception as exc:
            CLICK_INCREMENTS_TOTAL.labels(status=RequestStatus.ERROR).inc()
            self._logger.error(f"Failed to increment click count for {event.short_code}: {exc}")
