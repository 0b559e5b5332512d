"""Local delivery runtime: fires pending timers and reports them.

There is no OS notification registry to lean on, so this module plays that
role. The TimerDispatcher sleeps until the nearest pending timer, pops every
due timer from the store (single-shot), shows it through ``deliver`` and
hands it to the process-wide notification handler.

The handler is registered once per process with
``setup_notification_handling``; tap responses from the front-end go through
``dispatch_notification_event`` so both paths reach the same reconciler.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from loguru import logger

from habitclock.alarms.schema import NotificationEvent, PendingTimer
from habitclock.alarms.utils import parse_datetime

if TYPE_CHECKING:
    from habitclock.alarms.reconciler import FiringReconciler, ReconcileResult
    from habitclock.alarms.timer_store import TimerStore


# Process-wide handler, set once at startup
_reconciler: "FiringReconciler | None" = None


def setup_notification_handling(reconciler: "FiringReconciler") -> bool:
    """Register the reconciler as the handler for every notification event.

    Returns False (and keeps the first registration) if a handler is
    already installed.
    """
    global _reconciler
    if _reconciler is not None:
        logger.warning("[Dispatcher] Notification handling already set up, ignoring")
        return False
    _reconciler = reconciler
    logger.debug("[Dispatcher] Notification handling set up")
    return True


def reset_notification_handling() -> None:
    """Drop the registered handler (process shutdown and tests)."""
    global _reconciler
    _reconciler = None


async def dispatch_notification_event(
    raw_event: NotificationEvent | dict[str, Any],
) -> "ReconcileResult | None":
    """Route a tapped or foreground-delivered notification to the handler."""
    if _reconciler is None:
        logger.warning("[Dispatcher] Notification event dropped: handling not set up")
        return None
    return await _reconciler.on_notification_event(raw_event)


def event_from_timer(timer: PendingTimer, source: str = "received") -> NotificationEvent:
    """Build the event the runtime reports for a fired timer."""
    return NotificationEvent(
        timer_id=timer.id,
        fire_at=timer.fire_at,
        payload=timer.payload,
        title=timer.title,
        body=timer.body,
        source=source,
    )


class TimerDispatcher:
    """Async loop: pop due timers → deliver → reconcile → arm for the next.

    The sleep is capped at ``max_sleep_s`` so timers added by another
    process are picked up without an explicit ``trigger()``. Timers more
    than ``missed_after`` overdue (the runtime was not running) are not
    shown; they are reconciled as ``"missed"`` so they re-arm without
    recording a completion.
    """

    def __init__(
        self,
        timer_store: "TimerStore",
        deliver: Callable[[NotificationEvent], Awaitable[None]] | None = None,
        clock: Callable[[], datetime] = datetime.now,
        max_sleep_s: float = 60.0,
        missed_after: timedelta = timedelta(hours=1),
    ):
        self.timer_store = timer_store
        self.deliver = deliver
        self._clock = clock
        self.max_sleep_s = max_sleep_s
        self.missed_after = missed_after
        self._timer_task: asyncio.Task | None = None

    async def trigger(self) -> list[NotificationEvent]:
        """Fire everything that is due, then arm the timer for the next one."""
        now = self._clock()
        due = await asyncio.to_thread(self.timer_store.pop_due, now)

        events = []
        for timer in due:
            event = event_from_timer(timer, source=self._source_for(timer, now))
            events.append(event)
            await self._fire(event)

        next_due_at = await asyncio.to_thread(self.timer_store.next_fire_at)
        self._arm_timer(next_due_at)
        return events

    async def _fire(self, event: NotificationEvent) -> None:
        if event.source == "missed":
            logger.info(f"[Dispatcher] Missed {event.timer_id} ({event.payload.kind}) at {event.fire_at}")
        else:
            logger.info(f"[Dispatcher] Firing {event.timer_id} ({event.payload.kind}) for {event.payload.alarm_id}")
        if self.deliver and event.source != "missed":
            try:
                await self.deliver(event)
            except Exception as e:
                # The timer is gone from the store either way; still re-arm it
                logger.error(f"[Dispatcher] Deliver failed for {event.timer_id}: {e}")
        await dispatch_notification_event(event)

    def _source_for(self, timer: PendingTimer, now: datetime) -> str:
        try:
            overdue = now - parse_datetime(timer.fire_at)
        except ValueError:
            return "received"
        return "missed" if overdue > self.missed_after else "received"

    def _cancel_timer(self) -> None:
        """Cancel pending timer if running."""
        task = self._timer_task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._timer_task = None

    def _arm_timer(self, next_due_at: datetime | None) -> None:
        """Cancel existing timer and arm a new one."""
        self._cancel_timer()

        if next_due_at is None:
            delay = self.max_sleep_s
        else:
            delay = (next_due_at - self._clock()).total_seconds()
            delay = min(max(delay, 0.1), self.max_sleep_s)

        self._timer_task = asyncio.ensure_future(self._timer_fire(delay))
        logger.debug(f"[Dispatcher] Timer armed: {delay:.0f}s")

    async def _timer_fire(self, delay: float) -> None:
        """Sleep then trigger."""
        try:
            await asyncio.sleep(delay)
            await self.trigger()
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("[Dispatcher] Timer fire error")
            self._arm_timer(None)

    async def start(self) -> None:
        """Fire anything overdue and start the loop."""
        await self.trigger()

    def stop(self) -> None:
        """Cancel pending timer."""
        self._cancel_timer()
