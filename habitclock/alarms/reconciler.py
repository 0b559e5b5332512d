"""Firing reconciler: completion bookkeeping + weekly self-renewal.

Runs whenever the delivery runtime reports a fired timer, either because the
user tapped the notification or because it arrived while the app was in the
foreground. Both paths share one code path:

  1. verification timer → record today's completion (not for a missed one)
  2. any timer → re-arm the same payload seven days after the fired instant

A failed completion write never blocks the re-arm, and a failed re-arm is
logged, not raised. The alarm then stops ticking on that weekday until the
next full schedule (edit, toggle or resync).
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from loguru import logger
from pydantic import ValidationError

from habitclock.alarms.errors import TimerStoreError
from habitclock.alarms.schema import Alarm, NotificationEvent, TimerKind
from habitclock.alarms.utils import parse_datetime

if TYPE_CHECKING:
    from habitclock.alarms.engine import AlarmEngine
    from habitclock.alarms.recorder import CompletionRecorder
    from habitclock.alarms.storage import StorageBackend


_MISSING = object()

# Tap and foreground reports of one timer arrive within moments of each other
HANDLED_TTL = timedelta(days=1)


@dataclass
class ReconcileResult:
    """Outcome of reconciling one notification event."""

    timer_id: str | None = None
    alarm_id: str | None = None
    kind: TimerKind | None = None
    completion_recorded: bool = False
    rearmed_timer_id: str | None = None
    duplicate: bool = False
    error: str | None = None


class FiringReconciler:
    """Applies a fired timer's side effects exactly once per timer id."""

    def __init__(
        self,
        engine: "AlarmEngine",
        recorder: "CompletionRecorder",
        storage_backend: "StorageBackend | None" = None,
        clock: Callable[[], datetime] = datetime.now,
        handled_ttl: timedelta = HANDLED_TTL,
    ):
        self.engine = engine
        self.recorder = recorder
        self.storage_backend = storage_backend
        self._clock = clock
        self.handled_ttl = handled_ttl
        self._handled: dict[str, datetime] = {}  # timer id -> when reconciled

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def on_notification_event(
        self, raw_event: NotificationEvent | dict[str, Any], now: datetime | None = None
    ) -> ReconcileResult:
        """Reconcile a fired timer reported by the runtime."""
        result = ReconcileResult()
        try:
            event = (
                raw_event
                if isinstance(raw_event, NotificationEvent)
                else NotificationEvent.model_validate(raw_event)
            )
            fired_at = parse_datetime(event.fire_at)
        except (ValidationError, ValueError) as e:
            logger.warning(f"[Reconciler] Ignoring malformed event: {e}")
            result.error = f"Malformed event: {e}"
            return result

        result.timer_id = event.timer_id
        result.alarm_id = event.payload.alarm_id
        result.kind = event.payload.kind

        now = now or self._clock()
        self._forget_settled(now)

        # Tap and foreground delivery can both report the same timer
        if event.timer_id in self._handled:
            logger.debug(f"[Reconciler] {event.timer_id} already reconciled ({event.source}), skip")
            result.duplicate = True
            return result
        self._handled[event.timer_id] = now

        alarm = await self._lookup_alarm(event.payload.alarm_id)

        if event.payload.kind == "verification" and event.source == "missed":
            logger.info(f"[Reconciler] {event.timer_id} was missed, no completion recorded")
        elif event.payload.kind == "verification":
            user_id = alarm.user_id if isinstance(alarm, Alarm) else None
            result.completion_recorded = await asyncio.to_thread(
                self.recorder.record_completion,
                event.payload.alarm_id,
                now.date(),
                True,
                user_id,
                now,
            )

        if alarm is None:
            logger.info(f"[Reconciler] {event.payload.alarm_id} no longer exists, not re-arming")
            return result

        try:
            result.rearmed_timer_id = await self.engine.re_arm(
                fired_at,
                event.payload,
                title=event.title,
                body=event.body,
                alarm=alarm if isinstance(alarm, Alarm) else None,
                now=now,
            )
        except TimerStoreError as e:
            # Let a later event for the same timer retry the re-arm
            self._handled.pop(event.timer_id, None)
            result.error = f"Re-arm failed: {e}"
            logger.error(
                f"[Reconciler] Re-arm failed for {event.payload.alarm_id} "
                f"({event.payload.kind}); it will stay silent until rescheduled: {e}"
            )
        return result

    async def respond(
        self, alarm_id: str, completed: bool, now: datetime | None = None
    ) -> bool:
        """Record an explicit yes/no answer to a verification prompt for today."""
        now = now or self._clock()
        alarm = await self._lookup_alarm(alarm_id)
        user_id = alarm.user_id if isinstance(alarm, Alarm) else None
        return await asyncio.to_thread(
            self.recorder.record_completion, alarm_id, now.date(), completed, user_id, now
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _forget_settled(self, now: datetime) -> None:
        """Drop dedup entries reconciled more than ``handled_ttl`` ago."""
        cutoff = now - self.handled_ttl
        for timer_id in [t for t, seen in self._handled.items() if seen < cutoff]:
            del self._handled[timer_id]

    async def _lookup_alarm(self, alarm_id: str) -> Alarm | None | object:
        """Current alarm record.

        Returns None when the alarm was deleted, and ``_MISSING`` when there
        is no storage to ask (or the record is unreadable), in which case the
        re-arm proceeds unchecked.
        """
        if self.storage_backend is None:
            return _MISSING
        raw = await asyncio.to_thread(self.storage_backend.find_alarm, alarm_id)
        if raw is None:
            return None
        try:
            return Alarm.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"[Reconciler] Alarm {alarm_id} unreadable, re-arming unchecked: {e}")
            return _MISSING
