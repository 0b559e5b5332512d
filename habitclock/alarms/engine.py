"""Alarm scheduling engine: keeps each alarm's pending timer set consistent.

For an active alarm the engine maintains exactly one ``alarm`` timer and one
``verification`` timer per active weekday. Every lifecycle change goes
through cancel-then-recreate; the Timer Store has no update primitive.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal

from loguru import logger

from habitclock.alarms.errors import EmptyWeekdaysError, TimerStoreError
from habitclock.alarms.resolver import (
    WEEK,
    next_week,
    occurrence_matches,
    resolve_occurrences,
)
from habitclock.alarms.schema import Alarm, PendingTimer, TimerKind, TimerPayload
from habitclock.alarms.timer_store import TimerStore
from habitclock.alarms.utils import parse_datetime

ScheduleError = Literal["permission_denied", "store_failure", "not_found"]


@dataclass
class NotificationContent:
    """What a delivered alarm or verification prompt says."""

    alarm_body: str = "Time for your habit!"
    verification_title: str = "Did you complete: {title}?"
    verification_body: str = "Tap to mark as completed"
    sound: bool = True

    def for_kind(self, kind: TimerKind, alarm_title: str) -> tuple[str, str]:
        if kind == "verification":
            return self.verification_title.format(title=alarm_title), self.verification_body
        return alarm_title, self.alarm_body


@dataclass
class ScheduleResult:
    """Outcome of a schedule/cancel call.

    ``error`` distinguishes a denied delivery permission (the user has to
    grant it) from a store failure (retry is safe) and from an alarm with no
    weekdays (caller validation).
    """

    alarm_id: str
    ok: bool = True
    error: ScheduleError | None = None
    message: str = ""
    scheduled: list[str] = field(default_factory=list)
    cancelled: int = 0


class AlarmEngine:
    """Materializes and cancels the pending timers of alarms.

    Operations on one alarm id are serialized by a per-id lock so a user
    edit and a firing-driven re-arm never interleave. Different alarm ids
    proceed independently.
    """

    def __init__(
        self,
        timer_store: TimerStore,
        content: NotificationContent | None = None,
        rearm_interval: timedelta = WEEK,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.timer_store = timer_store
        self.content = content or NotificationContent()
        self.rearm_interval = rearm_interval
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, alarm_id: str) -> asyncio.Lock:
        lock = self._locks.get(alarm_id)
        if lock is None:
            lock = self._locks[alarm_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def schedule_alarm(self, alarm: Alarm, now: datetime | None = None) -> ScheduleResult:
        """Replace the alarm's pending timers with a fresh set.

        Safe to call repeatedly: existing timers for the alarm are always
        cancelled first, so a retry after a partial failure converges.
        """
        result = ScheduleResult(alarm_id=alarm.id)
        reference = now or self._clock()

        try:
            occurrences = resolve_occurrences(
                alarm.time, alarm.days_of_week, alarm.verification_delay, reference
            )
        except EmptyWeekdaysError as e:
            logger.warning(f"[Engine] Not scheduling {alarm.id}: {e}")
            return self._fail(result, "not_found", str(e))

        try:
            granted = await asyncio.to_thread(self.timer_store.request_delivery_permission)
        except TimerStoreError as e:
            return self._fail(result, "store_failure", str(e))
        if not granted:
            logger.warning(f"[Engine] No notification permission, {alarm.id} not scheduled")
            return self._fail(result, "permission_denied", "Notification permission not granted")

        async with self._lock_for(alarm.id):
            try:
                result.cancelled = await self._cancel_unlocked(alarm.id)
                for occ in occurrences:
                    for kind, fire_at in (
                        ("alarm", occ.alarm_at),
                        ("verification", occ.verification_at),
                    ):
                        timer_id = await self._create(alarm.id, kind, fire_at, alarm.title)
                        result.scheduled.append(timer_id)
                        logger.debug(
                            f"[Engine] {alarm.id} day {occ.weekday}: {kind} at {fire_at} ({timer_id})"
                        )
            except TimerStoreError as e:
                logger.error(
                    f"[Engine] Scheduling {alarm.id} failed after "
                    f"{len(result.scheduled)} timers: {e}"
                )
                return self._fail(result, "store_failure", str(e))

        logger.info(
            f"[Engine] Scheduled {alarm.id} '{alarm.title}': "
            f"{len(result.scheduled)} timers for days {alarm.days_of_week}"
        )
        return result

    async def cancel_alarm_notifications(self, alarm_id: str) -> ScheduleResult:
        """Destroy every pending timer tagged with ``alarm_id``, any kind."""
        result = ScheduleResult(alarm_id=alarm_id)
        async with self._lock_for(alarm_id):
            try:
                result.cancelled = await self._cancel_unlocked(alarm_id)
            except TimerStoreError as e:
                logger.error(f"[Engine] Cancelling {alarm_id} failed: {e}")
                return self._fail(result, "store_failure", str(e))
        return result

    async def set_active(self, alarm: Alarm, active: bool, now: datetime | None = None) -> ScheduleResult:
        """Apply an active-flag toggle to the timer set."""
        if active:
            return await self.schedule_alarm(alarm, now=now)
        return await self.cancel_alarm_notifications(alarm.id)

    async def pending_timers(self, alarm_id: str | None = None) -> list[PendingTimer]:
        """Pending timers, optionally only those tagged with ``alarm_id``."""
        timers = await asyncio.to_thread(self.timer_store.list_pending)
        if alarm_id is None:
            return timers
        return [t for t in timers if t.payload.alarm_id == alarm_id]

    async def re_arm(
        self,
        fired_at: datetime,
        payload: TimerPayload,
        title: str = "",
        body: str = "",
        alarm: Alarm | None = None,
        now: datetime | None = None,
    ) -> str | None:
        """Create next week's replacement for a timer that fired.

        Returns the new timer id, or None when the replacement is not wanted:
        an equivalent timer is already pending, or (when ``alarm`` is given)
        the alarm is inactive or no longer fires at that weekday and time.
        A timer reconciled late is moved to its first slot after ``now``.
        Raises TimerStoreError if the store fails.
        """
        target = next_week(fired_at, self.rearm_interval, after=now or self._clock())
        if alarm is not None:
            if not alarm.is_active:
                logger.info(f"[Engine] Not re-arming {payload.alarm_id}: alarm inactive")
                return None
            if not occurrence_matches(
                alarm.time, alarm.days_of_week, alarm.verification_delay, payload.kind, target
            ):
                logger.info(
                    f"[Engine] Not re-arming {payload.alarm_id} {payload.kind} at {target}: "
                    f"rule changed"
                )
                return None
            if not title:
                title, body = self.content.for_kind(payload.kind, alarm.title)

        async with self._lock_for(payload.alarm_id):
            for timer in await self.pending_timers(payload.alarm_id):
                if timer.payload.kind != payload.kind:
                    continue
                try:
                    pending_at = parse_datetime(timer.fire_at)
                except ValueError:
                    continue
                if pending_at == target:
                    logger.debug(f"[Engine] Re-arm of {payload.alarm_id} already pending ({timer.id})")
                    return None
            timer_id = await asyncio.to_thread(
                self.timer_store.schedule,
                target,
                payload,
                title,
                body,
                self.content.sound,
            )
        logger.info(f"[Engine] Re-armed {payload.alarm_id} {payload.kind} for {target} ({timer_id})")
        return timer_id

    # ------------------------------------------------------------------
    # Internals (callers hold the alarm's lock)
    # ------------------------------------------------------------------

    async def _cancel_unlocked(self, alarm_id: str) -> int:
        stale = await self.pending_timers(alarm_id)
        for timer in stale:
            await asyncio.to_thread(self.timer_store.cancel, timer.id)
        if stale:
            logger.debug(f"[Engine] Cancelled {len(stale)} timers for {alarm_id}")
        return len(stale)

    async def _create(self, alarm_id: str, kind: TimerKind, fire_at: datetime, alarm_title: str) -> str:
        title, body = self.content.for_kind(kind, alarm_title)
        return await asyncio.to_thread(
            self.timer_store.schedule,
            fire_at,
            TimerPayload(alarm_id=alarm_id, kind=kind),
            title,
            body,
            self.content.sound,
        )

    @staticmethod
    def _fail(result: ScheduleResult, error: ScheduleError, message: str) -> ScheduleResult:
        result.ok = False
        result.error = error
        result.message = message
        return result
