"""Alarm lifecycle: create, edit, toggle and delete alarm records.

Every transition persists the record and then re-derives the timer set
through the engine. Edits are never applied to armed timers in place.
"""

from __future__ import annotations

import asyncio
import functools
from datetime import datetime
from typing import Any

from loguru import logger

from habitclock.alarms.engine import AlarmEngine, ScheduleResult
from habitclock.alarms.errors import AlarmNotFoundError, EmptyWeekdaysError, PersistenceError
from habitclock.alarms.resolver import DEFAULT_VERIFICATION_DELAY
from habitclock.alarms.schema import Alarm
from habitclock.alarms.storage import StorageBackend
from habitclock.utils.helpers import generate_id, now_iso

_EDITABLE = {
    "title",
    "time",
    "days_of_week",
    "verification_delay",
    "ringtone",
    "start_date",
    "end_date",
}


def with_alarms_lock(fn):
    """Decorator to wrap manager methods with the shared alarms-file lock.

    Keeps read-modify-write cycles on alarms.json atomic.
    """

    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        async with self._get_lock():
            return await fn(self, *args, **kwargs)

    return wrapper


class AlarmManager:
    """Owns alarm records and keeps their timers in step with them."""

    def __init__(
        self,
        storage_backend: StorageBackend,
        engine: AlarmEngine,
        default_user_id: str = "local",
        default_verification_delay: str = DEFAULT_VERIFICATION_DELAY,
    ):
        self.storage_backend = storage_backend
        self.engine = engine
        self.default_user_id = default_user_id
        self.default_verification_delay = default_verification_delay
        self._lock: asyncio.Lock | None = None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_alarms(self) -> list[Alarm]:
        data = await asyncio.to_thread(self.storage_backend.load_alarms)
        return [Alarm.model_validate(a) for a in data.get("alarms", [])]

    async def get_alarm(self, alarm_id: str) -> Alarm:
        raw = await asyncio.to_thread(self.storage_backend.find_alarm, alarm_id)
        if raw is None:
            raise AlarmNotFoundError(f"Alarm '{alarm_id}' not found")
        return Alarm.model_validate(raw)

    # ------------------------------------------------------------------
    # Lifecycle transitions
    # ------------------------------------------------------------------

    @with_alarms_lock
    async def create_alarm(
        self,
        title: str,
        time: str,
        days_of_week: list[int],
        verification_delay: str | None = None,
        is_active: bool = True,
        user_id: str | None = None,
        **extra: Any,
    ) -> tuple[Alarm, ScheduleResult | None]:
        """Store a new alarm and arm its timers if it is active.

        Raises EmptyWeekdaysError for an empty weekday set and pydantic's
        ValidationError for any other invalid field.
        """
        if not days_of_week:
            raise EmptyWeekdaysError("Please select at least one day")
        now = now_iso()
        alarm = Alarm(
            id=generate_id("alarm"),
            user_id=user_id or self.default_user_id,
            title=title,
            time=time,
            days_of_week=days_of_week,
            verification_delay=verification_delay or self.default_verification_delay,
            is_active=is_active,
            created_at=now,
            updated_at=now,
            **extra,
        )

        data = await asyncio.to_thread(self.storage_backend.load_alarms)
        data.setdefault("alarms", []).append(alarm.model_dump())
        await self._save(data)
        logger.info(f"[Manager] Created {alarm.id} '{alarm.title}'")

        result = await self.engine.schedule_alarm(alarm) if alarm.is_active else None
        return alarm, result

    @with_alarms_lock
    async def update_alarm(self, alarm_id: str, **changes: Any) -> tuple[Alarm, ScheduleResult]:
        """Apply edits, persist, then cancel-and-reschedule with the new values."""
        unknown = set(changes) - _EDITABLE
        if unknown:
            raise ValueError(f"Fields not editable: {sorted(unknown)}")
        if "days_of_week" in changes and not changes["days_of_week"]:
            raise EmptyWeekdaysError("Please select at least one day")

        data, index = await self._load_with_index(alarm_id)
        current = data["alarms"][index]
        updated = Alarm.model_validate({**current, **changes, "updated_at": now_iso()})
        data["alarms"][index] = updated.model_dump()
        await self._save(data)
        logger.info(f"[Manager] Updated {alarm_id}: {sorted(changes)}")

        result = await self.engine.set_active(updated, updated.is_active)
        return updated, result

    @with_alarms_lock
    async def toggle_alarm(self, alarm_id: str, active: bool | None = None) -> tuple[Alarm, ScheduleResult]:
        """Flip (or set) the active flag and schedule or cancel accordingly."""
        data, index = await self._load_with_index(alarm_id)
        current = Alarm.model_validate(data["alarms"][index])
        target = (not current.is_active) if active is None else active
        updated = current.model_copy(update={"is_active": target, "updated_at": now_iso()})
        data["alarms"][index] = updated.model_dump()
        await self._save(data)
        logger.info(f"[Manager] {alarm_id} active={target}")

        result = await self.engine.set_active(updated, target)
        return updated, result

    @with_alarms_lock
    async def delete_alarm(self, alarm_id: str) -> ScheduleResult:
        """Cancel the alarm's timers first, then remove the record.

        The record is kept when cancellation fails so the user can retry.
        """
        data, index = await self._load_with_index(alarm_id)
        result = await self.engine.cancel_alarm_notifications(alarm_id)
        if not result.ok:
            return result
        del data["alarms"][index]
        await self._save(data)
        logger.info(f"[Manager] Deleted {alarm_id}")
        return result

    async def resync_all(self, now: datetime | None = None) -> list[ScheduleResult]:
        """Rebuild every alarm's timer set from its stored record.

        Recovers alarms whose weekly re-arm was lost and clears timers left
        behind by inactive alarms.
        """
        results = []
        for alarm in await self.list_alarms():
            if alarm.is_active and alarm.schedulable:
                results.append(await self.engine.schedule_alarm(alarm, now=now))
            else:
                results.append(await self.engine.cancel_alarm_notifications(alarm.id))
        return results

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load_with_index(self, alarm_id: str) -> tuple[dict, int]:
        data = await asyncio.to_thread(self.storage_backend.load_alarms)
        for i, alarm in enumerate(data.get("alarms", [])):
            if alarm.get("id") == alarm_id:
                return data, i
        raise AlarmNotFoundError(f"Alarm '{alarm_id}' not found")

    async def _save(self, data: dict) -> None:
        ok, msg = await asyncio.to_thread(self.storage_backend.save_alarms, data)
        if not ok:
            raise PersistenceError(msg)
