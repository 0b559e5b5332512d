"""Completion recorder: per-day completion facts keyed by (alarm, date, owner)."""

from __future__ import annotations

from datetime import date, datetime, timedelta

from loguru import logger

from habitclock.alarms.errors import PersistenceError
from habitclock.alarms.resolver import weekday_of
from habitclock.alarms.storage import StorageBackend
from habitclock.alarms.utils import normalize_iso_date


class CompletionRecorder:
    """Upserts completion records through a StorageBackend.

    All public methods are **sync** (file I/O). Callers on an event loop
    wrap them with ``asyncio.to_thread()``.
    """

    def __init__(self, storage_backend: StorageBackend, default_user_id: str = "local"):
        self.storage_backend = storage_backend
        self.default_user_id = default_user_id

    def upsert_completion(
        self,
        alarm_id: str,
        day: str,
        completed: bool,
        completed_at: str | None,
        user_id: str | None = None,
    ) -> None:
        """Insert or overwrite the record for (alarm_id, day, user_id).

        Raises PersistenceError if the save fails.
        """
        user_id = user_id or self.default_user_id
        data = self.storage_backend.load_completions()
        records = data.setdefault("completions", [])

        target = next(
            (
                r
                for r in records
                if r.get("alarm_id") == alarm_id
                and r.get("date") == day
                and r.get("user_id", self.default_user_id) == user_id
            ),
            None,
        )
        if target is None:
            target = {
                "alarm_id": alarm_id,
                "user_id": user_id,
                "date": day,
                "created_at": datetime.now().isoformat(),
            }
            records.append(target)
        target["completed"] = completed
        target["completed_at"] = completed_at

        ok, msg = self.storage_backend.save_completions(data)
        if not ok:
            raise PersistenceError(f"Completion for {alarm_id} on {day} not saved: {msg}")

    def record_completion(
        self,
        alarm_id: str,
        day: date | str,
        completed: bool,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Record the verification outcome for one day. Returns True on success.

        Calling again for the same day overwrites ``completed`` and
        ``completed_at``; it never adds a second record.
        """
        day_str = normalize_iso_date(day.isoformat() if isinstance(day, date) else day)
        if day_str is None:
            raise ValueError(f"Invalid day {day!r}: expected YYYY-MM-DD")
        completed_at = (now or datetime.now()).isoformat() if completed else None
        try:
            self.upsert_completion(alarm_id, day_str, completed, completed_at, user_id)
        except PersistenceError as e:
            logger.error(f"[Recorder] {e}")
            return False
        logger.info(f"[Recorder] {alarm_id} {day_str}: completed={completed}")
        return True

    def history(
        self,
        alarm_id: str,
        weeks: int = 12,
        today: date | None = None,
        user_id: str | None = None,
    ) -> list[tuple[date, bool]]:
        """Completion state for every day of the last ``weeks`` weeks.

        The window starts on a Sunday and runs ``weeks * 7`` days, so rows
        line up as calendar weeks. Days without a record read as False.
        """
        user_id = user_id or self.default_user_id
        today = today or date.today()
        this_sunday = today - timedelta(days=weekday_of(datetime.combine(today, datetime.min.time())))
        start = this_sunday - timedelta(days=(weeks - 1) * 7)

        done = {
            r.get("date")
            for r in self.storage_backend.load_completions().get("completions", [])
            if r.get("alarm_id") == alarm_id
            and r.get("user_id", self.default_user_id) == user_id
            and r.get("completed")
        }
        days = (start + timedelta(days=i) for i in range(weeks * 7))
        return [(d, d.isoformat() in done) for d in days]
