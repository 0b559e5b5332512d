"""Timer Store: the local registry of pending notification timers.

The alarm engine never touches timers directly; it enumerates, schedules and
cancels them through this interface. Timers have no update primitive: any
change is cancel-then-recreate.

- TimerStore: Abstract base class defining the interface.
- JsonTimerStore: Registry persisted to ``workspace/alarms/timers.json``.
"""

from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from filelock import FileLock, Timeout
from loguru import logger
from pydantic import ValidationError

from habitclock.alarms.errors import TimerStoreError
from habitclock.alarms.schema import PendingTimer, TimerPayload, TimersFile
from habitclock.alarms.storage import save_json_file
from habitclock.alarms.utils import format_datetime, parse_datetime
from habitclock.utils.helpers import generate_id, now_iso


class TimerStore(ABC):
    """Abstract registry of single-shot local notification timers.

    All methods are **sync**. Callers on an event loop wrap them with
    ``asyncio.to_thread()``. Implementations raise TimerStoreError when the
    underlying registry cannot be read or written.
    """

    @abstractmethod
    def list_pending(self) -> list[PendingTimer]:
        """Every timer that has not fired or been cancelled."""

    @abstractmethod
    def schedule(
        self,
        fire_at: datetime,
        payload: TimerPayload,
        title: str = "",
        body: str = "",
        sound: bool = True,
    ) -> str:
        """Create a pending timer and return its id."""

    @abstractmethod
    def cancel(self, timer_id: str) -> bool:
        """Destroy a pending timer. Returns False if it was not pending."""

    @abstractmethod
    def request_delivery_permission(self) -> bool:
        """Whether local notifications may be delivered."""

    @abstractmethod
    def pop_due(self, now: datetime) -> list[PendingTimer]:
        """Remove and return every timer whose fire instant is <= ``now``.

        Used by the delivery runtime; this is what makes timers single-shot.
        """

    def next_fire_at(self) -> datetime | None:
        """Fire instant of the nearest pending timer, if any."""
        instants = []
        for timer in self.list_pending():
            try:
                instants.append(parse_datetime(timer.fire_at))
            except ValueError as e:
                logger.warning(f"[TimerStore] Skip {timer.id}: {e}")
        return min(instants) if instants else None


class JsonTimerStore(TimerStore):
    """Timer registry kept in a JSON ledger.

    Every read-modify-write cycle holds a thread lock (calls arrive from
    worker threads via ``asyncio.to_thread``) and an OS file lock on
    ``timers.json.lock``, because the delivery loop and CLI edits run in
    separate processes against the same ledger.
    """

    def __init__(
        self,
        workspace: Path,
        permission_granted: bool = True,
        lock_timeout_s: float = 10.0,
    ):
        self._path = workspace / "alarms" / "timers.json"
        self.permission_granted = permission_granted
        self._lock = threading.Lock()
        self._file_lock = FileLock(str(self._path) + ".lock", timeout=lock_timeout_s)

    # ------------------------------------------------------------------
    # Ledger I/O
    # ------------------------------------------------------------------

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._lock:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                self._file_lock.acquire()
            except (OSError, Timeout) as e:
                raise TimerStoreError(f"Timer ledger lock unavailable: {e}") from e
            try:
                yield
            finally:
                self._file_lock.release()

    def _load(self) -> TimersFile:
        """Read the ledger. A missing file is an empty ledger; any read, decode
        or validation failure raises TimerStoreError.
        """
        if not self._path.exists():
            return TimersFile()
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise TimerStoreError(f"Timer ledger unreadable: {e}") from e
        if not isinstance(data, dict):
            raise TimerStoreError("Timer ledger is invalid: expected an object")
        try:
            return TimersFile(**data)
        except ValidationError as e:
            raise TimerStoreError(f"Timer ledger is invalid: {e}") from e

    def _save(self, ledger: TimersFile) -> None:
        ok, msg = save_json_file(self._path, ledger.model_dump())
        if not ok:
            raise TimerStoreError(f"Timer ledger save failed: {msg}")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def list_pending(self) -> list[PendingTimer]:
        with self._locked():
            return list(self._load().timers)

    def schedule(
        self,
        fire_at: datetime,
        payload: TimerPayload,
        title: str = "",
        body: str = "",
        sound: bool = True,
    ) -> str:
        timer = PendingTimer(
            id=generate_id("tmr"),
            fire_at=format_datetime(fire_at),
            payload=payload,
            title=title,
            body=body,
            sound=sound,
            created_at=now_iso(),
        )
        with self._locked():
            ledger = self._load()
            ledger.timers.append(timer)
            self._save(ledger)
        logger.debug(f"[TimerStore] Scheduled {timer.id} ({timer.payload.kind}) at {timer.fire_at}")
        return timer.id

    def cancel(self, timer_id: str) -> bool:
        with self._locked():
            ledger = self._load()
            remaining = [t for t in ledger.timers if t.id != timer_id]
            if len(remaining) == len(ledger.timers):
                return False
            ledger.timers = remaining
            self._save(ledger)
        logger.debug(f"[TimerStore] Cancelled {timer_id}")
        return True

    def request_delivery_permission(self) -> bool:
        return self.permission_granted

    def pop_due(self, now: datetime) -> list[PendingTimer]:
        with self._locked():
            ledger = self._load()
            due, remaining = [], []
            for timer in ledger.timers:
                try:
                    fire_at = parse_datetime(timer.fire_at)
                except ValueError:
                    logger.warning(f"[TimerStore] Dropping {timer.id}: bad fire_at {timer.fire_at!r}")
                    continue
                (due if fire_at <= now else remaining).append(timer)
            if len(remaining) != len(ledger.timers):
                ledger.timers = remaining
                self._save(ledger)
        due.sort(key=lambda t: t.fire_at)
        return due
