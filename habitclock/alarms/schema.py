"""Pydantic schemas for alarm, timer and completion data."""

import re
from datetime import date as _date_type
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

TimerKind = Literal["alarm", "verification"]

_HHMM_RE = re.compile(r"^\d{2}:\d{2}$")


def _check_date_str(v: Optional[str]) -> Optional[str]:
    if v is not None:
        try:
            _date_type.fromisoformat(v)
        except ValueError:
            raise ValueError(f"Invalid date format {v!r}: expected YYYY-MM-DD")
    return v


# ============================================================================
# Alarm Schemas
# ============================================================================


class Alarm(BaseModel):
    """A recurring weekly reminder rule.

    ``days_of_week`` uses 0 = Sunday ... 6 = Saturday.
    """

    id: str
    user_id: str = "local"
    title: str = Field(..., max_length=50)
    time: str  # HH:mm, 24h
    days_of_week: list[int] = Field(default_factory=list)
    verification_delay: str = "10 minutes"
    is_active: bool = True
    ringtone: str = "default"
    start_date: Optional[str] = None  # YYYY-MM-DD
    end_date: Optional[str] = None  # YYYY-MM-DD
    created_at: Optional[str] = None  # ISO datetime
    updated_at: Optional[str] = None  # ISO datetime

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("title must not be empty")
        return v

    @field_validator("time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        if not _HHMM_RE.match(v):
            raise ValueError(f"time must be HH:mm format, got {v!r}")
        hh, mm = v.split(":")
        if not (0 <= int(hh) <= 23 and 0 <= int(mm) <= 59):
            raise ValueError(f"time out of range: {v!r}")
        return v

    @field_validator("days_of_week")
    @classmethod
    def validate_days_of_week(cls, v: list[int]) -> list[int]:
        for d in v:
            if not (0 <= d <= 6):
                raise ValueError(f"Invalid day {d}: must be 0 (Sun) – 6 (Sat)")
        return sorted(set(v))

    @field_validator("verification_delay")
    @classmethod
    def validate_verification_delay(cls, v: str) -> str:
        from habitclock.alarms.resolver import parse_delay_minutes

        parse_delay_minutes(v)
        return v

    @field_validator("start_date", "end_date")
    @classmethod
    def validate_date_str(cls, v: Optional[str]) -> Optional[str]:
        return _check_date_str(v)

    @property
    def schedulable(self) -> bool:
        return bool(self.days_of_week)


class AlarmsFile(BaseModel):
    """alarms.json schema."""

    version: str = "1.0"
    alarms: list[Alarm] = Field(default_factory=list)


# ============================================================================
# Timer Schemas
# ============================================================================


class TimerPayload(BaseModel):
    """Opaque data a pending timer carries back to the reconciler."""

    alarm_id: str
    kind: TimerKind


class PendingTimer(BaseModel):
    """A single scheduled, not-yet-fired local notification."""

    id: str
    fire_at: str  # ISO datetime, naive local
    payload: TimerPayload
    title: str = ""
    body: str = ""
    sound: bool = True
    created_at: str  # ISO datetime


class TimersFile(BaseModel):
    """timers.json schema."""

    version: str = "1.0"
    timers: list[PendingTimer] = Field(default_factory=list)


class NotificationEvent(BaseModel):
    """A fired timer as handed over by the delivery runtime.

    ``source`` is ``"response"`` when the user tapped the notification,
    ``"received"`` when it was delivered while the app was in the foreground
    and ``"missed"`` when the runtime found it long overdue after downtime.
    """

    timer_id: str
    fire_at: str  # ISO datetime of the fired instant
    payload: TimerPayload
    title: str = ""
    body: str = ""
    source: Literal["response", "received", "missed"] = "received"


# ============================================================================
# Completion Schemas
# ============================================================================


class CompletionRecord(BaseModel):
    """Per-day completion fact for one alarm."""

    alarm_id: str
    user_id: str = "local"
    date: str  # YYYY-MM-DD
    completed: bool = False
    completed_at: Optional[str] = None  # ISO datetime
    created_at: str  # ISO datetime

    @field_validator("date")
    @classmethod
    def validate_date(cls, v: str) -> str:
        return _check_date_str(v)


class CompletionsFile(BaseModel):
    """completions.json schema."""

    version: str = "1.0"
    completions: list[CompletionRecord] = Field(default_factory=list)


# ============================================================================
# Validation Functions
# ============================================================================


def validate_alarms_file(data: dict) -> AlarmsFile:
    """Validate alarms.json."""
    return AlarmsFile(**data)


def validate_timers_file(data: dict) -> TimersFile:
    """Validate timers.json."""
    return TimersFile(**data)


def validate_completions_file(data: dict) -> CompletionsFile:
    """Validate completions.json."""
    return CompletionsFile(**data)
