"""Error taxonomy for the alarm scheduling core.

None of these are fatal. The engine and reconciler catch them and report a
typed result; the worst outcome is an alarm that stops re-arming until the
user saves it again.
"""


class AlarmError(Exception):
    """Base class for alarm scheduling errors."""


class EmptyWeekdaysError(AlarmError, ValueError):
    """An occurrence set was requested for an alarm with no active weekdays."""


class TimerStoreError(AlarmError):
    """A Timer Store call failed. Retryable."""


class PersistenceError(AlarmError):
    """A completion or alarm record could not be persisted."""


class AlarmNotFoundError(AlarmError, LookupError):
    """No stored alarm has the requested id."""
