"""Weekly alarm scheduling core: resolver, timer store, engine, reconciler."""

from habitclock.alarms.engine import AlarmEngine, NotificationContent, ScheduleResult
from habitclock.alarms.reconciler import FiringReconciler, ReconcileResult
from habitclock.alarms.recorder import CompletionRecorder
from habitclock.alarms.storage import JsonStorageBackend, StorageBackend
from habitclock.alarms.timer_store import JsonTimerStore, TimerStore

__all__ = [
    "AlarmEngine",
    "CompletionRecorder",
    "FiringReconciler",
    "JsonStorageBackend",
    "JsonTimerStore",
    "NotificationContent",
    "ReconcileResult",
    "ScheduleResult",
    "StorageBackend",
    "TimerStore",
]
