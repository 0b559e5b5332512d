"""Storage backend abstraction for alarm records and completion facts.

Provides a clean interface between the alarm core and the actual storage layer.
- StorageBackend: Abstract base class defining the interface.
- JsonStorageBackend: File-based JSON storage under ``workspace/alarms``.
- load_json_file: Shared utility for safe JSON file loading.

Pending timers are not stored here; they belong to the TimerStore.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import NamedTuple

from loguru import logger


class SaveResult(NamedTuple):
    """Result of a storage save operation.

    NamedTuple so ``ok, msg = save_alarms(data)`` unpacking works.
    """

    success: bool
    message: str


def load_json_file(path: Path, default: dict | None = None) -> dict:
    """Load a JSON file safely, returning default on any error.

    A corrupt file reads as empty; the next validated write restores a valid
    structure.
    """
    if not path.exists():
        return default or {}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"[Storage] Could not read {path.name}: {e}")
        return default or {}


def save_json_file(path: Path, data: dict) -> SaveResult:
    """Write ``data`` as pretty-printed JSON, creating parent directories."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)
        return SaveResult(True, "Saved successfully")
    except OSError as e:
        return SaveResult(False, f"Error: {e}")


# ============================================================================
# Storage Backend ABC
# ============================================================================


class StorageBackend(ABC):
    """Abstract storage backend for alarm data.

    Each entity has a load/save pair:
    - load_* returns the full file-level dict (e.g., {"version": "1.0", "alarms": [...]}).
    - save_* validates, then delegates to _persist_* (Template Method pattern).

    Subclasses implement _persist_* (and load_*) only.
    """

    # --- Alarms ---
    @abstractmethod
    def load_alarms(self) -> dict: ...

    def save_alarms(self, data: dict) -> SaveResult:
        """Validate and persist alarms data."""
        try:
            from habitclock.alarms.schema import validate_alarms_file

            validate_alarms_file(data)
        except ValueError as e:
            return SaveResult(False, f"Validation error: {e}")
        return self._persist_alarms(data)

    @abstractmethod
    def _persist_alarms(self, data: dict) -> SaveResult: ...

    # --- Completions ---
    @abstractmethod
    def load_completions(self) -> dict: ...

    def save_completions(self, data: dict) -> SaveResult:
        """Validate and persist completions data."""
        try:
            from habitclock.alarms.schema import validate_completions_file

            validate_completions_file(data)
        except ValueError as e:
            return SaveResult(False, f"Validation error: {e}")
        return self._persist_completions(data)

    @abstractmethod
    def _persist_completions(self, data: dict) -> SaveResult: ...

    # --- Lookups ---
    def find_alarm(self, alarm_id: str) -> dict | None:
        """Return the stored alarm dict with ``alarm_id``, or None."""
        for alarm in self.load_alarms().get("alarms", []):
            if alarm.get("id") == alarm_id:
                return alarm
        return None


# ============================================================================
# JSON Storage Backend (default)
# ============================================================================


class JsonStorageBackend(StorageBackend):
    """File-based JSON storage.

    Reads/writes directly to workspace/alarms/*.json files.
    """

    def __init__(self, workspace: Path):
        self._workspace = workspace
        self._alarms_dir = workspace / "alarms"

    # --- Alarms ---

    def load_alarms(self) -> dict:
        return load_json_file(
            self._alarms_dir / "alarms.json",
            default={"version": "1.0", "alarms": []},
        )

    def _persist_alarms(self, data: dict) -> SaveResult:
        return save_json_file(self._alarms_dir / "alarms.json", data)

    # --- Completions ---

    def load_completions(self) -> dict:
        return load_json_file(
            self._alarms_dir / "completions.json",
            default={"version": "1.0", "completions": []},
        )

    def _persist_completions(self, data: dict) -> SaveResult:
        return save_json_file(self._alarms_dir / "completions.json", data)
