"""Unit tests for CompletionRecorder."""

from datetime import date, datetime
from unittest.mock import patch

import pytest

from habitclock.alarms.errors import PersistenceError
from habitclock.alarms.recorder import CompletionRecorder
from habitclock.alarms.storage import JsonStorageBackend, SaveResult


@pytest.fixture
def backend(tmp_path):
    return JsonStorageBackend(tmp_path)


@pytest.fixture
def recorder(backend):
    return CompletionRecorder(backend)


def _records(backend):
    return backend.load_completions()["completions"]


# ============================================================================
# record_completion
# ============================================================================


class TestRecordCompletion:
    def test_creates_record(self, recorder, backend):
        now = datetime(2024, 6, 3, 7, 12)
        assert recorder.record_completion("alarm_001", date(2024, 6, 3), True, now=now)

        records = _records(backend)
        assert len(records) == 1
        rec = records[0]
        assert rec["alarm_id"] == "alarm_001"
        assert rec["user_id"] == "local"
        assert rec["date"] == "2024-06-03"
        assert rec["completed"] is True
        assert rec["completed_at"] == "2024-06-03T07:12:00"
        assert rec["created_at"]

    def test_accepts_date_string(self, recorder, backend):
        assert recorder.record_completion("alarm_001", "2024-06-03", True)
        assert _records(backend)[0]["date"] == "2024-06-03"

    def test_datetime_day_uses_date_part(self, recorder, backend):
        assert recorder.record_completion("alarm_001", datetime(2024, 6, 3, 23, 59), True)
        assert recorder.record_completion("alarm_001", "2024-06-03T07:00:00", True)
        assert [r["date"] for r in _records(backend)] == ["2024-06-03"]

    def test_invalid_day_rejected(self, recorder):
        with pytest.raises(ValueError):
            recorder.record_completion("alarm_001", "yesterday", True)

    def test_same_day_upserts(self, recorder, backend):
        recorder.record_completion("alarm_001", "2024-06-03", True, now=datetime(2024, 6, 3, 7, 10))
        created_at = _records(backend)[0]["created_at"]
        recorder.record_completion("alarm_001", "2024-06-03", True, now=datetime(2024, 6, 3, 9, 0))

        records = _records(backend)
        assert len(records) == 1
        assert records[0]["completed_at"] == "2024-06-03T09:00:00"
        assert records[0]["created_at"] == created_at

    def test_not_completed_clears_timestamp(self, recorder, backend):
        recorder.record_completion("alarm_001", "2024-06-03", True)
        recorder.record_completion("alarm_001", "2024-06-03", False)

        rec = _records(backend)[0]
        assert rec["completed"] is False
        assert rec["completed_at"] is None

    def test_keys_are_separate(self, recorder, backend):
        recorder.record_completion("alarm_001", "2024-06-03", True)
        recorder.record_completion("alarm_001", "2024-06-04", True)
        recorder.record_completion("alarm_002", "2024-06-03", True)
        recorder.record_completion("alarm_001", "2024-06-03", True, user_id="user_2")

        assert len(_records(backend)) == 4

    def test_save_failure_returns_false(self, recorder, backend):
        with patch.object(backend, "save_completions", return_value=SaveResult(False, "Error: disk full")):
            assert recorder.record_completion("alarm_001", "2024-06-03", True) is False

        assert _records(backend) == []

    def test_upsert_raises_on_save_failure(self, recorder, backend):
        with patch.object(backend, "save_completions", return_value=SaveResult(False, "Error: disk full")):
            with pytest.raises(PersistenceError, match="disk full"):
                recorder.upsert_completion("alarm_001", "2024-06-03", True, None)


# ============================================================================
# history
# ============================================================================


class TestHistory:
    def test_window_starts_on_sunday(self, recorder):
        rows = recorder.history("alarm_001", weeks=2, today=date(2024, 6, 5))

        assert len(rows) == 14
        assert rows[0][0] == date(2024, 5, 26)
        assert rows[0][0].isoweekday() == 7
        assert rows[-1][0] == date(2024, 6, 8)

    def test_marks_completed_days(self, recorder):
        recorder.record_completion("alarm_001", "2024-06-03", True)
        recorder.record_completion("alarm_001", "2024-06-04", False)
        recorder.record_completion("alarm_002", "2024-06-05", True)

        rows = dict(recorder.history("alarm_001", weeks=1, today=date(2024, 6, 5)))

        assert rows[date(2024, 6, 3)] is True
        assert rows[date(2024, 6, 4)] is False
        assert rows[date(2024, 6, 5)] is False
        assert sum(rows.values()) == 1

    def test_filters_by_user(self, recorder):
        recorder.record_completion("alarm_001", "2024-06-03", True, user_id="user_2")

        rows = dict(recorder.history("alarm_001", weeks=1, today=date(2024, 6, 3)))
        assert not any(rows.values())

        rows = dict(recorder.history("alarm_001", weeks=1, today=date(2024, 6, 3), user_id="user_2"))
        assert rows[date(2024, 6, 3)] is True

    def test_today_on_sunday(self, recorder):
        rows = recorder.history("alarm_001", weeks=1, today=date(2024, 6, 2))
        assert rows[0][0] == date(2024, 6, 2)
        assert len(rows) == 7
