"""Unit tests for JsonTimerStore."""

import json
import threading
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from habitclock.alarms.errors import TimerStoreError
from habitclock.alarms.schema import TimerPayload
from habitclock.alarms.storage import SaveResult
from habitclock.alarms.timer_store import JsonTimerStore


@pytest.fixture
def store(tmp_path):
    return JsonTimerStore(tmp_path)


def _payload(alarm_id="alarm_001", kind="alarm"):
    return TimerPayload(alarm_id=alarm_id, kind=kind)


class TestScheduleAndList:
    def test_empty_store(self, store):
        assert store.list_pending() == []
        assert store.next_fire_at() is None

    def test_schedule_returns_id_and_persists(self, store, tmp_path):
        timer_id = store.schedule(datetime(2024, 6, 3, 7, 0), _payload(), "Stretch", "Time for your habit!")

        assert timer_id.startswith("tmr_")
        pending = store.list_pending()
        assert len(pending) == 1
        assert pending[0].id == timer_id
        assert pending[0].fire_at == "2024-06-03T07:00:00"
        assert pending[0].payload.alarm_id == "alarm_001"
        assert pending[0].title == "Stretch"

        on_disk = json.loads((tmp_path / "alarms" / "timers.json").read_text())
        assert on_disk["timers"][0]["id"] == timer_id

    def test_ids_are_unique(self, store):
        ids = {store.schedule(datetime(2024, 6, 3, 7, 0), _payload()) for _ in range(5)}
        assert len(ids) == 5

    def test_microseconds_dropped(self, store):
        store.schedule(datetime(2024, 6, 3, 7, 0, 0, 123456), _payload())
        assert store.list_pending()[0].fire_at == "2024-06-03T07:00:00"

    def test_next_fire_at_is_nearest(self, store):
        store.schedule(datetime(2024, 6, 5, 7, 0), _payload())
        store.schedule(datetime(2024, 6, 3, 7, 10), _payload(kind="verification"))
        store.schedule(datetime(2024, 6, 4, 7, 0), _payload())

        assert store.next_fire_at() == datetime(2024, 6, 3, 7, 10)


class TestCancel:
    def test_cancel_removes_only_that_timer(self, store):
        keep = store.schedule(datetime(2024, 6, 3, 7, 0), _payload())
        drop = store.schedule(datetime(2024, 6, 3, 7, 10), _payload(kind="verification"))

        assert store.cancel(drop) is True
        assert [t.id for t in store.list_pending()] == [keep]

    def test_cancel_unknown_returns_false(self, store):
        assert store.cancel("tmr_missing") is False


class TestPopDue:
    def test_pops_due_and_keeps_future(self, store):
        store.schedule(datetime(2024, 6, 3, 7, 10), _payload(kind="verification"))
        store.schedule(datetime(2024, 6, 3, 7, 0), _payload())
        future = store.schedule(datetime(2024, 6, 5, 7, 0), _payload())

        due = store.pop_due(datetime(2024, 6, 3, 7, 10))

        assert [t.fire_at for t in due] == ["2024-06-03T07:00:00", "2024-06-03T07:10:00"]
        assert [t.id for t in store.list_pending()] == [future]

    def test_popped_timers_do_not_fire_twice(self, store):
        store.schedule(datetime(2024, 6, 3, 7, 0), _payload())
        now = datetime(2024, 6, 3, 7, 0)

        assert len(store.pop_due(now)) == 1
        assert store.pop_due(now) == []

    def test_nothing_due(self, store):
        store.schedule(datetime(2024, 6, 5, 7, 0), _payload())
        assert store.pop_due(datetime(2024, 6, 3, 7, 0)) == []
        assert len(store.list_pending()) == 1


class TestPermissionAndFailures:
    def test_permission_flag(self, tmp_path):
        assert JsonTimerStore(tmp_path).request_delivery_permission() is True
        assert JsonTimerStore(tmp_path, permission_granted=False).request_delivery_permission() is False

    def test_save_failure_raises(self, store):
        with patch(
            "habitclock.alarms.timer_store.save_json_file",
            return_value=SaveResult(False, "Error: disk full"),
        ):
            with pytest.raises(TimerStoreError, match="disk full"):
                store.schedule(datetime(2024, 6, 3, 7, 0), _payload())

    def test_invalid_ledger_raises(self, store, tmp_path):
        path = tmp_path / "alarms" / "timers.json"
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"version": "1.0", "timers": [{"id": "tmr_x"}]}))

        with pytest.raises(TimerStoreError):
            store.list_pending()

    def test_unparseable_file_raises(self, store, tmp_path):
        path = tmp_path / "alarms" / "timers.json"
        path.parent.mkdir(parents=True)
        path.write_text("{not json")

        with pytest.raises(TimerStoreError, match="unreadable"):
            store.list_pending()

    def test_corrupt_ledger_is_not_overwritten(self, store, tmp_path):
        store.schedule(datetime(2024, 6, 3, 7, 0), _payload("alarm_a"))
        path = tmp_path / "alarms" / "timers.json"
        truncated = path.read_text()[:20]
        path.write_text(truncated)

        with pytest.raises(TimerStoreError):
            store.schedule(datetime(2024, 6, 4, 7, 0), _payload("alarm_b"))
        with pytest.raises(TimerStoreError):
            store.pop_due(datetime(2024, 7, 1))

        assert path.read_text() == truncated


# ============================================================================
# Separate processes sharing one ledger
# ============================================================================


class TestSharedLedger:
    def test_two_stores_on_one_workspace_keep_every_timer(self, tmp_path):
        """Each store stands in for a process (delivery loop, CLI edit)."""
        stores = [JsonTimerStore(tmp_path), JsonTimerStore(tmp_path)]
        base = datetime(2024, 6, 3, 7, 0)

        def add_many(store, alarm_id):
            for i in range(40):
                store.schedule(base + timedelta(minutes=i), _payload(alarm_id))

        threads = [
            threading.Thread(target=add_many, args=(s, f"alarm_{n}")) for n, s in enumerate(stores)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        pending = stores[0].list_pending()
        assert len(pending) == 80
        assert len({t.id for t in pending}) == 80

    def test_pop_due_is_single_shot_across_stores(self, tmp_path):
        first, second = JsonTimerStore(tmp_path), JsonTimerStore(tmp_path)
        for i in range(20):
            first.schedule(datetime(2024, 6, 3, 7, i), _payload())

        popped = []

        def pop(store):
            popped.extend(store.pop_due(datetime(2024, 6, 3, 8, 0)))

        threads = [threading.Thread(target=pop, args=(s,)) for s in (first, second)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(popped) == 20
        assert len({t.id for t in popped}) == 20
        assert first.list_pending() == []

    def test_lock_timeout_is_a_store_failure(self, tmp_path):
        from filelock import FileLock

        store = JsonTimerStore(tmp_path, lock_timeout_s=0.05)
        (tmp_path / "alarms").mkdir()
        holder = FileLock(str(tmp_path / "alarms" / "timers.json.lock"))

        with holder:
            with pytest.raises(TimerStoreError, match="lock"):
                store.list_pending()

        assert store.list_pending() == []
