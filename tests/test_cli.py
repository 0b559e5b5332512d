"""End-to-end tests for the habitclock CLI against a temporary workspace."""

import json

import pytest
from typer.testing import CliRunner

from habitclock.alarms.dispatcher import reset_notification_handling
from habitclock.alarms.storage import JsonStorageBackend
from habitclock.alarms.timer_store import JsonTimerStore
from habitclock.cli.commands import app, format_days, parse_days

runner = CliRunner()


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    ws = tmp_path / "data" / "workspace"
    monkeypatch.setenv("HABITCLOCK_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("HABITCLOCK_WORKSPACE", raising=False)
    monkeypatch.delenv("HABITCLOCK_DELIVERY__PERMISSION_GRANTED", raising=False)
    reset_notification_handling()
    yield ws
    reset_notification_handling()


def _alarms(ws):
    return JsonStorageBackend(ws).load_alarms()["alarms"]


def _pending(ws):
    return JsonTimerStore(ws).list_pending()


# ============================================================================
# Day parsing
# ============================================================================


class TestParseDays:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("1,3,5", [1, 3, 5]),
            ("mon,wed,fri", [1, 3, 5]),
            ("Sunday saturday", [0, 6]),
            ("weekdays", [1, 2, 3, 4, 5]),
            ("weekends", [0, 6]),
            ("everyday", [0, 1, 2, 3, 4, 5, 6]),
            ("5,5,1", [1, 5]),
        ],
    )
    def test_valid(self, value, expected):
        assert parse_days(value) == expected

    @pytest.mark.parametrize("value", ["7", "funday", "1;2"])
    def test_invalid(self, value):
        import typer

        with pytest.raises(typer.BadParameter):
            parse_days(value)

    def test_format_presets(self):
        assert format_days([1, 2, 3, 4, 5]) == "Weekdays"
        assert format_days([1, 3]) == "Mon, Wed"


# ============================================================================
# Commands
# ============================================================================


class TestCommands:
    def test_version(self, workspace):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "habitclock v" in result.stdout

    def test_onboard_writes_config(self, workspace, tmp_path):
        result = runner.invoke(app, ["onboard"])

        assert result.exit_code == 0
        config = json.loads((tmp_path / "data" / "config.json").read_text())
        assert config["workspace"] == ""
        assert workspace.is_dir()

    def test_add_list_and_timers(self, workspace):
        result = runner.invoke(app, ["alarm", "add", "Stretch", "07:00", "--days", "mon,wed,fri"])

        assert result.exit_code == 0, result.stdout
        alarms = _alarms(workspace)
        assert len(alarms) == 1
        assert alarms[0]["days_of_week"] == [1, 3, 5]
        assert len(_pending(workspace)) == 6

        listed = runner.invoke(app, ["alarm", "list"])
        assert listed.exit_code == 0
        assert "Stretch" in listed.stdout

        timers = runner.invoke(app, ["timers", "--alarm", alarms[0]["id"]])
        assert timers.exit_code == 0
        assert "Pending timers" in timers.stdout

    def test_add_rejects_bad_time(self, workspace):
        result = runner.invoke(app, ["alarm", "add", "Stretch", "7am"])

        assert result.exit_code == 1
        assert _alarms(workspace) == []

    def test_add_permission_denied(self, workspace, monkeypatch):
        monkeypatch.setenv("HABITCLOCK_DELIVERY__PERMISSION_GRANTED", "false")

        result = runner.invoke(app, ["alarm", "add", "Stretch", "07:00", "--days", "1"])

        assert result.exit_code == 1
        assert "not permitted" in result.stdout
        assert len(_alarms(workspace)) == 1
        assert _pending(workspace) == []

    def test_edit_toggle_delete(self, workspace):
        runner.invoke(app, ["alarm", "add", "Stretch", "07:00", "--days", "1,3"])
        alarm_id = _alarms(workspace)[0]["id"]

        result = runner.invoke(app, ["alarm", "edit", alarm_id, "--days", "2"])
        assert result.exit_code == 0, result.stdout
        assert len(_pending(workspace)) == 2

        result = runner.invoke(app, ["alarm", "toggle", alarm_id])
        assert result.exit_code == 0
        assert _pending(workspace) == []
        assert _alarms(workspace)[0]["is_active"] is False

        result = runner.invoke(app, ["alarm", "delete", alarm_id, "--yes"])
        assert result.exit_code == 0
        assert _alarms(workspace) == []

    def test_fire_rearms_a_week_later(self, workspace):
        runner.invoke(app, ["alarm", "add", "Stretch", "07:00", "--days", "everyday"])
        first = min(_pending(workspace), key=lambda t: t.fire_at)

        result = runner.invoke(app, ["fire", first.id])

        assert result.exit_code == 0, result.stdout
        pending = _pending(workspace)
        assert len(pending) == 14
        assert first.id not in {t.id for t in pending}

    def test_fire_timer_already_taken(self, workspace, monkeypatch):
        """The delivery loop popped the timer between listing and cancelling."""
        runner.invoke(app, ["alarm", "add", "Stretch", "07:00", "--days", "1"])
        first = min(_pending(workspace), key=lambda t: t.fire_at)
        monkeypatch.setattr(JsonTimerStore, "cancel", lambda self, timer_id: False)

        result = runner.invoke(app, ["fire", first.id])

        assert result.exit_code == 1
        assert len(_pending(workspace)) == 2

    def test_fire_unknown_timer(self, workspace):
        result = runner.invoke(app, ["fire", "tmr_missing"])
        assert result.exit_code == 1

    def test_respond_and_history(self, workspace):
        runner.invoke(app, ["alarm", "add", "Stretch", "07:00"])
        alarm_id = _alarms(workspace)[0]["id"]

        result = runner.invoke(app, ["respond", alarm_id])
        assert result.exit_code == 0

        result = runner.invoke(app, ["history", alarm_id, "--weeks", "2"])
        assert result.exit_code == 0
        assert "1 days completed" in result.stdout

    def test_status(self, workspace):
        result = runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "Pending timers" in result.stdout
