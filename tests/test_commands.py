import json
from datetime import datetime, timezone

import pytest

import alarm_cli
from alarms.commands import CommandRouter, format_alarm_table

FIXED_NOW = datetime(2025, 1, 1, 6, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def fixed_clock(monkeypatch):
    monkeypatch.setattr("alarms.manager.now_in_tz", lambda tzinfo: FIXED_NOW)
    monkeypatch.setattr("alarms.commands.now_in_tz", lambda tzinfo: FIXED_NOW)


@pytest.fixture
def router(manager):
    return CommandRouter(manager)


def test_add_schedules_alarm_for_today(router, manager):
    result = router.add("tea", "Tea", 7, 30, 0, "Radial")

    assert result.exit_code == 0
    assert result.stdout == "Alarm tea set for 07:30 (Tea), rings in 5400s"
    alarm = manager.get("tea")
    assert alarm.trigger == "0 30 7 * * *"
    assert alarm.fire_at == datetime(2025, 1, 1, 7, 30, tzinfo=timezone.utc)


def test_add_rejects_past_time(router, manager):
    result = router.add("early", "Early", 5, 59, 59, "Radial")

    assert result.exit_code == 1
    assert result.stderr.startswith("Cannot create alarm:")
    assert manager.list_alarms() == []


def test_add_rejects_out_of_range_time(router, manager):
    result = router.add("late", "Late", 25, 0, 0, "Radial")

    assert result.exit_code == 1
    assert result.stderr.startswith("Invalid time:")
    assert manager.list_alarms() == []


def test_add_rejects_duplicate_id_and_unknown_sound(router):
    assert router.add("tea", "Tea", 7, 0, 0, "Radial").ok
    duplicate = router.add("tea", "Tea", 8, 0, 0, "Radial")
    unknown = router.add("coffee", "Coffee", 8, 0, 0, "Kazoo")

    assert duplicate.exit_code == 1
    assert duplicate.stderr == "Cannot create alarm: Alarm tea already exists"
    assert unknown.exit_code == 1
    assert "Kazoo" in unknown.stderr


def test_list_outputs_json_and_table(router):
    router.add("tea", "Tea", 7, 0, 0, "Radial")
    router.add("bed", "Bed", 22, 15, 5, "Chimes")

    payload = json.loads(router.list().stdout)
    assert [item["id"] for item in payload] == ["tea", "bed"]
    assert payload[1]["time"] == "22:15:05"
    assert payload[1]["trigger"] == "5 15 22 * * *"
    assert payload[0]["state"] == "scheduled"

    table = router.list(table=True).stdout.splitlines()
    assert table[0] == "tea  07:00  [scheduled]  Tea"
    assert table[1] == "bed  22:15:05  [scheduled]  Bed"


def test_empty_table():
    assert format_alarm_table([], FIXED_NOW) == "No alarms."


def test_stop_unknown_alarm_is_not_an_error(router):
    result = router.stop("ghost")
    assert result.exit_code == 0
    assert result.stdout == "Alarm ghost is not ringing"


def test_stop_ringing_alarm(router, manager):
    router.add("tea", "Tea", 7, 0, 0, "Radial")
    manager.engine.fire("tea")

    assert router.stop("tea").stdout == "Stopped alarm tea"
    assert router.stop_all().stdout == "Stopped 0 alarm(s)"


def test_stop_all_reports_count(router, manager):
    router.add("tea", "Tea", 7, 0, 0, "Radial")
    router.add("bed", "Bed", 8, 0, 0, "Radial")
    manager.engine.fire("tea")
    manager.engine.fire("bed")

    assert router.stop_all().stdout == "Stopped 2 alarm(s)"


def test_remove(router, manager):
    router.add("tea", "Tea", 7, 0, 0, "Radial")

    assert router.remove("tea").stdout == "Removed alarm tea (Tea at 07:00)"
    assert manager.list_alarms() == []
    missing = router.remove("tea")
    assert missing.exit_code == 1
    assert missing.stderr == "No alarm with id tea"


def test_sounds_lists_catalog(router):
    names = router.sounds().stdout.splitlines()
    assert "Radial" in names
    assert "Beep" in names


def test_preview_unknown_sound(router):
    result = router.preview("Kazoo")
    assert result.exit_code == 1
    assert result.stderr.startswith("Cannot preview Kazoo")


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ALARM_STORAGE_PATH", str(tmp_path / "alarms.json"))
    monkeypatch.setenv("ALARM_SOUNDS_DIR", str(tmp_path / "ringtones"))
    monkeypatch.setenv("ALARM_TIMEZONE", "UTC")
    monkeypatch.setenv("ENABLE_DESKTOP_NOTIFICATIONS", "0")
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setattr(alarm_cli, "setup_logging", lambda *args, **kwargs: None)
    return tmp_path


def test_cli_add_then_list(cli_env, capsys):
    assert alarm_cli.main(["add", "tea", "Tea", "7", "0", "0"]) == 0
    assert "Alarm tea set for 07:00 (Tea)" in capsys.readouterr().out

    assert alarm_cli.main(["list"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload[0]["id"] == "tea"
    assert payload[0]["sound"] == "Radial"

    stored = json.loads((cli_env / "alarms.json").read_text(encoding="utf-8"))
    assert [item["id"] for item in stored["alarms"]] == ["tea"]


def test_cli_invalid_time_exit_code(cli_env, capsys):
    assert alarm_cli.main(["add", "late", "Late", "25", "0", "0"]) == 1
    assert "Invalid time" in capsys.readouterr().err


def test_cli_stop_all_on_empty_store(cli_env, capsys):
    assert alarm_cli.main(["stop-all"]) == 0
    assert capsys.readouterr().out.strip() == "Stopped 0 alarm(s)"


def test_cli_bad_config(cli_env, monkeypatch, capsys):
    monkeypatch.setenv("ALARM_AUTO_STOP_SECONDS", "0")
    assert alarm_cli.main(["list"]) == 2
    assert "Configuration error" in capsys.readouterr().err
