from datetime import datetime, timedelta
from pathlib import Path

import pytest

from alarm_clock import AlarmClockRuntime, build_store
from alarms.errors import PastTimeError, UnparseableTimeError
from alarms.storage import JsonFileAlarmStore, MemoryAlarmStore, RedisAlarmStore
from config import Config


def _config(**overrides) -> Config:
    values = dict(
        timezone_name="Asia/Shanghai",
        store_backend="memory",
        redis_url="redis://localhost:6379/0",
        alarms_path=Path("data/alarms.json"),
        key_prefix="alarm:clock:",
        grace_seconds=300,
        scan_count=100,
        debug=False,
        log_level="INFO",
        log_dir=Path("logs"),
    )
    values.update(overrides)
    return Config(**values)


@pytest.fixture
def delivered():
    return []


@pytest.fixture
def runtime(delivered):
    rt = AlarmClockRuntime(_config(), store=MemoryAlarmStore(), deliver=delivered.append)
    rt.start()
    yield rt
    rt.shutdown()


def test_build_store_by_backend(tmp_path):
    assert isinstance(build_store(_config(store_backend="memory")), MemoryAlarmStore)
    json_store = build_store(_config(store_backend="json", alarms_path=tmp_path / "a.json"))
    assert isinstance(json_store, JsonFileAlarmStore)
    assert isinstance(build_store(_config(store_backend="redis")), RedisAlarmStore)


def test_set_alarm_resolves_phrase_and_schedules(runtime, delivered):
    record = runtime.set_alarm("10 minutes from now", " standup ", "u1", "g1")
    assert record.content == "standup"
    assert record.target_id == "u1"
    assert record.key.startswith("alarm:clock:")

    listed = runtime.list_alarms("g1")
    assert [r.key for r in listed] == [record.key]

    assert runtime.manager.fire_now(record.key)
    assert [r.content for r in delivered] == ["standup"]
    assert runtime.list_alarms("g1") == []


def test_set_alarm_for_someone_else(runtime):
    record = runtime.set_alarm("明天下午3点", "开会", "u1", "g1", target_id="u2")
    assert record.target_id == "u2"
    assert record.scheduled_at.hour == 15


def test_set_alarm_rejections(runtime):
    with pytest.raises(PastTimeError):
        runtime.set_alarm("2020-01-01 10:00", "too late", "u1", "g1")
    with pytest.raises(UnparseableTimeError):
        runtime.set_alarm("2025-13-45", "bad date", "u1", "g1")
    with pytest.raises(ValueError):
        runtime.set_alarm("10 minutes from now", "   ", "u1", "g1")
    assert runtime.list_alarms() == []


def test_set_alarm_with_explicit_now(runtime):
    now = datetime.now() + timedelta(days=1)
    record = runtime.set_alarm("today 23:59", "late call", "u1", "g1", now=now)
    assert record.scheduled_at.date() == now.date()


def test_console_commands(runtime):
    assert runtime.handle_command("set 1 hours from now | tea").startswith("Alarm set for ")
    assert "tea" in runtime.handle_command("list")
    assert "tea" in runtime.handle_command("all")
    assert runtime.handle_command("cancel 1") == "Cancelled: tea"
    assert runtime.handle_command("list") == "No pending alarms."
    assert runtime.handle_command("cancel 3").startswith("Error: ")
    assert runtime.handle_command("set whenever | ").startswith("Error: ")
    assert runtime.handle_command("dance") is None
