import os
from pathlib import Path

import pytest

from config import load_config

CONFIG_VARS = (
    "ALARM_TIMEZONE",
    "ALARM_STORE_BACKEND",
    "REDIS_URL",
    "ALARM_STORAGE_PATH",
    "ALARM_KEY_PREFIX",
    "ALARM_GRACE_SECONDS",
    "ALARM_SCAN_COUNT",
    "DEBUG",
    "LOG_LEVEL",
    "LOG_DIR",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in CONFIG_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults(tmp_path):
    config = load_config(tmp_path / "missing.env")
    assert config.timezone_name == "Asia/Shanghai"
    assert config.store_backend == "redis"
    assert config.redis_url == "redis://localhost:6379/0"
    assert config.alarms_path == Path("data/alarms.json")
    assert config.key_prefix == "alarm:clock:"
    assert config.grace_seconds == 300
    assert config.scan_count == 100
    assert config.log_level == "INFO"


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("ALARM_STORE_BACKEND", "JSON")
    monkeypatch.setenv("ALARM_GRACE_SECONDS", "60")
    monkeypatch.setenv("LOG_LEVEL", "warning")
    config = load_config(tmp_path / "missing.env")
    assert config.store_backend == "json"
    assert config.grace_seconds == 60
    assert config.log_level == "WARNING"


def test_debug_forces_debug_logging(tmp_path, monkeypatch):
    monkeypatch.setenv("DEBUG", "1")
    monkeypatch.setenv("LOG_LEVEL", "ERROR")
    assert load_config(tmp_path / "missing.env").log_level == "DEBUG"


def test_dotenv_file_is_loaded(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("ALARM_SCAN_COUNT=25\nALARM_TIMEZONE=UTC\n", encoding="utf-8")
    try:
        config = load_config(env_file)
        assert config.scan_count == 25
        assert config.timezone_name == "UTC"
    finally:
        os.environ.pop("ALARM_SCAN_COUNT", None)
        os.environ.pop("ALARM_TIMEZONE", None)


@pytest.mark.parametrize(
    "name, value",
    [("ALARM_GRACE_SECONDS", "soon"), ("ALARM_GRACE_SECONDS", "-1"), ("ALARM_SCAN_COUNT", "1.5"), ("ALARM_STORE_BACKEND", "sqlite")],
)
def test_invalid_values_are_rejected(tmp_path, monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        load_config(tmp_path / "missing.env")
