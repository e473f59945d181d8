import logging
import logging.handlers
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

STORE_BACKENDS = ("redis", "json", "memory")


def _get_env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return val.strip() in {"1", "true", "True", "yes", "YES", "y"}


def _get_env_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    try:
        return int(val)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer") from exc


@dataclass
class Config:
    timezone_name: str
    store_backend: str
    redis_url: str
    alarms_path: Path
    key_prefix: str
    grace_seconds: int
    scan_count: int
    debug: bool
    log_level: str
    log_dir: Path


def load_config(env_path: Optional[Path] = None) -> Config:
    if env_path is None:
        env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)

    timezone_name = os.getenv("ALARM_TIMEZONE", "Asia/Shanghai")
    store_backend = os.getenv("ALARM_STORE_BACKEND", "redis").strip().lower()
    if store_backend not in STORE_BACKENDS:
        raise ValueError(
            f"ALARM_STORE_BACKEND must be one of {', '.join(STORE_BACKENDS)}, got {store_backend!r}"
        )
    redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    alarms_path = Path(os.getenv("ALARM_STORAGE_PATH", "data/alarms.json"))
    key_prefix = os.getenv("ALARM_KEY_PREFIX", "alarm:clock:")
    grace_seconds = _get_env_int("ALARM_GRACE_SECONDS", 300)
    if grace_seconds < 0:
        raise ValueError("ALARM_GRACE_SECONDS must not be negative")
    scan_count = _get_env_int("ALARM_SCAN_COUNT", 100)
    debug = _get_env_bool("DEBUG", False)
    log_level = "DEBUG" if debug else os.getenv("LOG_LEVEL", "INFO").upper()
    log_dir = Path(os.getenv("LOG_DIR", "logs"))

    return Config(
        timezone_name=timezone_name,
        store_backend=store_backend,
        redis_url=redis_url,
        alarms_path=alarms_path,
        key_prefix=key_prefix,
        grace_seconds=grace_seconds,
        scan_count=scan_count,
        debug=debug,
        log_level=log_level,
        log_dir=log_dir,
    )


def setup_logging(log_level: str = "INFO", log_dir: Path = Path("logs")) -> None:
    log_dir.mkdir(parents=True, exist_ok=True)

    log_path = log_dir / "alarm_clock.log"
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=1_000_000, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        handlers=[file_handler, console_handler],
    )
