from __future__ import annotations

import json
import logging
import math
import os
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from fnmatch import fnmatchcase
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import redis

logger = logging.getLogger(__name__)

ALARM_KEY_PREFIX = "alarm:clock:"
RECORD_VERSION = 1


@dataclass(frozen=True)
class AlarmRecord:
    key: str
    setter_id: str
    target_id: str
    conversation_id: str
    content: str
    scheduled_at: datetime
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "version": RECORD_VERSION,
            "key": self.key,
            "setter_id": self.setter_id,
            "target_id": self.target_id,
            "conversation_id": self.conversation_id,
            "content": self.content,
            "scheduled_at": self.scheduled_at.isoformat(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AlarmRecord":
        # "time" / "group_id" are the field names of the chat plugin's records
        scheduled_raw = data.get("scheduled_at") or data.get("time")
        key = data.get("key")
        if not key or not scheduled_raw:
            raise ValueError("Alarm payload missing key/scheduled_at fields")
        created_raw = data.get("created_at")
        return cls(
            key=str(key),
            setter_id=str(data.get("setter_id", "")),
            target_id=str(data.get("target_id", "")),
            conversation_id=str(data.get("conversation_id") or data.get("group_id") or ""),
            content=str(data.get("content", "")),
            scheduled_at=_parse_timestamp(scheduled_raw),
            created_at=_parse_timestamp(created_raw) if created_raw else None,
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str) -> "AlarmRecord":
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Alarm payload is not a JSON object")
        return cls.from_dict(data)


def make_alarm_key(prefix: str, scheduled_at: datetime, setter_id: str) -> str:
    return f"{prefix}{int(scheduled_at.timestamp())}:{setter_id}:{uuid.uuid4().hex}"


def _parse_timestamp(raw: str) -> datetime:
    # fromisoformat() before 3.11 rejects the "Z" suffix JavaScript writes
    value = str(raw)
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


class AlarmStore(Protocol):
    """Durable key/value capability the manager needs.

    Shaped after Redis: ``scan`` is cursor based (``0`` both starts and ends
    a scan), ``set`` takes a TTL in seconds and ``delete`` of a missing key is
    a silent no-op.
    """

    def scan(self, cursor: int, match: str, count: int) -> Tuple[int, List[str]]:
        ...

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class RedisAlarmStore:
    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisAlarmStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def scan(self, cursor: int, match: str, count: int) -> Tuple[int, List[str]]:
        next_cursor, keys = self.client.scan(cursor=cursor, match=match, count=count)
        return int(next_cursor), [k.decode("utf-8") if isinstance(k, bytes) else k for k in keys]

    def get(self, key: str) -> Optional[str]:
        value = self.client.get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    def delete(self, key: str) -> None:
        self.client.delete(key)


class MemoryAlarmStore:
    """In-process store with TTL and paginated scans."""

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.time
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._scans: Dict[int, Tuple[List[str], int]] = {}
        self._next_cursor = 0
        self._lock = Lock()

    def scan(self, cursor: int, match: str, count: int) -> Tuple[int, List[str]]:
        # Each scan walks a key snapshot taken at cursor 0, so deletes between
        # pages cannot shift later keys out of reach.
        count = max(1, count)
        with self._lock:
            self._purge_expired()
            if cursor == 0:
                keys, position = sorted(self._entries), 0
            else:
                keys, position = self._scans.pop(cursor, ([], 0))
            page = [k for k in keys[position:position + count] if k in self._entries]
            next_cursor = 0
            if position + count < len(keys):
                self._next_cursor += 1
                next_cursor = self._next_cursor
                self._scans[next_cursor] = (keys, position + count)
        return next_cursor, [k for k in page if fnmatchcase(k, match)]

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry[1] <= self._clock():
                del self._entries[key]
                return None
            return entry[0]

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        return math.ceil(entry[1] - self._clock())

    def _purge_expired(self) -> None:
        now = self._clock()
        for key in [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]:
            del self._entries[key]


class JsonFileAlarmStore:
    """Single JSON file store for running without a Redis server."""

    def __init__(self, path: Path, clock: Optional[Callable[[], float]] = None):
        self.path = Path(path)
        self._clock = clock or time.time
        self._lock = Lock()

    def scan(self, cursor: int, match: str, count: int) -> Tuple[int, List[str]]:
        with self._lock:
            entries = self._load()
        now = self._clock()
        return 0, sorted(k for k, item in entries.items() if item["expires_at"] > now and fnmatchcase(k, match))

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._load().get(key)
        if item is None or item["expires_at"] <= self._clock():
            return None
        return item["value"]

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            entries = self._load()
            entries[key] = {"value": value, "expires_at": self._clock() + max(1, int(ttl_seconds))}
            self._save(entries)

    def delete(self, key: str) -> None:
        with self._lock:
            entries = self._load()
            if entries.pop(key, None) is not None:
                self._save(entries)

    def _load(self) -> Dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, ValueError) as exc:
            logger.error("Failed to load alarms from %s: %s", self.path, exc)
            return {}
        if not isinstance(payload, dict):
            logger.error("Unexpected alarm store layout in %s, ignoring", self.path)
            return {}
        now = self._clock()
        entries: Dict[str, dict] = {}
        for key, item in payload.items():
            try:
                expires_at = float(item["expires_at"])
                value = str(item["value"])
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping store entry %s due to parse error: %s", key, exc)
                continue
            if expires_at > now:
                entries[key] = {"value": value, "expires_at": expires_at}
        return entries

    def _save(self, entries: Dict[str, dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(entries, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.path)
