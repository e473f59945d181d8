from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime
from threading import Lock, Timer
from typing import Callable, Dict, Iterator, List, Optional, Set

from time_utils import ensure_tz, now_in_tz

from .errors import AlarmForbiddenError, AlarmLifecycleError, AlarmNotFoundError, PastTimeError
from .storage import ALARM_KEY_PREFIX, AlarmRecord, AlarmStore, make_alarm_key

logger = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 300
DEFAULT_SCAN_COUNT = 100


@dataclass
class RecoveryReport:
    restored: int = 0
    expired: int = 0
    failed: int = 0


@dataclass
class _ArmedAlarm:
    record: AlarmRecord
    timer: Timer


class AlarmManager:
    """Owns pending alarm timers on top of a durable :class:`AlarmStore`.

    The store is the source of truth; the timer table is a cache that
    ``recover()`` rebuilds at process start. ``recover()`` must run exactly
    once before any other operation is accepted.
    """

    def __init__(
        self,
        store: AlarmStore,
        on_alarm_fired: Callable[[AlarmRecord], None],
        timezone=None,
        key_prefix: str = ALARM_KEY_PREFIX,
        grace_seconds: int = DEFAULT_GRACE_SECONDS,
        scan_count: int = DEFAULT_SCAN_COUNT,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.on_alarm_fired = on_alarm_fired
        self.tzinfo = timezone or datetime.now().astimezone().tzinfo
        self.key_prefix = key_prefix
        self.grace_seconds = max(0, grace_seconds)
        self.scan_count = max(1, scan_count)
        self._clock = clock or (lambda: now_in_tz(self.tzinfo))

        self._timers: Dict[str, _ArmedAlarm] = {}
        self._lock = Lock()
        self._recovered = False

    def recover(self) -> RecoveryReport:
        with self._lock:
            if self._recovered:
                raise AlarmLifecycleError("recover() already ran for this manager")
            self._recovered = True

        logger.info("Restoring alarms from store (prefix=%s)", self.key_prefix)
        report = RecoveryReport()
        now = self._now()
        for key in self._scan_keys():
            try:
                record = self._load(key)
                if record is None:
                    continue
                if record.scheduled_at > now:
                    self._arm(record, now)
                    report.restored += 1
                    logger.info("Restored alarm %s for %s", key, record.scheduled_at.isoformat())
                else:
                    self.store.delete(key)
                    report.expired += 1
                    logger.info("Dropped past-due alarm %s (was %s)", key, record.scheduled_at.isoformat())
            except Exception:
                report.failed += 1
                logger.error("Failed to restore alarm %s", key, exc_info=True)
        logger.info(
            "Alarm recovery finished: restored=%s expired=%s failed=%s",
            report.restored,
            report.expired,
            report.failed,
        )
        return report

    def build_record(
        self,
        scheduled_at: datetime,
        setter_id: str,
        target_id: str,
        conversation_id: str,
        content: str,
    ) -> AlarmRecord:
        scheduled_at = ensure_tz(scheduled_at, self.tzinfo)
        return AlarmRecord(
            key=make_alarm_key(self.key_prefix, scheduled_at, setter_id),
            setter_id=str(setter_id),
            target_id=str(target_id),
            conversation_id=str(conversation_id),
            content=content,
            scheduled_at=scheduled_at,
            created_at=self._now(),
        )

    def create(self, record: AlarmRecord) -> AlarmRecord:
        self._require_recovered()
        if not record.key.startswith(self.key_prefix):
            raise ValueError(f"Alarm key {record.key!r} is outside prefix {self.key_prefix!r}")
        now = self._now()
        scheduled_at = ensure_tz(record.scheduled_at, self.tzinfo)
        if scheduled_at <= now:
            raise PastTimeError(f"Alarm time {scheduled_at.isoformat()} is not after {now.isoformat()}")
        if scheduled_at != record.scheduled_at:
            record = replace(record, scheduled_at=scheduled_at)

        ttl = math.ceil((scheduled_at - now).total_seconds()) + self.grace_seconds
        self.store.set(record.key, record.to_json(), ttl)
        self._arm(record, now)
        return record

    def list_alarms(self, conversation_id: Optional[str] = None) -> List[AlarmRecord]:
        self._require_recovered()
        alarms: List[AlarmRecord] = []
        for key in self._scan_keys():
            try:
                record = self._load(key)
            except Exception as exc:
                logger.warning("Skipping alarm %s: %s", key, exc)
                continue
            if record is None:
                continue
            if conversation_id is not None and record.conversation_id != str(conversation_id):
                continue
            alarms.append(record)
        alarms.sort(key=lambda a: (a.scheduled_at, a.key))
        return alarms

    def list_alarms_grouped(self) -> Dict[str, List[AlarmRecord]]:
        grouped: Dict[str, List[AlarmRecord]] = {}
        for record in self.list_alarms():
            grouped.setdefault(record.conversation_id, []).append(record)
        return grouped

    def cancel(self, key: str, requester_id: str, privileged: bool = False) -> AlarmRecord:
        self._require_recovered()
        try:
            record = self._load(key)
        except ValueError as exc:
            raise AlarmNotFoundError(f"Alarm {key} is unreadable: {exc}") from exc
        if record is None:
            raise AlarmNotFoundError(f"Alarm {key} does not exist")
        if str(requester_id) != record.setter_id and not privileged:
            raise AlarmForbiddenError(f"{requester_id} may not cancel alarm {key}")

        with self._lock:
            armed = self._timers.pop(key, None)
        if armed:
            armed.timer.cancel()
        self.store.delete(key)
        logger.info("Cancelled alarm %s (requester=%s)", key, requester_id)
        return record

    def cancel_by_index(
        self,
        index: int,
        conversation_id: Optional[str],
        requester_id: str,
        privileged: bool = False,
    ) -> AlarmRecord:
        alarms = self.list_alarms(conversation_id)
        if index < 1 or index > len(alarms):
            raise AlarmNotFoundError(f"No alarm number {index} (have {len(alarms)})")
        return self.cancel(alarms[index - 1].key, requester_id, privileged=privileged)

    def fire_now(self, key: str) -> bool:
        self._require_recovered()
        with self._lock:
            armed = self._timers.get(key)
        if armed is None:
            return False
        armed.timer.cancel()
        return self._fire(armed.record)

    def armed_keys(self) -> Set[str]:
        with self._lock:
            return set(self._timers)

    def shutdown(self) -> None:
        with self._lock:
            armed = list(self._timers.values())
            self._timers.clear()
        for item in armed:
            item.timer.cancel()
        logger.info("Alarm manager stopped, %s timers disarmed", len(armed))

    def _arm(self, record: AlarmRecord, now: datetime) -> None:
        delay = max(0.0, (record.scheduled_at - now).total_seconds())
        timer = Timer(delay, self._fire, args=(record,))
        timer.name = f"alarm-{record.key}"
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(record.key, None)
            self._timers[record.key] = _ArmedAlarm(record=record, timer=timer)
        if previous:
            previous.timer.cancel()
        timer.start()
        logger.info(
            "Alarm %s scheduled for %s (target=%s)",
            record.key,
            record.scheduled_at.isoformat(),
            record.target_id,
        )

    def _fire(self, record: AlarmRecord) -> bool:
        # Whoever removes the table entry owns the alarm: fire, fire_now or cancel.
        with self._lock:
            armed = self._timers.get(record.key)
            if armed is None or armed.record is not record:
                return False
            del self._timers[record.key]

        logger.info("Alarm triggered: %s (conversation=%s)", record.key, record.conversation_id)
        try:
            self.on_alarm_fired(record)
        except Exception:
            logger.error("Delivery of alarm %s failed", record.key, exc_info=True)
        finally:
            try:
                self.store.delete(record.key)
            except Exception:
                logger.error("Failed to delete fired alarm %s", record.key, exc_info=True)
        return True

    def _scan_keys(self) -> Iterator[str]:
        match = f"{self.key_prefix}*"
        seen: Set[str] = set()
        cursor = 0
        while True:
            try:
                cursor, keys = self.store.scan(cursor, match, self.scan_count)
            except Exception:
                logger.error("Alarm store scan failed, stopping at cursor %s", cursor, exc_info=True)
                return
            for key in keys:
                if key not in seen:
                    seen.add(key)
                    yield key
            if cursor == 0:
                return

    def _load(self, key: str) -> Optional[AlarmRecord]:
        raw = self.store.get(key)
        if raw is None:
            return None
        record = AlarmRecord.from_json(raw)
        return replace(record, scheduled_at=ensure_tz(record.scheduled_at, self.tzinfo))

    def _now(self) -> datetime:
        return ensure_tz(self._clock(), self.tzinfo)

    def _require_recovered(self) -> None:
        if not self._recovered:
            raise AlarmLifecycleError("recover() must run before alarms can be used")
