"""Alarm subsystem: phrase resolution, durable storage and timed delivery."""

from .errors import (
    AlarmError,
    AlarmForbiddenError,
    AlarmLifecycleError,
    AlarmNotFoundError,
    PastTimeError,
    UnparseableTimeError,
)
from .manager import AlarmManager, RecoveryReport
from .parser import resolve_time
from .storage import (
    ALARM_KEY_PREFIX,
    AlarmRecord,
    AlarmStore,
    JsonFileAlarmStore,
    MemoryAlarmStore,
    RedisAlarmStore,
)
