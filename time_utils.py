from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Asia/Shanghai"


def resolve_timezone(name: Optional[str]) -> tzinfo:
    preferred = name or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(preferred)
    except Exception as exc:  # pragma: no cover - environment-dependent
        logger.warning("Failed to load timezone %s via zoneinfo (%s)", preferred, exc)
    # tzdata may be missing on minimal images
    if preferred.lower() in {"asia/shanghai", "shanghai", "cst", "prc"}:
        logger.warning("Falling back to fixed CST offset +08:00")
        return timezone(timedelta(hours=8), name="CST")
    local_tz = datetime.now().astimezone().tzinfo
    if local_tz:
        logger.warning("Using system local timezone instead: %s", getattr(local_tz, "key", local_tz))
        return local_tz
    logger.warning("System timezone unavailable, fallback to +08:00")
    return timezone(timedelta(hours=8), name="CST")


def now_in_tz(tz) -> datetime:
    if tz:
        return datetime.now(tz)
    return datetime.now().astimezone()


def ensure_tz(dt: datetime, tz) -> datetime:
    """Attach ``tz`` to naive datetimes, convert aware ones into it."""
    if tz is None:
        return dt if dt.tzinfo else dt.astimezone()
    if dt.tzinfo:
        return dt.astimezone(tz)
    return dt.replace(tzinfo=tz)


def format_tz_offset(tz) -> str:
    sample = now_in_tz(tz)
    offset = tz.utcoffset(sample) if hasattr(tz, "utcoffset") else None
    if offset is None:
        return ""
    total_minutes = int(offset.total_seconds() // 60)
    sign = "+" if total_minutes >= 0 else "-"
    hours, minutes = divmod(abs(total_minutes), 60)
    return f"{sign}{hours:02d}:{minutes:02d}"
