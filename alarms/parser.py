from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from typing import Callable, Optional, Tuple

from time_utils import ensure_tz

from .errors import UnparseableTimeError

# Farthest day reachable by keyword; anything beyond needs an explicit date.
RELATIVE_DAY_LIMIT = 2

DEFAULT_HOUR = 8
DEFAULT_MINUTE = 0

# Longest first: "一个半小时" contains "半小时".
RELATIVE_SYNONYMS = (
    ("一个半小时", "90分钟"),
    ("an hour and a half", "90 minutes"),
    ("hour and a half", "90 minutes"),
    ("半小时", "30分钟"),
    ("half an hour", "30 minutes"),
    ("一刻钟", "15分钟"),
    ("quarter of an hour", "15 minutes"),
    ("a quarter hour", "15 minutes"),
    ("quarter hour", "15 minutes"),
)

DAY_KEYWORDS = (
    ("后天", 2),
    ("day after tomorrow", 2),
    ("明天", 1),
    ("tomorrow", 1),
    ("今天", 0),
    ("today", 0),
)

_SHORTHANDS = (
    ("今晚", "今天晚上"),
    ("明晚", "明天晚上"),
    ("后晚", "后天晚上"),
    ("今早", "今天早上"),
    ("明早", "明天早上"),
    ("后早", "后天早上"),
    ("号", "日"),
    ("：", ":"),
    ("点", ":"),
)

_MINUTES_FROM_NOW_RE = re.compile(r"(\d+)\s*(?:分钟后|min(?:ute)?s?\s+from\s+now)")
_WORD_HYPHEN_RE = re.compile(r"(?<=[a-z])-(?=[a-z])")
_HOURS_FROM_NOW_RE = re.compile(r"(\d+)\s*(?:小时后|h(?:ou)?rs?\s+from\s+now)")
_TONIGHT_RE = re.compile(r"\btonight\b")
_NIGHT_RE = re.compile(r"\bnight\b")
_OCLOCK_RE = re.compile(r"\s*o['’]?clock")
_NUMERIC_DATE_RE = re.compile(r"(\d{4})[-/](\d{1,2})[-/](\d{1,2})")
_CALENDAR_DATE_RE = re.compile(r"(?:(\d{4})\s*年)?\s*(?:(\d{1,2})\s*月)?\s*(\d{1,2})\s*日")
_NOON_RE = re.compile(r"\bnoon\b")
_HALF_RE = re.compile(r"\bhalf\b")
_CJK_PERIOD_RE = re.compile(r"凌晨|早上|上午|下午|晚上")
_EN_PERIOD_RE = re.compile(r"(?<![a-z])(morning|dawn|afternoon|evening|[ap]\.?m\.?)(?![a-z])")
_CJK_PM_MARKERS = ("下午", "晚上")
_EN_PM_MARKERS = ("afternoon", "evening")
_HOUR_MINUTE_RE = re.compile(r"(\d{1,2})\s*:\s*(\d{1,2})")
_HOUR_RE = re.compile(r"(\d{1,2})")

DateRule = Callable[[str, date], Optional[Tuple[date, str]]]


def match_relative_duration(text: str) -> Optional[timedelta]:
    expanded = text
    for phrase, replacement in RELATIVE_SYNONYMS:
        expanded = expanded.replace(phrase, replacement)

    minute_match = _MINUTES_FROM_NOW_RE.search(expanded)
    if minute_match:
        return timedelta(minutes=int(minute_match.group(1)))
    hour_match = _HOURS_FROM_NOW_RE.search(expanded)
    if hour_match:
        return timedelta(hours=int(hour_match.group(1)))
    return None


def normalize_phrase(text: str) -> str:
    """Collapse shorthand day/period words so the day keyword stays visible."""
    normalized = _WORD_HYPHEN_RE.sub(" ", text)
    for short, full in _SHORTHANDS:
        normalized = normalized.replace(short, full)
    normalized = _TONIGHT_RE.sub("today evening", normalized)
    normalized = _NIGHT_RE.sub("evening", normalized)
    normalized = _OCLOCK_RE.sub(":", normalized)
    return normalized


def match_day_keyword(text: str, today: date) -> Optional[Tuple[date, str]]:
    for keyword, offset in DAY_KEYWORDS:
        if keyword in text:
            return today + timedelta(days=offset), text.replace(keyword, "", 1).strip()
    return None


def match_numeric_date(text: str, today: date) -> Optional[Tuple[date, str]]:
    match = _NUMERIC_DATE_RE.search(text)
    if not match:
        return None
    year, month, day = (int(part) for part in match.groups())
    return _make_date(text, year, month, day), _cut(text, match)


def match_calendar_date(text: str, today: date) -> Optional[Tuple[date, str]]:
    match = _CALENDAR_DATE_RE.search(text)
    if not match:
        return None
    year_raw, month_raw, day_raw = match.groups()
    year = int(year_raw) if year_raw else today.year
    month = int(month_raw) if month_raw else today.month
    return _make_date(text, year, month, int(day_raw)), _cut(text, match)


DATE_RULES: Tuple[DateRule, ...] = (match_day_keyword, match_numeric_date, match_calendar_date)


def match_time_of_day(text: str) -> Tuple[int, int]:
    remaining = text.replace("中午", "12:00")
    remaining = _NOON_RE.sub("12:00", remaining)
    remaining = remaining.replace("半", "30")
    remaining = _HALF_RE.sub("30", remaining)

    is_pm = any(marker in remaining for marker in _CJK_PM_MARKERS)
    for period in _EN_PERIOD_RE.finditer(remaining):
        word = period.group(1)
        if word in _EN_PM_MARKERS or word.startswith("p"):
            is_pm = True
    remaining = _CJK_PERIOD_RE.sub("", remaining)
    remaining = _EN_PERIOD_RE.sub("", remaining).strip()

    hour_minute = _HOUR_MINUTE_RE.search(remaining)
    if hour_minute:
        hour, minute = int(hour_minute.group(1)), int(hour_minute.group(2))
    else:
        hour_only = _HOUR_RE.search(remaining)
        if hour_only:
            hour, minute = int(hour_only.group(1)), 0
        else:
            hour, minute = DEFAULT_HOUR, DEFAULT_MINUTE

    # noon and 24-hour values are already afternoon
    if is_pm and 1 <= hour < 12:
        hour += 12
    return hour, minute


def resolve_time(phrase: str, now: datetime, tzinfo=None) -> datetime:
    """Resolve a free-form time phrase into an absolute, zone-aware datetime.

    Relative durations ("10分钟后", "half an hour from now") win outright.
    Otherwise a date is picked by the first matching rule in ``DATE_RULES``
    (falling back to today) and combined with the time of day found in the
    rest of the phrase. Past results are returned as-is; rejecting them is
    the caller's decision.

    Raises:
        UnparseableTimeError: empty phrase, impossible date or time.
    """
    now = ensure_tz(now, tzinfo)
    tz = now.tzinfo
    text = (phrase or "").strip().lower()
    if not text:
        raise UnparseableTimeError(phrase or "", "empty phrase")

    try:
        duration = match_relative_duration(text)
        if duration is not None:
            return now + duration
    except OverflowError as exc:
        raise UnparseableTimeError(phrase, "duration out of range") from exc

    text = normalize_phrase(text)
    today = now.date()
    target_date, remaining = today, text
    for rule in DATE_RULES:
        matched = rule(text, today)
        if matched:
            target_date, remaining = matched
            break

    hour, minute = match_time_of_day(remaining)
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise UnparseableTimeError(phrase, f"invalid time {hour:02d}:{minute:02d}")
    return datetime(target_date.year, target_date.month, target_date.day, hour, minute, tzinfo=tz)


def _make_date(text: str, year: int, month: int, day: int) -> date:
    try:
        return date(year, month, day)
    except ValueError as exc:
        raise UnparseableTimeError(text, f"invalid date {year}-{month}-{day}") from exc


def _cut(text: str, match: re.Match) -> str:
    return (text[: match.start()] + text[match.end():]).strip()
