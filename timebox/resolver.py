"""Turn free-text deadline specs ("2h", "in 30 minutes", "friday 5pm") into an
absolute end time.

Each step of the chain is a plain function ``(text, reference) -> Resolved | None``;
``resolve`` returns the first hit. ``reference`` must be timezone-aware.
"""

import logging
import re
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime, timedelta
from typing import Callable, NamedTuple, Optional

from dateutil import parser as dateparser
from dateutil.relativedelta import relativedelta

from .clock import elapsed_seconds
from .config import GRAMMAR_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class Resolved(NamedTuple):
    ends_at: datetime
    duration: int  # seconds


Step = Callable[[str, datetime], Optional[Resolved]]

SHORTHANDS = {
    "15min": 15 * 60,
    "30min": 30 * 60,
    "45min": 45 * 60,
    "1h": 60 * 60,
    "1hour": 60 * 60,
    "2h": 2 * 60 * 60,
    "2hours": 2 * 60 * 60,
    "3h": 3 * 60 * 60,
    "4h": 4 * 60 * 60,
    "1d": 24 * 60 * 60,
    "1day": 24 * 60 * 60,
}

_SECONDS = r"s|sec|secs|second|seconds"
_MINUTES = r"m|min|mins|minute|minutes"
_HOURS = r"h|hr|hrs|hour|hours"
_DAYS = r"d|day|days"

DURATION_RE = re.compile(
    rf"^(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>{_SECONDS}|{_MINUTES}|{_HOURS})$"
)

UNIT_NUMBER_RE = re.compile(rf"^\d+(?:\.\d+)?\s*(?:{_SECONDS}|{_MINUTES}|{_HOURS}|{_DAYS})$")

RELATIVE_PATTERNS: list[tuple[re.Pattern, int]] = [
    (re.compile(rf"\bin\s+(\d+)\s*(?:{_HOURS})\b"), 3600),
    (re.compile(rf"\bin\s+(\d+)\s*(?:{_MINUTES})\b"), 60),
    (re.compile(rf"\bin\s+(\d+)\s*(?:{_DAYS})\b"), 86400),
    (re.compile(rf"\b(\d+)\s*(?:{_HOURS})\s+from\s+now\b"), 3600),
    (re.compile(rf"\b(\d+)\s*(?:{_MINUTES})\s+from\s+now\b"), 60),
]

WEEKDAYS = {
    "monday": 0, "mon": 0,
    "tuesday": 1, "tue": 1, "tues": 1,
    "wednesday": 2, "wed": 2,
    "thursday": 3, "thu": 3, "thurs": 3,
    "friday": 4, "fri": 4,
    "saturday": 5, "sat": 5,
    "sunday": 6, "sun": 6,
}

_ANCHOR_RE = re.compile(
    r"^(?:(?:next|on|this)\s+)?(?P<anchor>today|tomorrow|"
    + "|".join(sorted(WEEKDAYS, key=len, reverse=True))
    + r")\b\s*(?:at\s+)?(?P<rest>.*)$"
)

_grammar_pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="deadline-grammar")


def _result(ends_at: datetime, reference: datetime) -> Resolved:
    return Resolved(ends_at, elapsed_seconds(reference, ends_at))


def _normalize(text: str) -> str:
    return " ".join(text.lower().split())


def from_shorthand(text: str, reference: datetime) -> Optional[Resolved]:
    seconds = SHORTHANDS.get(text.replace(" ", ""))
    if seconds is None:
        return None
    return _result(reference + timedelta(seconds=seconds), reference)


def from_duration(text: str, reference: datetime) -> Optional[Resolved]:
    match = DURATION_RE.match(text)
    if not match:
        return None
    value, unit = match.group("value"), match.group("unit")
    if re.fullmatch(_SECONDS, unit):
        if "." in value:
            return None
        multiplier = 1
    elif re.fullmatch(_MINUTES, unit):
        multiplier = 60
    else:
        multiplier = 3600
    return _result(reference + timedelta(seconds=float(value) * multiplier), reference)


def _parse_time_of_day(rest: str, day: datetime) -> Optional[datetime]:
    if not rest:
        return day.replace(hour=12)
    parsed = dateparser.parse(rest, default=day)
    if parsed.date() != day.date():
        # rest carried its own date, which contradicts the anchor
        return None
    return parsed


def _parse_absolute(text: str, reference: datetime) -> Optional[datetime]:
    text = text.replace("noon", "12:00")
    midnight = reference.replace(hour=0, minute=0, second=0, microsecond=0)

    anchored = _ANCHOR_RE.match(text)
    if anchored:
        anchor, rest = anchored.group("anchor"), anchored.group("rest").strip()
        if anchor == "today":
            return _parse_time_of_day(rest, midnight)
        if anchor == "tomorrow":
            return _parse_time_of_day(rest, midnight + timedelta(days=1))
        weekday = WEEKDAYS[anchor]
        day = midnight + relativedelta(weekday=weekday)
        candidate = _parse_time_of_day(rest, day)
        if candidate is not None and candidate <= reference:
            candidate += timedelta(days=7)
        return candidate

    first = dateparser.parse(text, default=midnight)
    second = dateparser.parse(text, default=midnight + timedelta(days=1))
    if first <= reference < second:
        # no date in the text, only a time or a weekday: take the next occurrence
        return second
    return first


def from_grammar(text: str, reference: datetime) -> Optional[Resolved]:
    # bare numbers are minutes, not days of the month; "1.5s" is not a clock time
    if text.isdigit() or UNIT_NUMBER_RE.match(text):
        return None
    future = _grammar_pool.submit(_parse_absolute, text, reference)
    try:
        ends_at = future.result(timeout=GRAMMAR_TIMEOUT_SECONDS)
    except FutureTimeout:
        logger.warning(f"Deadline grammar timed out for {text!r}")
        return None
    except (ValueError, OverflowError):
        return None
    if ends_at is None:
        return None
    if ends_at.tzinfo is None:
        ends_at = ends_at.replace(tzinfo=reference.tzinfo)
    if ends_at <= reference:
        return None
    return _result(ends_at, reference)


def from_relative(text: str, reference: datetime) -> Optional[Resolved]:
    for pattern, multiplier in RELATIVE_PATTERNS:
        match = pattern.search(text)
        if match:
            seconds = int(match.group(1)) * multiplier
            return _result(reference + timedelta(seconds=seconds), reference)
    return None


def from_bare_minutes(text: str, reference: datetime) -> Optional[Resolved]:
    if not text.isdigit():
        return None
    minutes = int(text)
    if not 1 <= minutes <= 1440:
        return None
    return _result(reference + timedelta(minutes=minutes), reference)


STEPS: list[Step] = [
    from_shorthand,
    from_duration,
    from_grammar,
    from_relative,
    from_bare_minutes,
]


def resolve(text: str, reference: datetime, steps: Optional[list[Step]] = None) -> Optional[Resolved]:
    normalized = _normalize(text)
    if not normalized:
        return None
    for step in steps or STEPS:
        try:
            resolved = step(normalized, reference)
        except OverflowError:
            logger.info(f"Deadline {text!r} is out of range for {step.__name__}")
            continue
        if resolved is not None:
            return resolved
    return None
