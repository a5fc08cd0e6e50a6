"""
Parsing and comparison of the timestamps shown in marketplace chats.

The chat UI renders times in many relative and localized forms
("Mon 2:11 PM", "Ayer 10:05", "15/01/2024, 14:30", "5 minutes ago", ...).
Everything is converted to epoch seconds so anchors can be matched by time
when message ids and content are no longer reliable.

Numeric values are taken as epoch seconds, or epoch milliseconds when they
are too large to be seconds. ISO-8601 strings are accepted as well.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence, Union

from dateutil import parser

LOGGER = logging.getLogger(__name__)

Timestamp = Union[str, int, float, None]

TIMESTAMP_MATCH_TOLERANCE_SECONDS = 15 * 60
EQUIVALENCE_TOLERANCE_SECONDS = 60

DAY_MAPPING = {
    'sun': 6, 'mon': 0, 'tue': 1, 'wed': 2, 'thu': 3, 'fri': 4, 'sat': 5,
    'dom': 6, 'lun': 0, 'mar': 1, 'mié': 2, 'mie': 2, 'jue': 3, 'vie': 4, 'sáb': 5, 'sab': 5,
}

MONTH_MAPPING = {
    'jan': 1, 'feb': 2, 'mar': 3, 'apr': 4, 'may': 5, 'jun': 6,
    'jul': 7, 'aug': 8, 'sep': 9, 'oct': 10, 'nov': 11, 'dec': 12,
}

DAY_TIME_PATTERN = re.compile(r"(\w{3})\s+(\d{1,2}):(\d{2})\s*(AM|PM)?", re.IGNORECASE)
DATE_TIME_PATTERN = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{2,4}),?\s*(\d{1,2}):(\d{2})(?:\s*(AM|PM))?", re.IGNORECASE)
YESTERDAY_PATTERN = re.compile(r"(Yesterday|Ayer)(?:\s+at)?\s+(\d{1,2}):(\d{2})(?:\s*(AM|PM))?", re.IGNORECASE)
TODAY_PATTERN = re.compile(r"(Today|Hoy)(?:\s+at)?\s+(\d{1,2}):(\d{2})(?:\s*(AM|PM))?", re.IGNORECASE)
TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})(?:\s*(AM|PM))?$", re.IGNORECASE)
RELATIVE_PATTERN = re.compile(r"(\d+)\s+(minutes?|hours?|mins?|hrs?|minutos?|horas?)\s+ago", re.IGNORECASE)
MONTH_PATTERN = re.compile(
    r"(Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)\s+(\d{1,2})(?:,?\s+(\d{4}))?"
    r"(?:,?\s+(\d{1,2}):(\d{2})(?:\s*(AM|PM))?)?",
    re.IGNORECASE,
)


def _to_24h(hours: int, meridiem: Optional[str]) -> int:
    meridiem = (meridiem or '').lower()
    if meridiem == 'pm' and hours < 12:
        return hours + 12
    if meridiem == 'am' and hours == 12:
        return 0
    return hours


def to_epoch_seconds(value: Timestamp, now: Optional[datetime] = None) -> Optional[float]:
    """
    Converts a chat timestamp to epoch seconds.

    Args:
        value: the raw timestamp from the scraper.
        now: reference point for relative formats, defaults to the local current time.

    Returns:
        Epoch seconds, or None if the value cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # anything past year ~33658 in seconds is really milliseconds
        return value / 1000.0 if value > 1e12 else float(value)
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    now = now or datetime.now()

    try:
        return parser.isoparse(text).timestamp()
    except (ValueError, OverflowError):
        pass

    try:
        match = DAY_TIME_PATTERN.search(text)
        if match and match.group(1).lower() in DAY_MAPPING:
            weekday = DAY_MAPPING[match.group(1).lower()]
            hours = _to_24h(int(match.group(2)), match.group(4))
            date = now.replace(hour=hours, minute=int(match.group(3)), second=0, microsecond=0)
            day_diff = weekday - date.weekday()
            # a weekday later than today belongs to last week
            if day_diff > 0:
                day_diff -= 7
            return (date + timedelta(days=day_diff)).timestamp()
        return _parse_alternate_formats(text, now)
    except ValueError as e:
        LOGGER.debug(f"Error converting timestamp '{value}': {e}")
        return None


def _parse_alternate_formats(text: str, now: datetime) -> Optional[float]:
    match = DATE_TIME_PATTERN.search(text)
    if match:
        day, month, year = int(match.group(1)), int(match.group(2)), int(match.group(3))
        if year < 100:
            year += 2000 if year < 50 else 1900
        hours = int(match.group(4))
        meridiem = (match.group(6) or '').lower()
        if meridiem == 'pm' and hours < 12:
            hours += 12
        if meridiem == 'am' and hours == 12:
            hours = 0
        return datetime(year, month, day, hours, int(match.group(5))).timestamp()

    for pattern, offset_days in ((YESTERDAY_PATTERN, 1), (TODAY_PATTERN, 0)):
        match = pattern.search(text)
        if match:
            hours = _to_24h(int(match.group(2)), match.group(4))
            date = now.replace(hour=hours, minute=int(match.group(3)), second=0, microsecond=0)
            return (date - timedelta(days=offset_days)).timestamp()

    match = TIME_PATTERN.match(text)
    if match:
        hours = _to_24h(int(match.group(1)), match.group(3))
        return now.replace(hour=hours, minute=int(match.group(2)), second=0, microsecond=0).timestamp()

    match = RELATIVE_PATTERN.search(text)
    if match:
        amount = int(match.group(1))
        unit = match.group(2).lower()
        if unit.startswith(('hour', 'hr', 'hora')):
            return (now - timedelta(hours=amount)).timestamp()
        return (now - timedelta(minutes=amount)).timestamp()

    match = MONTH_PATTERN.search(text)
    if match:
        month = MONTH_MAPPING[match.group(1).lower()]
        day = int(match.group(2))
        year = int(match.group(3)) if match.group(3) else now.year
        if match.group(4) and match.group(5):
            hours = _to_24h(int(match.group(4)), match.group(6))
            return datetime(year, month, day, hours, int(match.group(5))).timestamp()
        return datetime(year, month, day).timestamp()

    LOGGER.debug(f"Could not parse timestamp format: {text}")
    return None


def are_timestamps_equivalent(first: Timestamp, second: Timestamp,
                              tolerance_seconds: float = EQUIVALENCE_TOLERANCE_SECONDS,
                              now: Optional[datetime] = None) -> bool:
    if not first or not second:
        return False
    if first == second:
        return True
    first_seconds = to_epoch_seconds(first, now)
    second_seconds = to_epoch_seconds(second, now)
    if first_seconds is None or second_seconds is None:
        return False
    return abs(first_seconds - second_seconds) <= tolerance_seconds


def is_timestamp_newer(candidate: Timestamp, reference: Timestamp, now: Optional[datetime] = None) -> bool:
    if not candidate or not reference:
        return False
    candidate_seconds = to_epoch_seconds(candidate, now)
    reference_seconds = to_epoch_seconds(reference, now)
    if candidate_seconds is None or reference_seconds is None:
        return False
    return candidate_seconds > reference_seconds


def find_message_by_timestamp(messages: Sequence[Any], position: Any,
                              tolerance_seconds: float = TIMESTAMP_MATCH_TOLERANCE_SECONDS,
                              now: Optional[datetime] = None) -> int:
    """
    Finds the message closest in time to a stored anchor.

    Messages need ``id``, ``text`` and ``timestamp`` attributes; the anchor
    needs ``message_id``, ``content`` and ``timestamp``. An exact id and
    content match wins; otherwise the nearest message within the tolerance.

    Returns:
        The message index, or -1 when nothing is close enough.
    """
    if not messages or position is None or not getattr(position, 'timestamp', None):
        return -1

    message_id = getattr(position, 'message_id', None)
    content = getattr(position, 'content', None)
    if message_id and content:
        for index, message in enumerate(messages):
            if message.id == message_id and message.text == content:
                return index

    reference = to_epoch_seconds(position.timestamp, now)
    if reference is None:
        return -1

    closest_index = -1
    closest_distance = None
    for index, message in enumerate(messages):
        seconds = to_epoch_seconds(message.timestamp, now)
        if seconds is None:
            continue
        distance = abs(seconds - reference)
        if closest_distance is None or distance < closest_distance:
            closest_index, closest_distance = index, distance

    if closest_index == -1 or closest_distance > tolerance_seconds:
        return -1
    return closest_index
