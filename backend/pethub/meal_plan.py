"""Meal plan codec for smart feeders.

A meal plan is a list of scheduled feedings. On the wire each entry is a
5-byte record ``(day bitmask, hour, minute, portion, status)`` and the whole
list travels as base64 text on the feeder's meal plan field.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, List

from .errors import DecodingError, EncodingError

logger = logging.getLogger(__name__)

DAYS_OF_WEEK = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)

STATUS_ENABLED = "Enabled"
STATUS_DISABLED = "Disabled"

RECORD_SIZE = 5
MAX_ENTRIES = 10
# The wire format accepts up to 12 portions, while the feeder request path
# only allows 1-10. The two bounds are kept apart on purpose.
CODEC_MAX_PORTION = 12
REQUEST_MIN_PORTION = 1
REQUEST_MAX_PORTION = 10

# Zero padded so a validated entry decodes back unchanged.
_TIME_RE = re.compile(r"^([01][0-9]|2[0-3]):[0-5][0-9]$")


@dataclass
class MealPlanEntry:
    days_of_week: List[str] = field(default_factory=list)
    time: str = "08:00"
    portion: int = 1
    status: str = STATUS_ENABLED

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, entry: Dict[str, object]) -> "MealPlanEntry":
        return cls(
            days_of_week=list(entry.get("days_of_week") or []),
            time=str(entry.get("time", "")),
            portion=entry.get("portion", 0),
            status=str(entry.get("status", "")),
        )


def days_to_bits(days: Iterable[str]) -> int:
    bits = 0
    for day in days:
        if day in DAYS_OF_WEEK:
            bits |= 1 << DAYS_OF_WEEK.index(day)
    return bits


def bits_to_days(bits: int) -> List[str]:
    return [day for index, day in enumerate(DAYS_OF_WEEK) if bits & (1 << index)]


def _parse_time(value: str) -> tuple:
    try:
        hour_text, minute_text = value.split(":")
        return int(hour_text), int(minute_text)
    except (AttributeError, ValueError) as exc:
        raise EncodingError(f"Invalid time: {value!r}") from exc


def encode(entries: Iterable[MealPlanEntry]) -> str:
    """Pack meal plan entries into the feeder's base64 representation."""
    entries = list(entries)
    if len(entries) > MAX_ENTRIES:
        logger.warning(
            "Meal plan has %d entries; feeders accept at most %d", len(entries), MAX_ENTRIES
        )

    payload = bytearray()
    for meal in entries:
        hour, minute = _parse_time(meal.time)
        if not 0 <= hour <= 23 or not 0 <= minute <= 59:
            raise EncodingError(f"Invalid time: {meal.time}")
        if not isinstance(meal.portion, int) or not 0 <= meal.portion <= CODEC_MAX_PORTION:
            raise EncodingError(f"Invalid portion: {meal.portion}")
        status_byte = 1 if meal.status == STATUS_ENABLED else 0
        payload.extend((days_to_bits(meal.days_of_week), hour, minute, meal.portion, status_byte))

    return base64.b64encode(bytes(payload)).decode("ascii")


def decode(encoded: str) -> List[MealPlanEntry]:
    """Unpack a base64 meal plan.

    A trailing partial record is dropped rather than rejected; some feeders
    report slightly truncated payloads.
    """
    try:
        raw = base64.b64decode(encoded.strip(), validate=True)
    except (AttributeError, binascii.Error, ValueError) as exc:
        raise DecodingError(f"Impossible to decode the meal plan: {exc}") from exc

    entries: List[MealPlanEntry] = []
    usable = len(raw) - len(raw) % RECORD_SIZE
    if usable != len(raw):
        logger.debug("Dropping %d trailing meal plan bytes", len(raw) - usable)
    for offset in range(0, usable, RECORD_SIZE):
        days_bits, hour, minute, portion, status_byte = raw[offset : offset + RECORD_SIZE]
        entries.append(
            MealPlanEntry(
                days_of_week=bits_to_days(days_bits),
                time=f"{hour:02d}:{minute:02d}",
                portion=portion,
                status=STATUS_ENABLED if status_byte == 1 else STATUS_DISABLED,
            )
        )
    return entries


def validate(
    entry: MealPlanEntry,
    *,
    min_portion: int = REQUEST_MIN_PORTION,
    max_portion: int = REQUEST_MAX_PORTION,
) -> bool:
    """Check a caller supplied entry before it is encoded and sent."""
    days = entry.days_of_week
    if not isinstance(days, (list, tuple)) or not days:
        return False
    # Unique and in week order, matching what decode produces.
    if list(days) != [day for day in DAYS_OF_WEEK if day in days]:
        return False
    if not isinstance(entry.time, str) or not _TIME_RE.match(entry.time):
        return False
    if isinstance(entry.portion, bool) or not isinstance(entry.portion, int):
        return False
    if not min_portion <= entry.portion <= max_portion:
        return False
    return entry.status in (STATUS_ENABLED, STATUS_DISABLED)


def format_plan(entries: Iterable[MealPlanEntry]) -> str:
    """Render one line per entry, in the order given."""
    lines = []
    for index, meal in enumerate(entries, start=1):
        days = ", ".join(meal.days_of_week)
        lines.append(f"{index}. {days} at {meal.time} - {meal.portion} serving(s) - {meal.status}")
    return "\n".join(lines)
