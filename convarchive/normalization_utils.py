"""
Leaf normalizers shared by every source format: speaker roles, timestamps,
platform names and JSON pointer lookups.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any, Mapping

import pendulum
from jsonpointer import JsonPointerException, resolve_pointer

from convarchive.logger import get_logger
from convarchive.models import ISO_UTC_MILLIS, UNKNOWN_PLATFORM, Role
logger = get_logger(__name__)

# ===| ROLES |===

DEFAULT_ROLE_TABLE: dict[str, Role] = {
    "user": Role.HUMAN,
    "human": Role.HUMAN,
    "assistant": Role.ASSISTANT,
    "system": Role.ASSISTANT,
    "ai": Role.ASSISTANT,
    "model": Role.ASSISTANT,
    "bot": Role.ASSISTANT,
    "chatgpt": Role.ASSISTANT,
    "claude": Role.ASSISTANT,
    "gemini": Role.ASSISTANT,
    "bard": Role.ASSISTANT,
}

class RoleNormalizer:
    """
    Maps heterogeneous speaker labels onto Role.

    Lookup is case-insensitive. Anything unrecognized (including None and
    non-string values) is treated as the human side; this never raises.
    """

    def __init__(self, role_mapping: Mapping[str, str] | None = None):
        self.table: dict[str, Role] = dict(DEFAULT_ROLE_TABLE)
        for label, role in (role_mapping or {}).items():
            # Role() rejects anything outside human/assistant
            self.table[str(label).strip().casefold()] = Role(str(role).strip().lower())

    def normalize(self, label: Any) -> Role:
        if not isinstance(label, str):
            return Role.HUMAN
        key = label.strip().casefold()
        role = self.table.get(key)
        if role is None:
            logger.debug(f"Unknown role label {label!r}, defaulting to {Role.HUMAN}")
            return Role.HUMAN
        return role

# ===| TIMESTAMPS |===

class TimeUnit(StrEnum):
    """Unit of the source field a timestamp was read from."""
    SECONDS = "seconds"
    MILLISECONDS = "milliseconds"
    ISO = "iso"

@dataclass(frozen=True)
class BatchClock:
    """Ingestion instant read once per batch and used for every missing timestamp."""
    now: pendulum.DateTime

    @classmethod
    def start(cls) -> "BatchClock":
        return cls(now=pendulum.now("UTC"))

class TimestampUtils:
    """
    Coerces epoch numbers, ISO strings and datetimes into UTC pendulum instants.

    The unit comes from the field that supplied the value: seconds-scale fields
    are multiplied by 1000, millisecond fields are used as-is. ISO fields that
    carry a bare number are read as milliseconds.
    """

    @staticmethod
    def _as_number(value: str) -> float | None:
        try:
            return float(value)
        except ValueError:
            return None

    @staticmethod
    def _from_epoch(number: float, unit: TimeUnit) -> pendulum.DateTime | None:
        if not math.isfinite(number):
            return None
        millis = number * 1000 if unit == TimeUnit.SECONDS else number
        try:
            return pendulum.from_timestamp(millis / 1000, tz="UTC")
        except (OverflowError, OSError, ValueError):
            return None

    @staticmethod
    def parse_instant(value: Any, unit: TimeUnit = TimeUnit.ISO) -> pendulum.DateTime | None:
        """Return a UTC instant, or None when the value is absent or unusable."""
        if value is None or isinstance(value, bool):
            return None

        if isinstance(value, (int, float)):
            return TimestampUtils._from_epoch(float(value), unit)

        if isinstance(value, datetime):
            # Naive datetimes are taken as UTC
            try:
                return pendulum.instance(value, tz="UTC").in_timezone("UTC")
            except (ValueError, OverflowError):
                return None

        if isinstance(value, str):
            s = value.strip()
            if not s:
                return None
            number = TimestampUtils._as_number(s)
            if number is not None:
                return TimestampUtils._from_epoch(number, unit)
            # Conversion can fail after a successful parse (e.g. a +99:00 offset)
            try:
                parsed = pendulum.parse(s, tz="UTC", strict=False)
                if isinstance(parsed, pendulum.DateTime):
                    return parsed.in_timezone("UTC")
                if isinstance(parsed, pendulum.Date):
                    return pendulum.datetime(parsed.year, parsed.month, parsed.day, tz="UTC")
            except (ValueError, OverflowError, TypeError):
                return None
            return None

        return None

    @staticmethod
    def to_instant(value: Any, unit: TimeUnit, clock: BatchClock) -> tuple[pendulum.DateTime, bool]:
        """Like parse_instant, but falls back to the batch clock. Second item is True when imputed."""
        instant = TimestampUtils.parse_instant(value, unit)
        if instant is None:
            return clock.now, True
        return instant, False

    @staticmethod
    def format_utc(instant: pendulum.DateTime) -> str:
        return instant.in_timezone("UTC").format(ISO_UTC_MILLIS)

# ===| PLATFORMS |===

PLATFORM_ALIASES = {
    "chatgpt": "ChatGPT",
    "openai": "ChatGPT",
    "claude": "Claude",
    "anthropic": "Claude",
    "gemini": "Gemini",
    "bard": "Gemini",
}

def canonical_platform(name: Any) -> str:
    """Canonical spelling for known platforms; other names are kept, blanks become Unknown."""
    if not isinstance(name, str) or not name.strip():
        return UNKNOWN_PLATFORM
    cleaned = name.strip()
    return PLATFORM_ALIASES.get(cleaned.casefold(), cleaned)

# ===| JSON POINTERS |===

class JSONPointer:
    """RFC 6901 lookups (wrapper around python-json-pointer)."""

    @staticmethod
    def resolve_safe(pointer: str, document: Any) -> Any:
        """Return None on any failure (missing member, bad pointer, wrong container)."""
        if not pointer:
            return document
        if not pointer.startswith("/"):
            return None
        try:
            return resolve_pointer(document, pointer, None)
        except (JsonPointerException, TypeError, LookupError):
            return None

    @staticmethod
    def first_present(pointers: list[str], document: Any) -> tuple[str | None, Any]:
        """Return (pointer, value) for the first pointer that resolves to a non-null value."""
        for pointer in pointers:
            value = JSONPointer.resolve_safe(pointer, document)
            if value is not None:
                return pointer, value
        return None, None
