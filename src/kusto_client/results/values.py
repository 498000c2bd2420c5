"""Tick-precise datetime and timespan values plus CSL literal formatting.

Kusto carries datetimes and timespans with 100ns precision, which is finer
than :class:`datetime.datetime` and :class:`datetime.timedelta` can hold.
:class:`KustoDateTime` and :class:`Timespan` keep the full value as integer
nanoseconds and convert to the standard library types on request.
"""

from __future__ import annotations

import json
import math
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Final

from kusto_client.errors import KustoParseError

NANOS_PER_TICK: Final = 100
NANOS_PER_MICROSECOND: Final = 1_000
NANOS_PER_SECOND: Final = 1_000_000_000
NANOS_PER_MINUTE: Final = 60 * NANOS_PER_SECOND
NANOS_PER_HOUR: Final = 60 * NANOS_PER_MINUTE
NANOS_PER_DAY: Final = 24 * NANOS_PER_HOUR

_EPOCH: Final = datetime(1970, 1, 1, tzinfo=timezone.utc)
_INT32_MIN: Final = -(2**31)
_INT32_MAX: Final = 2**31 - 1

_TIMESPAN_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^(?P<sign>-)?(?:(?P<days>\d+)\.)?"
    r"(?P<hours>\d{1,2}):(?P<minutes>\d{1,2})"
    r"(?::(?P<seconds>\d{1,2})(?:\.(?P<fraction>\d{1,9})\d*)?)?$"
)

_DATETIME_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^(?P<year>\d{4})-(?P<month>\d{1,2})-(?P<day>\d{1,2})"
    r"(?:[T ](?P<hour>\d{1,2}):(?P<minute>\d{1,2})"
    r"(?::(?P<second>\d{1,2})(?:\.(?P<fraction>\d{1,9})\d*)?)?)?"
    r"(?P<offset>Z|[+-]\d{2}:?\d{2})?$",
    flags=re.IGNORECASE,
)

_CSL_TYPED_LITERAL: Final[re.Pattern[str]] = re.compile(r"^\s*(\w+)\s*\(\s*(.*\S)\s*\)\s*$", re.DOTALL)


def _fraction_to_nanos(fraction: str | None) -> int:
    if not fraction:
        return 0
    return int(fraction[:9].ljust(9, "0"))


def _nanos_from_timedelta(value: timedelta) -> int:
    return (
        (value.days * 86_400 + value.seconds) * NANOS_PER_SECOND
        + value.microseconds * NANOS_PER_MICROSECOND
    )


@dataclass(frozen=True, slots=True, order=True)
class Timespan:
    """A signed duration with nanosecond storage."""

    nanoseconds: int

    @classmethod
    def from_timedelta(cls, value: timedelta) -> "Timespan":
        return cls(_nanos_from_timedelta(value))

    @classmethod
    def from_ticks(cls, ticks: int) -> "Timespan":
        return cls(ticks * NANOS_PER_TICK)

    @property
    def ticks(self) -> int:
        ticks = abs(self.nanoseconds) // NANOS_PER_TICK
        return -ticks if self.nanoseconds < 0 else ticks

    def total_seconds(self) -> float:
        return self.nanoseconds / NANOS_PER_SECOND

    def to_timedelta(self) -> timedelta:
        """Convert to :class:`timedelta`, truncating below one microsecond."""
        micros = abs(self.nanoseconds) // NANOS_PER_MICROSECOND
        return timedelta(microseconds=-micros if self.nanoseconds < 0 else micros)

    def __str__(self) -> str:
        return format_timespan(self)


@dataclass(frozen=True, slots=True, order=True)
class KustoDateTime:
    """A UTC instant stored as nanoseconds since the Unix epoch."""

    epoch_nanoseconds: int

    @classmethod
    def from_datetime(cls, value: datetime) -> "KustoDateTime":
        """Build from a datetime; naive values are taken to be UTC."""
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return cls(_nanos_from_timedelta(value - _EPOCH))

    @property
    def nanosecond(self) -> int:
        """Sub-microsecond remainder that :meth:`to_datetime` cannot carry."""
        return self.epoch_nanoseconds % NANOS_PER_MICROSECOND

    def to_datetime(self) -> datetime:
        return _EPOCH + timedelta(
            microseconds=self.epoch_nanoseconds // NANOS_PER_MICROSECOND
        )

    def to_naive(self) -> datetime:
        """Naive UTC datetime, the shape expected by SQL timestamp columns."""
        return self.to_datetime().replace(tzinfo=None)

    def isoformat(self) -> str:
        value = self.to_datetime()
        ticks = (self.epoch_nanoseconds % NANOS_PER_SECOND) // NANOS_PER_TICK
        return (
            f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
            f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
            f".{ticks:07d}Z"
        )

    def __str__(self) -> str:
        return self.isoformat()


def parse_timespan(text: str) -> Timespan:
    """Parse ``[-][d.]HH:mm[:ss[.fffffff]]`` into a :class:`Timespan`.

    A two-part value is read as hours and minutes.
    """

    match = _TIMESPAN_PATTERN.match(text.strip()) if isinstance(text, str) else None
    if match is None:
        raise KustoParseError(f"Failed to parse timespan. Value: '{text}'")

    hours = int(match["hours"])
    minutes = int(match["minutes"])
    seconds = int(match["seconds"] or 0)
    if hours > 23 or minutes > 59 or seconds > 59:
        raise KustoParseError(f"Timespan component out of range. Value: '{text}'")

    nanos = (
        int(match["days"] or 0) * NANOS_PER_DAY
        + hours * NANOS_PER_HOUR
        + minutes * NANOS_PER_MINUTE
        + seconds * NANOS_PER_SECOND
        + _fraction_to_nanos(match["fraction"])
    )
    return Timespan(-nanos if match["sign"] else nanos)


def format_timespan(value: Timespan | timedelta) -> str:
    """Format as ``[-][d.]HH:mm:ss.fffffff``; days appear only when nonzero."""

    if isinstance(value, timedelta):
        value = Timespan.from_timedelta(value)
    sign = "-" if value.nanoseconds < 0 else ""
    days, remainder = divmod(abs(value.nanoseconds), NANOS_PER_DAY)
    hours, remainder = divmod(remainder, NANOS_PER_HOUR)
    minutes, remainder = divmod(remainder, NANOS_PER_MINUTE)
    seconds, nanos = divmod(remainder, NANOS_PER_SECOND)
    text = f"{hours:02d}:{minutes:02d}:{seconds:02d}.{nanos // NANOS_PER_TICK:07d}"
    if days:
        text = f"{days}.{text}"
    return sign + text


def parse_datetime(text: str) -> KustoDateTime:
    """Parse an ISO-8601 style timestamp, keeping up to 9 fractional digits."""

    match = _DATETIME_PATTERN.match(text.strip()) if isinstance(text, str) else None
    if match is None:
        raise KustoParseError(f"Failed to parse datetime. Value: '{text}'")

    try:
        value = datetime(
            int(match["year"]),
            int(match["month"]),
            int(match["day"]),
            int(match["hour"] or 0),
            int(match["minute"] or 0),
            int(match["second"] or 0),
            tzinfo=timezone.utc,
        )
    except ValueError as exc:
        raise KustoParseError(f"Invalid datetime '{text}': {exc}") from exc

    offset = match["offset"]
    if offset and offset.upper() != "Z":
        digits = offset[1:].replace(":", "")
        delta = timedelta(hours=int(digits[:2]), minutes=int(digits[2:]))
        value = value - delta if offset[0] == "+" else value + delta

    nanos = _nanos_from_timedelta(value - _EPOCH) + _fraction_to_nanos(match["fraction"])
    return KustoDateTime(nanos)


def format_datetime(value: KustoDateTime | datetime) -> str:
    if isinstance(value, datetime):
        value = KustoDateTime.from_datetime(value)
    return value.isoformat()


def parse_guid(text: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(text))
    except ValueError as exc:
        raise KustoParseError(f"Invalid guid value '{text}'") from exc


def _format_real(value: float) -> str:
    if math.isnan(value):
        return "nan"
    if math.isinf(value):
        return "+inf" if value > 0 else "-inf"
    return repr(value)


def to_csl_literal(value: Any) -> str:
    """Render a Python value as a typed CSL literal such as ``time(01:00:00.0000000)``.

    Strings are returned unchanged.
    """

    match value:
        case None:
            raise ValueError("Cannot infer a CSL literal type for None")
        case bool():
            return f"bool({'true' if value else 'false'})"
        case int():
            kind = "int" if _INT32_MIN <= value <= _INT32_MAX else "long"
            return f"{kind}({value})"
        case float():
            return f"real({_format_real(value)})"
        case Decimal():
            return f"decimal({value})"
        case KustoDateTime() | datetime():
            return f"datetime({format_datetime(value)})"
        case Timespan() | timedelta():
            return f"time({format_timespan(value)})"
        case uuid.UUID():
            return f"guid({value})"
        case dict() | list():
            return f"dynamic({json.dumps(value, separators=(',', ':'))})"
        case str():
            return value
        case _:
            raise ValueError(f"Unsupported CSL literal type: {type(value).__name__}")


def strip_csl_type(literal: str, csl_type: str) -> str:
    """Return the inner value of ``type(value)``, or the input when untyped."""

    match = _CSL_TYPED_LITERAL.match(literal)
    if match is None or match.group(1).lower() != csl_type.lower():
        return literal
    return match.group(2)


__all__ = [
    "KustoDateTime",
    "Timespan",
    "format_datetime",
    "format_timespan",
    "parse_datetime",
    "parse_guid",
    "parse_timespan",
    "strip_csl_type",
    "to_csl_literal",
]
