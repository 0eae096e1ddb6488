"""Parsing of duration strings and RFC 3339 timestamps used in resource specs."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

__all__ = ["parse_duration", "parse_rfc3339"]

NANOSECOND = 1
MICROSECOND = 1_000 * NANOSECOND
MILLISECOND = 1_000 * MICROSECOND
SECOND = 1_000 * MILLISECOND
MINUTE = 60 * SECOND
HOUR = 60 * MINUTE

_UNITS = {
    "ns": NANOSECOND,
    "us": MICROSECOND,
    "\u00b5s": MICROSECOND,  # micro sign
    "\u03bcs": MICROSECOND,  # Greek small letter mu
    "ms": MILLISECOND,
    "s": SECOND,
    "m": MINUTE,
    "h": HOUR,
}

_MAX_DURATION = (1 << 63) - 1

_COMPONENT = re.compile(r"(\d*)(?:\.(\d*))?([^\d.]*)")

_RFC3339 = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})"
)


def parse_duration(text: str) -> int:
    """Parse a duration such as ``"1h30m"`` or ``"-1.5s"`` into nanoseconds.

    A duration is an optionally signed sequence of decimal numbers, each with an
    optional fraction and a unit suffix (``ns``, ``us``, ``µs``, ``ms``, ``s``,
    ``m``, ``h``). The bare string ``"0"`` needs no unit.
    Raises ``ValueError`` on malformed input or overflow.
    """
    rest = text
    negative = False
    if rest and rest[0] in "+-":
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return 0
    if not rest:
        raise ValueError(f"invalid duration {text!r}")

    total = 0
    pos = 0
    while pos < len(rest):
        match = _COMPONENT.match(rest, pos)
        whole, fraction, unit_name = match.groups()
        if not whole and not fraction:
            raise ValueError(f"invalid duration {text!r}")
        if not unit_name:
            raise ValueError(f"missing unit in duration {text!r}")
        unit = _UNITS.get(unit_name)
        if unit is None:
            raise ValueError(f"unknown unit {unit_name!r} in duration {text!r}")
        value = int(whole or "0") * unit
        if fraction:
            value += int(fraction) * unit // 10 ** len(fraction)
        total += value
        if total > _MAX_DURATION + 1:
            raise ValueError(f"invalid duration {text!r}")
        pos = match.end()

    limit = _MAX_DURATION + 1 if negative else _MAX_DURATION
    if total > limit:
        raise ValueError(f"invalid duration {text!r}")
    return -total if negative else total


def parse_rfc3339(text: str) -> datetime:
    """Parse an RFC 3339 timestamp into a timezone-aware ``datetime``.

    Fractional seconds are accepted and truncated to microseconds.
    Raises ``ValueError`` when the text is not a valid timestamp.
    """
    match = _RFC3339.fullmatch(text)
    if match is None:
        raise ValueError(f"invalid RFC 3339 timestamp {text!r}")
    year, month, day, hour, minute, second, fraction, zone = match.groups()

    if zone == "Z":
        tz = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        zone_hours, zone_minutes = int(zone[1:3]), int(zone[4:6])
        if zone_hours >= 24 or zone_minutes >= 60:
            raise ValueError(f"invalid time zone offset in {text!r}")
        tz = timezone(sign * timedelta(hours=zone_hours, minutes=zone_minutes))

    microsecond = int((fraction or "").ljust(6, "0")[:6])
    return datetime(
        int(year),
        int(month),
        int(day),
        int(hour),
        int(minute),
        int(second),
        microsecond,
        tzinfo=tz,
    )