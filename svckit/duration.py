"""Durations: parsing, formatting, JSON and ISO-8601 representations.

Durations are parsed and formatted in the ``1h2m3.5s`` style. Python
timedeltas hold microseconds, so finer parts of a parsed duration are
truncated.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import timedelta
from fractions import Fraction
from typing import Union

_UNITS = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_COMPONENT = re.compile(r"(\d*)(?:\.(\d*))?([^\d.]*)")
_MAX_NS = 2**63 - 1
_SECOND = 1_000_000_000


def _timedelta_to_ns(value: timedelta) -> int:
    return ((value.days * 86400 + value.seconds) * 1_000_000 + value.microseconds) * 1000


def _ns_to_timedelta(ns: int) -> timedelta:
    magnitude = timedelta(microseconds=abs(ns) // 1000)
    return -magnitude if ns < 0 else magnitude


def _parse_ns(text: str) -> int:
    original = text
    invalid = ValueError(f'time: invalid duration "{original}"')
    if not text:
        raise invalid

    negative = False
    if text[0] in "+-":
        negative = text[0] == "-"
        text = text[1:]
    if text == "0":
        return 0
    if not text:
        raise invalid

    total = Fraction(0)
    while text:
        match = _COMPONENT.match(text)
        whole, frac, unit = match.group(1), match.group(2) or "", match.group(3)
        if not whole and not frac:
            raise invalid
        if not unit:
            raise ValueError(f'time: missing unit in duration "{original}"')
        if unit not in _UNITS:
            raise ValueError(f'time: unknown unit "{unit}" in duration "{original}"')
        amount = Fraction(int(whole or "0"))
        if frac:
            amount += Fraction(int(frac), 10 ** len(frac))
        total += amount * _UNITS[unit]
        if total > _MAX_NS:
            raise invalid
        text = text[match.end():]

    ns = int(total)
    return -ns if negative else ns


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``300ms``, ``-1.5h`` or ``2h45m``; raise ValueError if invalid."""
    return _ns_to_timedelta(_parse_ns(text))


def _with_fraction(value: int, precision: int) -> str:
    whole, frac = divmod(value, 10**precision)
    digits = f"{frac:0{precision}d}".rstrip("0")
    return f"{whole}.{digits}" if digits else str(whole)


def _format_ns(ns: int) -> str:
    if ns == 0:
        return "0s"
    magnitude = abs(ns)
    if magnitude < _SECOND:
        if magnitude < 1_000:
            text = f"{magnitude}ns"
        elif magnitude < 1_000_000:
            text = _with_fraction(magnitude, 3) + "\u00b5s"
        else:
            text = _with_fraction(magnitude, 6) + "ms"
    else:
        seconds, frac = divmod(magnitude, _SECOND)
        text = _with_fraction((seconds % 60) * _SECOND + frac, 9) + "s"
        if seconds >= 60:
            text = f"{(seconds // 60) % 60}m" + text
        if seconds >= 3600:
            text = f"{seconds // 3600}h" + text
    return "-" + text if ns < 0 else text


def format_duration(seconds: Union[timedelta, float]) -> str:
    """Format a timedelta or a number of seconds in the ``1h2m3.5s`` style."""
    if isinstance(seconds, timedelta):
        ns = _timedelta_to_ns(seconds)
    else:
        ns = round(seconds * _SECOND)
    return _format_ns(ns)


@dataclass
class Duration:
    """A duration that reads and writes JSON and renders as ISO-8601."""

    value: timedelta = timedelta(0)

    def __str__(self) -> str:
        return format_duration(self.value)

    def to_json(self) -> str:
        """Return the duration as a JSON string such as ``"1h30m0s"``."""
        return json.dumps(str(self), ensure_ascii=False)

    def from_json(self, data: Union[str, bytes]) -> "Duration":
        """Set the duration from JSON and return self.

        A JSON number counts nanoseconds; a JSON string is parsed as a
        duration. Anything else raises ValueError.
        """
        decoded = json.loads(data)
        if isinstance(decoded, bool) or not isinstance(decoded, (int, float, str)):
            raise ValueError("invalid duration")
        if isinstance(decoded, str):
            self.value = parse_duration(decoded)
        else:
            self.value = _ns_to_timedelta(int(decoded))
        return self

    def to_iso_string(self) -> str:
        """Return the duration as an ISO-8601 duration, truncated to whole seconds.

        Days are assumed to be 24 hours long.
        """
        ns = _timedelta_to_ns(self.value)
        seconds = abs(ns) // _SECOND
        if ns < 0:
            seconds = -seconds
        if seconds == 0:
            return "P0D"

        result = "P"
        if seconds >= 86400:
            result += f"{seconds // 86400}D"
            seconds %= 86400
        if seconds == 0:
            return result
        result += "T"
        if seconds >= 3600:
            result += f"{seconds // 3600}H"
            seconds %= 3600
        if seconds >= 60:
            result += f"{seconds // 60}M"
            seconds %= 60
        if seconds > 0:
            result += f"{seconds}S"
        return result