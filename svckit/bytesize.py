"""Byte sizes written as resource quantities, such as ``100``, ``1Ki`` or ``1M``.

A quantity is a decimal number followed by an optional suffix: a binary
suffix (``Ki``, ``Mi``, ``Gi``, ``Ti``, ``Pi``, ``Ei``), a decimal SI suffix
(``n``, ``u``, ``m``, ``k``, ``M``, ``G``, ``T``, ``P``, ``E``) or a decimal
exponent (``e3``, ``E-6``). The suffix style chosen when parsing is kept and
used when the quantity is written back in canonical form.
"""

from __future__ import annotations

import math
import re
from enum import Enum
from fractions import Fraction

_FORMAT_ERROR = (
    "quantities must match the regular expression "
    "'^([+-]?[0-9.]+)([eEinumkKMGTP]*[-+]?[0-9]*)$'"
)
_SUFFIX_ERROR = "unable to parse quantity's suffix"

_BINARY_SUFFIXES = ("Ki", "Mi", "Gi", "Ti", "Pi", "Ei")
_BINARY_POWERS = {suffix: power for power, suffix in enumerate(_BINARY_SUFFIXES, start=1)}
_DECIMAL_EXPONENTS = {
    "n": -9,
    "u": -6,
    "m": -3,
    "": 0,
    "k": 3,
    "M": 6,
    "G": 9,
    "T": 12,
    "P": 15,
    "E": 18,
}
_DECIMAL_SUFFIXES = {exponent: suffix for suffix, exponent in _DECIMAL_EXPONENTS.items()}

_NUMBER = re.compile(r"([+-]?)(\d*)(?:\.(\d*))?")
_EXPONENT = re.compile(r"[eE]([+-]?\d+)")

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_NANO = 10**9


class _Format(Enum):
    BINARY_SI = "BinarySI"
    DECIMAL_SI = "DecimalSI"
    DECIMAL_EXPONENT = "DecimalExponent"


def _round_to_nano(value: Fraction) -> Fraction:
    """Round away from zero to a whole number of nano units."""
    scaled = value * _NANO
    if scaled.denominator == 1:
        return value
    magnitude = math.ceil(abs(scaled))
    return Fraction(magnitude if scaled > 0 else -magnitude, _NANO)


class ByteSize:
    """A quantity measured in bytes."""

    def __init__(self, value: int = 0) -> None:
        self._value = Fraction(int(value))
        self._format = _Format.BINARY_SI

    def parse(self, text: str) -> "ByteSize":
        """Set this size from a quantity string and return it; raise ValueError if invalid."""
        match = _NUMBER.match(text)
        sign, whole, frac = match.group(1), match.group(2), match.group(3) or ""
        if not whole and not frac:
            raise ValueError(_FORMAT_ERROR)

        value = Fraction(int(whole or "0"))
        if frac:
            value += Fraction(int(frac), 10 ** len(frac))

        suffix = text[match.end():]
        if suffix in _BINARY_POWERS:
            value *= 1024 ** _BINARY_POWERS[suffix]
            fmt = _Format.BINARY_SI
        elif suffix in _DECIMAL_EXPONENTS:
            value *= Fraction(10) ** _DECIMAL_EXPONENTS[suffix]
            fmt = _Format.DECIMAL_SI
        else:
            exponent = _EXPONENT.fullmatch(suffix)
            if exponent is None:
                raise ValueError(_SUFFIX_ERROR)
            value *= Fraction(10) ** int(exponent.group(1))
            fmt = _Format.DECIMAL_EXPONENT

        if sign == "-":
            value = -value
        self._value = _round_to_nano(value)
        self._format = fmt
        return self

    def get_bytes(self) -> int:
        """Return the number of bytes; raise ValueError if not a whole 64-bit number."""
        if self._value == 0:
            return 0
        if self._value.denominator != 1 or not _INT64_MIN <= self._value <= _INT64_MAX:
            raise ValueError(f"cannot get bytes from resource quantity value '{self}'")
        return int(self._value)

    def __str__(self) -> str:
        value = self._value
        if value == 0:
            return "0"

        fmt = self._format
        if fmt is _Format.BINARY_SI:
            if -1024 < value < 1024 or value.denominator != 1:
                # Small or fractional values read better in decimal form.
                fmt = _Format.DECIMAL_SI
            else:
                number = int(value)
                power = 0
                while power < len(_BINARY_SUFFIXES) and number % 1024 == 0:
                    number //= 1024
                    power += 1
                suffix = _BINARY_SUFFIXES[power - 1] if power else ""
                return f"{number}{suffix}"

        exponent = 18
        mantissa = value / Fraction(10) ** exponent
        while mantissa.denominator != 1 and exponent > -9:
            exponent -= 3
            mantissa = value / Fraction(10) ** exponent

        if fmt is _Format.DECIMAL_EXPONENT:
            suffix = f"e{exponent}" if exponent else ""
        else:
            suffix = _DECIMAL_SUFFIXES[exponent]
        return f"{int(mantissa)}{suffix}"

    def __repr__(self) -> str:
        return f"ByteSize({str(self)!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ByteSize):
            return NotImplemented
        return self._value == other._value

    def __hash__(self) -> int:
        return hash(self._value)


def parse_quantity(text: str) -> ByteSize:
    """Parse a quantity string into a ByteSize; raise ValueError if invalid."""
    return ByteSize().parse(text)