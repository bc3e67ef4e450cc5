"""Strict parsers for the scalar values of a form."""

from __future__ import annotations

import math
import re
from datetime import timedelta
from fractions import Fraction

_TRUE = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE = frozenset({"0", "f", "F", "FALSE", "false", "False"})

_INT_MIN = -(1 << 63)
_INT_MAX = (1 << 63) - 1

_INT_RE = re.compile(r"[+-]?[0-9]+")
_DECIMAL_RE = re.compile(r"[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")
_HEX_RE = re.compile(
    r"[+-]?0[xX](?:[0-9a-fA-F]+(?:\.[0-9a-fA-F]*)?|\.[0-9a-fA-F]+)[pP][+-]?[0-9]+"
)
_SPECIAL_RE = re.compile(r"[+-]?(?:inf|infinity)|nan", re.IGNORECASE)

_DURATION_UNITS = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_DURATION_SEGMENT_RE = re.compile(r"([0-9]*)(?:\.([0-9]*))?([^0-9.]*)")


def parse_bool(value: str) -> bool:
    """Parse 1, t, T, TRUE, true, True, 0, f, F, FALSE, false or False."""
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f'parsing "{value}": invalid syntax')


def parse_int(value: str) -> int:
    """Parse a signed decimal integer that fits in 64 bits."""
    if not _INT_RE.fullmatch(value):
        raise ValueError(f'parsing "{value}": invalid syntax')
    number = int(value)
    if not _INT_MIN <= number <= _INT_MAX:
        raise ValueError(f'parsing "{value}": value out of range')
    return number


def parse_float(value: str) -> float:
    """Parse a decimal or hexadecimal float, or inf, infinity and nan."""
    if _SPECIAL_RE.fullmatch(value):
        return float(value)
    try:
        if _DECIMAL_RE.fullmatch(value):
            number = float(value)
        elif _HEX_RE.fullmatch(value):
            number = float.fromhex(value)
        else:
            raise ValueError(f'parsing "{value}": invalid syntax')
    except OverflowError:
        number = math.inf
    if math.isinf(number):
        raise ValueError(f'parsing "{value}": value out of range')
    return number


def parse_duration(value: str) -> timedelta:
    """Parse a duration such as "300ms", "-1.5h" or "2h45m".

    Valid units are ns, us (or µs), ms, s, m and h. A bare "0" is allowed.
    """
    text = value
    negative = False
    if text and text[0] in "+-":
        negative = text[0] == "-"
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise ValueError(f'invalid duration "{value}"')

    nanos = 0
    position = 0
    while position < len(text):
        match = _DURATION_SEGMENT_RE.match(text, position)
        whole, fraction, unit = match.groups()
        if not whole and not fraction:
            raise ValueError(f'invalid duration "{value}"')
        if not unit:
            raise ValueError(f'missing unit in duration "{value}"')
        if unit not in _DURATION_UNITS:
            raise ValueError(f'unknown unit "{unit}" in duration "{value}"')
        amount = Fraction(int(whole or "0"))
        if fraction:
            amount += Fraction(int(fraction), 10 ** len(fraction))
        nanos += int(amount * _DURATION_UNITS[unit])
        if nanos > _INT_MAX:
            raise ValueError(f'invalid duration "{value}"')
        position = match.end()

    duration = timedelta(microseconds=nanos // 1_000)
    return -duration if negative else duration