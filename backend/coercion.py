# coercion.py — Typed parsing of requirement values
# Entry values and target values are stored as strings; this module turns
# them into a small closed set of typed values the evaluator can compare.

import math
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Union

from exceptions import UnsupportedDataTypeError, ValidationError

DATA_TYPES = ("bool", "int", "float", "duration", "string")

_TRUE_LITERALS = {"1", "t", "T", "true", "TRUE", "True"}
_FALSE_LITERALS = {"0", "f", "F", "false", "FALSE", "False"}

_INT_RE = re.compile(r"[+-]?[0-9]+")
_FLOAT_RE = re.compile(r"[+-]?([0-9]+\.?[0-9]*|\.[0-9]+)([eE][+-]?[0-9]+)?")
_DURATION_PART_RE = re.compile(r"([0-9]+\.?[0-9]*|\.[0-9]+)(ns|us|µs|ms|s|m|h)")

# Signed 64-bit bounds: integers and nanosecond durations beyond them are rejected
INT_MIN, INT_MAX = -(2 ** 63), 2 ** 63 - 1
MAX_DURATION_SECONDS = INT_MAX / 1e9

_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


# ============================================================
# TYPED VALUES
# ============================================================

@dataclass(frozen=True)
class BoolValue:
    value: bool


@dataclass(frozen=True)
class IntValue:
    value: int


@dataclass(frozen=True)
class FloatValue:
    value: float


@dataclass(frozen=True)
class DurationValue:
    value: timedelta


@dataclass(frozen=True)
class TextValue:
    value: str


TypedValue = Union[BoolValue, IntValue, FloatValue, DurationValue, TextValue]


# ============================================================
# PARSERS
# ============================================================

def normalize_duration(raw: str) -> str:
    """Rewrite ``H:MM:SS`` / ``MM:SS`` into duration-literal form.

    ``"1:30:20"`` becomes ``"1h30m20s"`` and ``"30:20"`` becomes ``"30m20s"``.
    Anything else is returned unchanged.
    """
    if ":" in raw:
        parts = raw.split(":")
        if len(parts) == 3:
            return f"{parts[0]}h{parts[1]}m{parts[2]}s"
        if len(parts) == 2:
            return f"{parts[0]}m{parts[1]}s"
    return raw


def parse_duration(raw: str) -> timedelta:
    """Parse a duration literal such as ``1h30m``, ``90s`` or ``-1.5h``."""
    text = normalize_duration(raw)
    sign = 1
    if text[:1] in ("+", "-"):
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise ValueError(f"invalid duration {raw!r}")

    total = 0.0
    pos = 0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration {raw!r}")
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ValueError(f"invalid duration {raw!r}")
    if total > MAX_DURATION_SECONDS:
        raise ValueError(f"duration out of range {raw!r}")
    return timedelta(seconds=sign * total)


def _parse_bool(raw: str) -> bool:
    if raw in _TRUE_LITERALS:
        return True
    if raw in _FALSE_LITERALS:
        return False
    raise ValueError(f"invalid boolean {raw!r}")


def parse_value(raw: str, data_type: str) -> TypedValue:
    """Parse ``raw`` as ``data_type``.

    Raises ValidationError when the string does not fit the type and
    UnsupportedDataTypeError when the type itself is unknown.
    """
    if data_type not in DATA_TYPES:
        raise UnsupportedDataTypeError(f"unknown data type: {data_type}", data_type=data_type)
    if raw is None:
        raise ValidationError(f"expected {data_type} value, got nothing", data_type=data_type)

    if data_type == "string":
        return TextValue(raw)

    try:
        if data_type == "int":
            if not _INT_RE.fullmatch(raw):
                raise ValueError(raw)
            number = int(raw)
            if not INT_MIN <= number <= INT_MAX:
                raise ValueError(f"integer out of range {raw!r}")
            return IntValue(number)
        if data_type == "float":
            if not _FLOAT_RE.fullmatch(raw):
                raise ValueError(raw)
            number = float(raw)
            if math.isinf(number):
                raise ValueError(f"float out of range {raw!r}")
            return FloatValue(number)
        if data_type == "bool":
            return BoolValue(_parse_bool(raw))
        return DurationValue(parse_duration(raw))
    except (ValueError, OverflowError):
        raise ValidationError(
            f"expected {data_type} value, got {raw}",
            data_type=data_type,
            value=raw,
        ) from None


def validate(raw: str, data_type: str) -> None:
    """Check that ``raw`` parses as ``data_type`` without keeping the result."""
    parse_value(raw, data_type)


def format_bool(value: bool) -> str:
    return "true" if value else "false"
