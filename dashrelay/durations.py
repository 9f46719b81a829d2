"""Parse ``H:M:S`` / ``M:S`` / ``S`` time offsets used by ``--seek``."""

from __future__ import annotations

import re

_WHOLE_RE = re.compile(r"\d+", re.ASCII)
_SECONDS_RE = re.compile(r"\d+(?:\.\d*)?|\.\d+", re.ASCII)


class DurationParseError(ValueError):
    """Raised when a time offset does not match the supported grammar."""


def _parse_whole(value: str, text: str) -> int:
    if not _WHOLE_RE.fullmatch(value):
        raise DurationParseError(f"couldn't convert {text!r} to seconds")
    return int(value)


def _parse_seconds(value: str, text: str) -> float:
    if not _SECONDS_RE.fullmatch(value):
        raise DurationParseError(f"couldn't convert {text!r} to seconds")
    return float(value)


def parse_duration(text: str) -> float:
    """Return the total number of seconds described by ``text``.

    The last component may be fractional; hours and minutes must be
    non-negative integers written with ASCII digits.
    """
    parts = text.split(":")
    if len(parts) > 3:
        raise DurationParseError(f"couldn't convert {text!r} to seconds")

    seconds = _parse_seconds(parts[-1], text)
    multipliers = (60, 3600)
    for multiplier, part in zip(multipliers, reversed(parts[:-1])):
        seconds += _parse_whole(part, text) * multiplier
    return seconds


def format_seconds(seconds: float) -> str:
    """Format seconds for ffmpeg without trailing zeros (``90.0`` -> ``"90"``)."""
    text = f"{seconds:.3f}".rstrip("0").rstrip(".")
    return text or "0"
