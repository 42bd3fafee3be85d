"""TimeSpan parsing

Durations arrive from the pipeline as .NET-style TimeSpan strings
("00:05:00", "1.02:00:00", "00:00:00.05") or as plain seconds ("600", "30s").
"""

import re
from typing import Union

_TIMESPAN_PATTERN = re.compile(
    r"^(?:(?P<days>\d+)\.)?(?P<hours>\d+):(?P<minutes>\d{1,2}):(?P<seconds>\d{1,2}(?:\.\d+)?)$"
)
_SECONDS_PATTERN = re.compile(r"^(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>ms|s|m|h)?$")

_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_timespan(value: Union[str, int, float]) -> float:
    """Convert a TimeSpan string or number to seconds

    Raises:
        ValueError: If the value is not a recognised duration
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")

    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must be non-negative: {value}")
        return float(value)

    text = str(value).strip()

    match = _TIMESPAN_PATTERN.match(text)
    if match:
        minutes = int(match.group("minutes"))
        seconds = float(match.group("seconds"))
        if minutes >= 60 or seconds >= 60:
            raise ValueError(f"Invalid TimeSpan: {value!r}")
        return (
            int(match.group("days") or 0) * 86400
            + int(match.group("hours")) * 3600
            + minutes * 60
            + seconds
        )

    match = _SECONDS_PATTERN.match(text)
    if match:
        return float(match.group("value")) * _UNIT_SECONDS[match.group("unit") or "s"]

    raise ValueError(f"Invalid duration: {value!r}")


def format_timespan(seconds: float) -> str:
    """Render seconds as an HH:MM:SS TimeSpan string"""
    millis = int(round(seconds * 1000))
    whole, fraction = divmod(millis, 1000)
    hours, remainder = divmod(whole, 3600)
    minutes, secs = divmod(remainder, 60)
    text = f"{hours:02d}:{minutes:02d}:{secs:02d}"
    if fraction:
        text += f".{fraction:03d}".rstrip("0")
    return text
