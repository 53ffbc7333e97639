"""Duration string parsing.

Accepted forms (case-insensitive):
    ``300``        -- bare integer, seconds
    ``PT1H30M``    -- ISO 8601 duration
    ``P1DT2H``     -- ISO 8601 with a date part
    ``1h30m``      -- unprefixed time components (``PT`` is implied)
"""

from __future__ import annotations

import re

from kubeconverge.errors import DurationParseError

_ISO8601 = re.compile(
    r"^P"
    r"(?:(?P<years>\d+)Y)?"
    r"(?:(?P<months>\d+)M)?"
    r"(?:(?P<weeks>\d+)W)?"
    r"(?:(?P<days>\d+)D)?"
    r"(?:T"
    r"(?:(?P<hours>\d+)H)?"
    r"(?:(?P<minutes>\d+)M)?"
    r"(?:(?P<seconds>\d+(?:\.\d+)?)S)?"
    r")?$"
)

_UNIT_SECONDS: dict[str, float] = {
    "years": 365 * 86_400,
    "months": 30 * 86_400,
    "weeks": 7 * 86_400,
    "days": 86_400,
    "hours": 3_600,
    "minutes": 60,
    "seconds": 1,
}


def _parse_iso(value: str) -> float | None:
    match = _ISO8601.match(value)
    if match is None or value in ("P", "PT") or value.endswith("T"):
        return None
    parts = match.groupdict()
    if all(v is None for v in parts.values()):
        return None
    return sum(float(v) * _UNIT_SECONDS[k] for k, v in parts.items() if v is not None)


def parse_duration(value: str | int | float) -> int:
    """Parse *value* into a whole number of seconds.

    Raises:
        DurationParseError: if *value* is blank or not a recognised duration.
    """
    if isinstance(value, bool):
        raise DurationParseError(f"Invalid duration: {value!r}")
    if isinstance(value, int | float):
        return int(value)

    text = str(value).strip().upper()
    if not text:
        raise DurationParseError("Cannot parse blank value")
    if text.isdigit():
        return int(text)

    seconds = _parse_iso(text)
    if seconds is None and not text.startswith("P"):
        seconds = _parse_iso("PT" + text)
    if seconds is None:
        raise DurationParseError(f"Invalid ISO 8601 duration: {value!r}")
    return int(seconds)
