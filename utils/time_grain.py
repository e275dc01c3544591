"""
Time Grain Conversion

Converts between the three ways a sampling interval shows up in stored
dashboard queries:

- (count, unit) pairs from the old editor: ("5", "minute")
- shorthand intervals used by interval pickers: "5m", "1h", "1d"
- ISO-8601 durations, the canonical stored form: "PT5M", "P1D"

Also picks the closest allowed grain for "auto" time grains.
"""

import logging
import re
from typing import Iterable, List, Optional, Sequence, Union

logger = logging.getLogger(__name__)

AUTO = "auto"

# Used when a query carries no allowed grains
DEFAULT_TIME_GRAIN_LADDER = ["1m", "5m", "15m", "30m", "1h", "6h", "12h", "1d"]

TIME_UNITS = {
    "second": ("PT", "S"),
    "minute": ("PT", "M"),
    "hour": ("PT", "H"),
    "day": ("P", "D"),
    "week": ("P", "W"),
}

UNIT_MS = {
    "ms": 1,
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "w": 7 * 24 * 60 * 60 * 1000,
}

COUNT_PATTERN = re.compile(r'^\d+$')
SHORTHAND_PATTERN = re.compile(r'^(\d+)(ms|s|m|h|d|w)$')
ISO8601_PATTERN = re.compile(
    r'^P(?:(?P<years>\d+(?:\.\d+)?)Y)?'
    r'(?:(?P<months>\d+(?:\.\d+)?)M)?'
    r'(?:(?P<weeks>\d+(?:\.\d+)?)W)?'
    r'(?:(?P<days>\d+(?:\.\d+)?)D)?'
    r'(?:T(?:(?P<hours>\d+(?:\.\d+)?)H)?'
    r'(?:(?P<minutes>\d+(?:\.\d+)?)M)?'
    r'(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$',
    re.IGNORECASE
)

# ISO component -> shorthand suffix (also the UNIT_MS key)
ISO_COMPONENT_SUFFIX = {
    "weeks": "w",
    "days": "d",
    "hours": "h",
    "minutes": "m",
    "seconds": "s",
}

SUFFIX_UNITS = {
    "s": "second",
    "m": "minute",
    "h": "hour",
    "d": "day",
    "w": "week",
}


class TimeGrainError(Exception):
    """Base error for time grain conversion"""
    pass


class InvalidDurationInput(TimeGrainError):
    """Count/unit (or interval) cannot be parsed into a duration"""
    pass


class UnsupportedDuration(TimeGrainError):
    """ISO duration cannot be rendered as a single-unit shorthand"""
    pass


def to_iso8601(count: Union[str, int], unit: str) -> str:
    """
    Build an ISO-8601 duration from a legacy count + unit pair.

    Args:
        count: Positive integer, as int or digit string (e.g. "5")
        unit: One of second, minute, hour, day, week

    Returns:
        ISO-8601 duration, e.g. ("5", "minute") -> "PT5M"

    Raises:
        InvalidDurationInput: If count is not a positive integer or unit is unknown
    """
    if isinstance(count, bool):
        raise InvalidDurationInput(f"Invalid time grain count: {count!r}")

    count_str = str(count).strip() if count is not None else ""
    if not COUNT_PATTERN.match(count_str) or int(count_str) <= 0:
        raise InvalidDurationInput(f"Invalid time grain count: {count!r}")

    unit_key = unit.strip().lower() if isinstance(unit, str) else unit
    if unit_key not in TIME_UNITS:
        raise InvalidDurationInput(f"Unsupported time grain unit: {unit!r}")

    prefix, designator = TIME_UNITS[unit_key]
    return f"{prefix}{int(count_str)}{designator}"


def _parse_iso8601(value: str) -> Optional[dict]:
    if not isinstance(value, str):
        return None
    text = value.strip()
    match = ISO8601_PATTERN.match(text)
    # "PT" alone or a dangling "T" is not a duration
    if not match or text.upper().endswith("T"):
        return None
    components = {name: amount for name, amount in match.groupdict().items() if amount is not None}
    return components or None


def is_iso8601_duration(value) -> bool:
    """True if value parses as an ISO-8601 duration"""
    return isinstance(value, str) and _parse_iso8601(value) is not None


def to_shorthand(iso: str) -> str:
    """
    Render an ISO-8601 duration as a shorthand interval ("PT5M" -> "5m").

    "auto" passes through unchanged.

    Raises:
        UnsupportedDuration: For mixed units (PT1H30M), zero or fractional
            amounts, years/months, or strings that are not ISO durations
    """
    if iso == AUTO:
        return AUTO

    components = _parse_iso8601(iso)
    if components is None:
        raise UnsupportedDuration(f"Not an ISO-8601 duration: {iso!r}")

    if "years" in components or "months" in components:
        raise UnsupportedDuration(f"Calendar units are not supported: {iso!r}")

    if len(components) != 1:
        raise UnsupportedDuration(f"Mixed-unit durations are not supported: {iso!r}")

    name, amount = next(iter(components.items()))
    if not COUNT_PATTERN.match(amount) or int(amount) == 0:
        raise UnsupportedDuration(f"Duration must be a positive whole number: {iso!r}")

    return f"{int(amount)}{ISO_COMPONENT_SUFFIX[name]}"


def display_time_grain(value: str) -> str:
    """Shorthand for display, or the value unchanged if it has none"""
    try:
        return to_shorthand(value)
    except UnsupportedDuration:
        return value


def interval_to_ms(value: str) -> int:
    """
    Convert a shorthand interval ("5m") or ISO duration ("PT5M", "PT1H30M") to milliseconds.

    Raises:
        InvalidDurationInput: If the value is neither, has calendar units, or is zero
    """
    if not isinstance(value, str):
        raise InvalidDurationInput(f"Invalid interval: {value!r}")

    text = value.strip()
    match = SHORTHAND_PATTERN.match(text)
    if match:
        return int(match.group(1)) * UNIT_MS[match.group(2)]

    if text == AUTO:
        raise InvalidDurationInput("'auto' has no fixed length")

    components = _parse_iso8601(text)
    if components is None:
        raise InvalidDurationInput(f"Invalid interval: {value!r}")
    if "years" in components or "months" in components:
        raise InvalidDurationInput(f"Calendar units have no fixed length: {value!r}")

    total = round(sum(
        float(amount) * UNIT_MS[ISO_COMPONENT_SUFFIX[name]]
        for name, amount in components.items()
    ))
    if total <= 0:
        raise InvalidDurationInput(f"Interval must be positive: {value!r}")
    return total


def time_grain_unit(iso: str) -> str:
    """
    Unit name of a single-unit ISO grain ("PT5M" -> "minute").

    Raises:
        UnsupportedDuration: If the grain has no single-unit shorthand
    """
    shorthand = to_shorthand(iso)
    if shorthand == AUTO:
        raise UnsupportedDuration("'auto' has no unit")
    return SUFFIX_UNITS[shorthand.lstrip("0123456789")]


def ms_to_shorthand(ms: int) -> str:
    """Largest whole unit for a millisecond value (300000 -> "5m")"""
    if isinstance(ms, bool) or not isinstance(ms, int) or ms <= 0:
        raise InvalidDurationInput(f"Invalid millisecond value: {ms!r}")

    for suffix in ("w", "d", "h", "m", "s"):
        if ms % UNIT_MS[suffix] == 0:
            return f"{ms // UNIT_MS[suffix]}{suffix}"
    return f"{ms}ms"


def closest(target: str, candidates: Sequence[str]) -> str:
    """
    Pick the allowed grain closest to target.

    Returns the smallest candidate >= target. When every candidate is smaller,
    saturates to the largest one. Ties on equal length keep the first
    occurrence. "auto" candidates are ignored, and an empty candidate list
    falls back to DEFAULT_TIME_GRAIN_LADDER.

    Args:
        target: Shorthand or ISO interval
        candidates: Shorthand or ISO intervals, in any order

    Returns:
        The chosen candidate, exactly as given
    """
    usable = [c for c in (candidates or []) if c != AUTO]
    if not usable:
        usable = list(DEFAULT_TIME_GRAIN_LADDER)

    target_ms = interval_to_ms(target)
    measured = [(interval_to_ms(c), c) for c in usable]

    best = None
    for value_ms, candidate in measured:
        if value_ms >= target_ms and (best is None or value_ms < best[0]):
            best = (value_ms, candidate)
    if best is not None:
        return best[1]

    largest = measured[0]
    for value_ms, candidate in measured[1:]:
        if value_ms > largest[0]:
            largest = (value_ms, candidate)
    return largest[1]


def to_milliseconds(descriptor: dict) -> int:
    """Milliseconds for a legacy {text, value} grain descriptor"""
    if not isinstance(descriptor, dict):
        raise InvalidDurationInput(f"Invalid time grain descriptor: {descriptor!r}")
    return interval_to_ms(descriptor.get("value"))


def time_grains_to_ms(descriptors: Iterable[dict]) -> List[int]:
    """
    Project legacy grain descriptors onto a sorted, de-duplicated list of ms.

    "auto" entries are skipped; unparseable entries are logged and skipped.
    """
    allowed = set()
    for descriptor in descriptors or []:
        if isinstance(descriptor, dict) and descriptor.get("value") == AUTO:
            continue
        try:
            allowed.add(to_milliseconds(descriptor))
        except InvalidDurationInput as e:
            logger.warning(f"Skipping time grain descriptor {descriptor!r}: {e}")
    return sorted(allowed)


def resolve_auto_time_grain(
    time_grain: str,
    allowed_ms: Optional[Iterable[int]] = None,
    target: str = "1m"
) -> str:
    """
    Interval to use for an "auto" time grain.

    Returns "" when the grain is not "auto".
    """
    if time_grain != AUTO:
        return ""
    candidates = [ms_to_shorthand(ms) for ms in (allowed_ms or [])]
    return closest(target, candidates)
