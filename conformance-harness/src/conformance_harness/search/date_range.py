from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Tuple, Union

SEARCH_PREFIXES = ("eq", "ne", "gt", "lt", "ge", "le", "sa", "eb", "ap")

DEFAULT_PREFIX = "eq"

_DATETIME_RE = re.compile(
    r"^(?P<year>\d{4})"
    r"(?:-(?P<month>\d{2})"
    r"(?:-(?P<day>\d{2})"
    r"(?:T(?P<hour>\d{2}):(?P<minute>\d{2})"
    r"(?::(?P<second>\d{2})(?:\.(?P<fraction>\d+))?)?"
    r"(?P<tz>Z|[+-]\d{2}:\d{2})?"
    r")?)?)?$"
)

_MIN = datetime.min.replace(tzinfo=timezone.utc)
_MAX = datetime.max.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class DateRange:
    """Half-open `[start, end)` range; `None` means unbounded on that side.

    A fully specified instant is the zero width range `[t, t)`.
    """

    start: Optional[datetime]
    end: Optional[datetime]

    def to_dict(self) -> dict[str, Optional[str]]:
        return {
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
        }


TargetValue = Union[str, DateRange, Mapping[str, Any]]


def _next_month(value: datetime) -> datetime:
    if value.month == 12:
        return value.replace(year=value.year + 1, month=1)
    return value.replace(month=value.month + 1)


def _parse_tz(raw: Optional[str]) -> timezone:
    if not raw or raw == "Z":
        return timezone.utc
    sign = -1 if raw[0] == "-" else 1
    hours, minutes = raw[1:].split(":")
    return timezone(sign * timedelta(hours=int(hours), minutes=int(minutes)))


def parse_datetime(value: str) -> Tuple[datetime, str]:
    """Parse a date/dateTime string into (aware datetime, precision).

    Precision is one of `year`, `month`, `day`, `instant`. Values without a
    zone are read as UTC.
    """
    if not isinstance(value, str):
        raise ValueError(f"date value must be a string: {value!r}")
    m = _DATETIME_RE.match(value.strip())
    if m is None:
        raise ValueError(f"unparseable date value: {value!r}")

    year = int(m.group("year"))
    month = int(m.group("month") or 1)
    day = int(m.group("day") or 1)
    if m.group("hour") is None:
        parsed = datetime(year, month, day, tzinfo=timezone.utc)
        if m.group("month") is None:
            return parsed, "year"
        if m.group("day") is None:
            return parsed, "month"
        return parsed, "day"

    fraction = (m.group("fraction") or "0")[:6].ljust(6, "0")
    parsed = datetime(
        year,
        month,
        day,
        int(m.group("hour")),
        int(m.group("minute")),
        int(m.group("second") or 0),
        int(fraction),
        tzinfo=_parse_tz(m.group("tz")),
    )
    try:
        return parsed.astimezone(timezone.utc), "instant"
    except OverflowError:
        return (_MIN if year == 1 else _MAX), "instant"


def _precision_end(start: datetime, precision: str) -> datetime:
    """End of the precision unit starting at `start`, clamped at year 9999."""
    try:
        if precision == "year":
            return start.replace(year=start.year + 1)
        if precision == "month":
            return _next_month(start)
        if precision == "day":
            return start + timedelta(days=1)
    except (ValueError, OverflowError):
        return _MAX
    return start


def datetime_range(value: str) -> DateRange:
    start, precision = parse_datetime(value)
    return DateRange(start=start, end=_precision_end(start, precision))


def period_range(start: Optional[str], end: Optional[str]) -> DateRange:
    """Range of a period; the end bound takes the end value's precision."""
    range_start = parse_datetime(start)[0] if start else None
    range_end = None
    if end:
        end_start, precision = parse_datetime(end)
        range_end = _precision_end(end_start, precision)
    return DateRange(start=range_start, end=range_end)


def to_range(target: TargetValue) -> DateRange:
    if isinstance(target, DateRange):
        return target
    if isinstance(target, Mapping):
        return period_range(target.get("start"), target.get("end"))
    return datetime_range(target)


def parse_search_value(query: str) -> Tuple[str, str]:
    """Split a search value into (prefix, value); the prefix defaults to `eq`."""
    query = str(query).strip()
    prefix = query[:2]
    if prefix in SEARCH_PREFIXES and len(query) > 2:
        return prefix, query[2:]
    return DEFAULT_PREFIX, query


def _lo(value: Optional[datetime]) -> datetime:
    return _MIN if value is None else value


def _hi(value: Optional[datetime]) -> datetime:
    return _MAX if value is None else value


def compare_ranges(prefix: str, search: DateRange, target: DateRange) -> bool:
    """Decide whether `target` satisfies `search` under `prefix`.

    Missing search bounds read as -inf/+inf. Missing target bounds are
    checked explicitly per operator and never compared.
    """
    s_start = _lo(search.start)
    s_end = _hi(search.end)
    t_start = target.start
    t_end = target.end

    if prefix == "eq":
        return (
            t_start is not None
            and t_end is not None
            and s_start <= t_start
            and s_end >= t_end
        )
    if prefix == "ne":
        return t_start is None or t_end is None or s_start > t_start or s_end < t_end
    if prefix == "gt":
        return t_end is None or s_end < t_end
    if prefix == "lt":
        return t_start is None or s_start > t_start
    if prefix == "ge":
        return compare_ranges("gt", search, target) or compare_ranges("eq", search, target)
    if prefix == "le":
        return compare_ranges("lt", search, target) or compare_ranges("eq", search, target)
    if prefix == "sa":
        return t_start is not None and s_end < t_start
    if prefix == "eb":
        return t_end is not None and s_start > t_end
    if prefix == "ap":
        if t_start is None and t_end is None:
            return True
        if t_start is None:
            return s_start <= t_end
        if t_end is None:
            return s_end >= t_start
        return (t_start <= s_start <= t_end) or (t_start <= s_end <= t_end)
    raise ValueError(f"unsupported search prefix: {prefix!r}")


def compare_temporal_range(query: str, target: TargetValue) -> bool:
    prefix, value = parse_search_value(query)
    return compare_ranges(prefix, datetime_range(value), to_range(target))


def validate_date_search(search_value: str, target_value: str) -> bool:
    return compare_temporal_range(search_value, str(target_value))


def validate_period_search(search_value: str, period: Mapping[str, Any]) -> bool:
    return compare_temporal_range(search_value, dict(period))


def date_comparator_value(comparator: str, date: str) -> str:
    """Build a `gt`/`lt` style search value one day outside `date`."""
    start, _ = parse_datetime(date)
    if comparator in {"lt", "le"}:
        return comparator + (start + timedelta(days=1)).isoformat()
    if comparator in {"gt", "ge"}:
        return comparator + (start - timedelta(days=1)).isoformat()
    return ""
