"""Search-parameter helpers shared by sequences.

Pure functions only: temporal range comparison and JSON element path walking.
"""

from conformance_harness.search.date_range import (
    SEARCH_PREFIXES,
    DateRange,
    compare_ranges,
    compare_temporal_range,
    date_comparator_value,
    datetime_range,
    parse_datetime,
    parse_search_value,
    period_range,
    validate_date_search,
    validate_period_search,
)
from conformance_harness.search.paths import (
    can_resolve_path,
    get_value_for_search_param,
    resolve_element_from_path,
)

__all__ = [
    "SEARCH_PREFIXES",
    "DateRange",
    "can_resolve_path",
    "compare_ranges",
    "compare_temporal_range",
    "date_comparator_value",
    "datetime_range",
    "get_value_for_search_param",
    "parse_datetime",
    "parse_search_value",
    "period_range",
    "resolve_element_from_path",
    "validate_date_search",
    "validate_period_search",
]
