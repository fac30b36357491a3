from conformance_harness.reporting.aggregate import (
    NOT_RUN,
    aggregate,
    final_result,
    group_results,
    latest_results,
    latest_results_by_case,
    sequence_rollup,
    write_report,
)

__all__ = [
    "NOT_RUN",
    "aggregate",
    "final_result",
    "group_results",
    "latest_results",
    "latest_results_by_case",
    "sequence_rollup",
    "write_report",
]
