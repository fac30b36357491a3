from __future__ import annotations

from typing import Any, Dict

from conformance_harness.assertions import (
    assert_bundle_response,
    assert_response_ok,
    assert_true,
    skip,
)
from conformance_harness.search import (
    compare_temporal_range,
    date_comparator_value,
    get_value_for_search_param,
    resolve_element_from_path,
)
from conformance_harness.sequences.base import CheckContext, SequenceDefinition, check


def _matches_period(resource: Dict[str, Any], value: str) -> bool:
    period = resolve_element_from_path(resource, "period")
    if isinstance(period, dict):
        return compare_temporal_range(value, period)
    return False


class EncounterSearchSequence(SequenceDefinition):
    sequence_name = "EncounterSearch"
    title = "Encounter Search"
    description = "Verify Encounter search by patient and by patient + date."
    test_id_prefix = "ENC"

    requires = ("token", "patient_id")
    optional = True
    versions = ("r4",)

    def __init__(self) -> None:
        self.encounters: list[Dict[str, Any]] = []

    @check("01", "Server returns valid results for Encounter search by patient", hard_stop=True)
    def search_by_patient(self, ctx: CheckContext) -> None:
        response = ctx.client.request(
            "GET", "Encounter", params={"patient": ctx.variables.get("patient_id")}
        )
        assert_response_ok(response)
        bundle = assert_bundle_response(response)
        self.encounters = [
            e["resource"]
            for e in bundle.get("entry") or []
            if isinstance(e, dict) and isinstance(e.get("resource"), dict)
        ]
        if not self.encounters:
            skip("No Encounter resources appear to be available for this patient.")
        for encounter in self.encounters:
            if encounter.get("id"):
                ctx.add_resource_reference("Encounter", str(encounter["id"]))

    @check("02", "Server returns valid results for Encounter search by patient + date")
    def search_by_date(self, ctx: CheckContext) -> None:
        period = resolve_element_from_path(self.encounters, "period")
        value = get_value_for_search_param(period)
        if value is None:
            skip("No Encounter with a period was found to build a date search.")

        response = ctx.client.request(
            "GET", "Encounter", params={"patient": ctx.variables.get("patient_id"), "date": value}
        )
        assert_response_ok(response)
        bundle = assert_bundle_response(response)
        returned = [
            e["resource"]
            for e in bundle.get("entry") or []
            if isinstance(e, dict) and isinstance(e.get("resource"), dict)
        ]
        assert_true(returned, f"Encounter search with date={value} returned no results")
        for encounter in returned:
            assert_true(
                _matches_period(encounter, value),
                f"Encounter/{encounter.get('id')} period does not match date search {value}",
            )

    @check("03", "Server supports date comparators for Encounter search", required=False)
    def search_with_comparators(self, ctx: CheckContext) -> None:
        period = resolve_element_from_path(self.encounters, "period")
        start = period.get("start") if isinstance(period, dict) else None
        if not start:
            skip("No Encounter period start available for comparator searches.")

        for comparator in ("gt", "lt", "le", "ge"):
            value = date_comparator_value(comparator, start)
            response = ctx.client.request(
                "GET", "Encounter", params={"patient": ctx.variables.get("patient_id"), "date": value}
            )
            assert_response_ok(response)
            bundle = assert_bundle_response(response)
            for entry in bundle.get("entry") or []:
                resource = entry.get("resource") if isinstance(entry, dict) else None
                if not isinstance(resource, dict):
                    continue
                with ctx.warning():
                    assert_true(
                        _matches_period(resource, value),
                        f"Encounter/{resource.get('id')} does not match date search {value}",
                    )
