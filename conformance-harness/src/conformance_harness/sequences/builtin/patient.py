from __future__ import annotations

from typing import Any, Dict, Optional

from conformance_harness.assertions import (
    assert_resource_type,
    assert_response_ok,
    assert_response_status,
    assert_true,
    omit,
)
from conformance_harness.search import can_resolve_path
from conformance_harness.sequences.base import CheckContext, SequenceDefinition, check

PATIENT_PROFILE = "http://hl7.org/fhir/us/core/StructureDefinition/us-core-patient"


class PatientReadSequence(SequenceDefinition):
    sequence_name = "PatientRead"
    title = "Patient Read"
    description = "Verify that the Patient resource in the launch context can be read."
    test_id_prefix = "PR"

    requires = ("token", "patient_id")

    def __init__(self) -> None:
        self.patient: Optional[Dict[str, Any]] = None

    @check("01", "Server rejects Patient read without authorization", required=False)
    def unauthorized_read(self, ctx: CheckContext) -> None:
        ctx.client.set_bearer_token(None)
        try:
            response = ctx.client.request("GET", f"Patient/{ctx.variables.get('patient_id')}")
        finally:
            ctx.client.set_bearer_token(ctx.variables.get("token"))
        assert_response_status(response, (401,))

    @check("02", "Server returns expected Patient resource from read interaction", hard_stop=True)
    def read_patient(self, ctx: CheckContext) -> None:
        patient_id = ctx.variables.get("patient_id")
        response = ctx.client.request("GET", f"Patient/{patient_id}")
        assert_response_ok(response)
        body = response.json()
        assert_resource_type(body, "Patient")
        assert_true(
            body.get("id") == patient_id,
            f"Expected Patient id {patient_id} but received {body.get('id')}",
        )
        self.patient = body
        ctx.add_resource_reference("Patient", str(patient_id))

    @check("03", "Patient resource conforms to profile")
    def validate_patient(self, ctx: CheckContext) -> None:
        ctx.validate_resource(self.patient or {}, PATIENT_PROFILE)

    @check("04", "Patient resource has a name, gender and birthDate", required=False)
    def must_support_elements(self, ctx: CheckContext) -> None:
        patient = self.patient or {}
        if not can_resolve_path(patient, "name"):
            omit("Patient has no name to examine")
        missing = [p for p in ("gender", "birthDate") if not can_resolve_path(patient, p)]
        assert_true(not missing, f"Patient is missing elements: {', '.join(missing)}")
