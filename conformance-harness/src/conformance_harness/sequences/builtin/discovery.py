from __future__ import annotations

from typing import Any, Dict, Optional

from conformance_harness.assertions import (
    assert_response_content_type,
    assert_response_ok,
    assert_true,
    assert_valid_http_uri,
)
from conformance_harness.search import resolve_element_from_path
from conformance_harness.sequences.base import CheckContext, SequenceDefinition, check

SMART_OAUTH_EXTENSION_URL = "http://fhir-registry.smarthealthit.org/StructureDefinition/oauth-uris"

REQUIRED_WELL_KNOWN_FIELDS = ("authorization_endpoint", "token_endpoint", "capabilities")

RECOMMENDED_WELL_KNOWN_FIELDS = (
    "scopes_supported",
    "response_types_supported",
    "management_endpoint",
    "introspection_endpoint",
    "revocation_endpoint",
)


def _oauth_extension_urls(capability_statement: Dict[str, Any]) -> Dict[str, str]:
    security = resolve_element_from_path(capability_statement, "rest.security")
    if not isinstance(security, dict):
        return {}
    out: Dict[str, str] = {}
    for ext in security.get("extension") or []:
        if not isinstance(ext, dict) or ext.get("url") != SMART_OAUTH_EXTENSION_URL:
            continue
        for inner in ext.get("extension") or []:
            if isinstance(inner, dict) and inner.get("url") and inner.get("valueUri"):
                out[str(inner["url"])] = str(inner["valueUri"])
    return out


class SmartDiscoverySequence(SequenceDefinition):
    sequence_name = "SmartDiscovery"
    title = "SMART on FHIR Discovery"
    description = "Retrieve server's SMART on FHIR configuration"
    test_id_prefix = "SD"

    defines = ("oauth_authorize_endpoint", "oauth_token_endpoint", "oauth_register_endpoint")

    def __init__(self) -> None:
        self.well_known: Optional[Dict[str, Any]] = None
        self.metadata_urls: Dict[str, str] = {}

    @check(
        "01",
        "Retrieve Configuration from well-known endpoint",
        hard_stop=True,
        url="http://www.hl7.org/fhir/smart-app-launch/conformance/#using-well-known",
    )
    def retrieve_well_known(self, ctx: CheckContext) -> None:
        response = ctx.client.request("GET", ".well-known/smart-configuration")
        assert_response_ok(response)
        assert_response_content_type(response, "application/json")
        body = response.json()
        assert_true(isinstance(body, dict) and body, "No .well-known/smart-configuration body")
        self.well_known = body

        ctx.variables.set("oauth_authorize_endpoint", body.get("authorization_endpoint"))
        ctx.variables.set("oauth_token_endpoint", body.get("token_endpoint"))
        ctx.variables.set("oauth_register_endpoint", body.get("registration_endpoint"))

    @check("02", "Configuration from well-known endpoint contains required fields")
    def well_known_required_fields(self, ctx: CheckContext) -> None:
        config = self.well_known or {}
        missing = [f for f in REQUIRED_WELL_KNOWN_FIELDS if f not in config]
        assert_true(not missing, f"The following required fields are missing: {', '.join(missing)}")
        assert_valid_http_uri(config.get("authorization_endpoint"))
        assert_valid_http_uri(config.get("token_endpoint"))

        with ctx.warning():
            absent = [f for f in RECOMMENDED_WELL_KNOWN_FIELDS if f not in config]
            assert_true(
                not absent, f"The following recommended fields are missing: {', '.join(absent)}"
            )

    @check("03", "Conformance/Capability Statement provides OAuth 2.0 endpoints")
    def capability_statement_oauth_urls(self, ctx: CheckContext) -> None:
        response = ctx.client.request("GET", "metadata")
        assert_response_ok(response)
        self.metadata_urls = _oauth_extension_urls(response.json())
        for name in ("authorize", "token"):
            assert_true(
                name in self.metadata_urls,
                f"No {name} URI provided in Conformance/CapabilityStatement resource",
            )
            assert_valid_http_uri(self.metadata_urls[name])

    @check("04", "OAuth endpoints received using various methods match", required=False)
    def endpoints_match(self, ctx: CheckContext) -> None:
        config = self.well_known or {}
        assert_true(
            config.get("authorization_endpoint") == self.metadata_urls.get("authorize"),
            "Authorization endpoints do not match",
        )
        assert_true(
            config.get("token_endpoint") == self.metadata_urls.get("token"),
            "Token endpoints do not match",
        )
