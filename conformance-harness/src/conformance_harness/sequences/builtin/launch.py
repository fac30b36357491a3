from __future__ import annotations

import base64
import uuid
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from conformance_harness.assertions import (
    assert_response_ok,
    assert_response_status,
    assert_true,
    assert_valid_http_uri,
    skip_if,
)
from conformance_harness.models import RunInstance
from conformance_harness.sequences.base import CheckContext, SequenceDefinition, Suspend, check

OAUTH_REDIRECT_FAILED = "Redirect to OAuth server failed"
NO_TOKEN = "No valid token"


def _tls_disabled(ctx: CheckContext) -> bool:
    return str(ctx.variables.get("disable_tls_tests") or "").lower() == "true"


def _basic_auth_header(client_id: str, client_secret: str) -> Dict[str, str]:
    raw = f"{client_id}:{client_secret}".encode("utf-8")
    return {"Authorization": "Basic " + base64.b64encode(raw).decode("ascii")}


class StandaloneLaunchSequence(SequenceDefinition):
    sequence_name = "StandaloneLaunch"
    title = "Standalone Launch Sequence"
    description = "Demonstrate the SMART Standalone Launch Sequence."
    test_id_prefix = "SLS"

    requires = ("oauth_authorize_endpoint", "oauth_token_endpoint")
    defines = ("token", "refresh_token", "patient_id")

    def __init__(self) -> None:
        self.code: Optional[str] = None
        self.token_response: Dict[str, Any] = {}

    @classmethod
    def precondition(cls, instance: RunInstance) -> Optional[str]:
        if not instance.client.client_id:
            return "Client must be registered"
        return None

    @check(
        "01",
        "OAuth 2.0 authorize endpoint secured by transport layer security",
        url="http://www.hl7.org/fhir/smart-app-launch/",
    )
    def authorize_endpoint_tls(self, ctx: CheckContext) -> None:
        skip_if(_tls_disabled(ctx), "TLS tests have been disabled by configuration.")
        endpoint = ctx.variables.get("oauth_authorize_endpoint") or ""
        assert_true(
            endpoint.lower().startswith("https://"),
            f"Authorize endpoint is not secured by TLS: {endpoint}",
        )

    @check(
        "02",
        "OAuth server redirects client browser to app redirect URI",
        hard_stop=True,
        url="http://www.hl7.org/fhir/smart-app-launch/",
    )
    def redirect_to_authorize(self, ctx: CheckContext) -> Suspend:
        state = uuid.uuid4().hex
        ctx.variables.set("state", state)

        endpoint = ctx.variables.get("oauth_authorize_endpoint") or ""
        assert_valid_http_uri(endpoint)

        params = {
            "response_type": "code",
            "client_id": ctx.instance.client.client_id or "",
            "redirect_uri": ctx.instance.client.redirect_uri or "",
            "scope": ctx.instance.client.scopes,
            "state": state,
            "aud": ctx.instance.url,
        }
        separator = "&" if "?" in endpoint else "?"
        return ctx.redirect(endpoint + separator + urlencode(params), "redirect")

    @check(
        "03",
        "Client app receives code parameter and correct state parameter from OAuth server at redirect URI",
        hard_stop=True,
    )
    def receive_code(self, ctx: CheckContext) -> None:
        params = ctx.callback_params
        assert_true(bool(params), OAUTH_REDIRECT_FAILED)
        assert_true(
            params.get("error") is None,
            "Error returned from authorization server: "
            f"code {params.get('error')}, description: {params.get('error_description')}",
        )
        expected_state = ctx.variables.get("state")
        assert_true(
            params.get("state") == expected_state,
            f"OAuth server state querystring parameter ({params.get('state')}) "
            f"did not match state from app {expected_state}",
        )
        assert_true(params.get("code") is not None, "Expected code to be submitted in request")
        self.code = str(params["code"])

    @check("04", "OAuth token exchange endpoint secured by transport layer security")
    def token_endpoint_tls(self, ctx: CheckContext) -> None:
        skip_if(_tls_disabled(ctx), "TLS tests have been disabled by configuration.")
        endpoint = ctx.variables.get("oauth_token_endpoint") or ""
        assert_true(
            endpoint.lower().startswith("https://"),
            f"Token endpoint is not secured by TLS: {endpoint}",
        )

    def _token_request(self, ctx: CheckContext, code: str) -> Any:
        client = ctx.instance.client
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": client.redirect_uri or "",
        }
        headers: Dict[str, str] = {"Content-Type": "application/x-www-form-urlencoded"}
        if client.confidential_client:
            headers.update(_basic_auth_header(client.client_id or "", client.client_secret or ""))
        else:
            data["client_id"] = client.client_id or ""
        return ctx.client.request(
            "POST", ctx.variables.get("oauth_token_endpoint") or "", headers=headers, data=data
        )

    @check("05", "OAuth token exchange fails when supplied invalid code")
    def token_exchange_invalid_code(self, ctx: CheckContext) -> None:
        response = self._token_request(ctx, "INVALID_CODE")
        assert_response_status(response, (400, 401))

    @check("06", "OAuth token exchange request succeeds when supplied correct information", hard_stop=True)
    def token_exchange(self, ctx: CheckContext) -> None:
        assert_true(self.code is not None, OAUTH_REDIRECT_FAILED)
        response = self._token_request(ctx, self.code or "")
        assert_response_ok(response)
        body = response.json()
        assert_true(isinstance(body, dict), "Token response is not a JSON object")
        self.token_response = body

        token = body.get("access_token")
        assert_true(token, NO_TOKEN)
        ctx.variables.set("token", token)
        ctx.variables.set("refresh_token", body.get("refresh_token"))
        ctx.client.set_bearer_token(str(token))

        patient_id = body.get("patient")
        if patient_id:
            ctx.variables.set("patient_id", patient_id)
            ctx.add_resource_reference("Patient", str(patient_id))

    @check("07", "Token exchange response body contains required information encoded in JSON")
    def token_response_fields(self, ctx: CheckContext) -> None:
        body = self.token_response
        for field_name in ("access_token", "token_type", "scope"):
            assert_true(body.get(field_name), f"Token response did not contain {field_name} as required")
        assert_true(
            str(body.get("token_type")).lower() == "bearer",
            "Token type must be Bearer.",
        )
        with ctx.warning():
            assert_true(body.get("expires_in") is not None, "Token response did not contain expires_in")
        if "patient" not in body:
            ctx.info("Token response did not include a patient launch context")
