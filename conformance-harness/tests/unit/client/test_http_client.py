from __future__ import annotations

import json
from urllib.parse import parse_qs

import httpx
import pytest

from conformance_harness.client import FHIR_JSON, HttpProtocolClient, ProtocolResponse, next_link
from conformance_harness.errors import ProtocolClientError


def _bundle(ids: list[str], next_url: str | None = None) -> dict:
    bundle: dict = {
        "resourceType": "Bundle",
        "type": "searchset",
        "entry": [{"resource": {"resourceType": "Encounter", "id": i}} for i in ids],
    }
    if next_url:
        bundle["link"] = [{"relation": "next", "url": next_url}]
    return bundle


def _client(handler, **kwargs) -> HttpProtocolClient:
    return HttpProtocolClient(
        "https://fhir.example.org/r4", transport=httpx.MockTransport(handler), **kwargs
    )


def test_requests_resolve_relative_urls_and_are_captured() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"resourceType": "Patient", "id": "123"})

    with _client(handler) as client:
        client.set_bearer_token("tok")
        response = client.read("Patient", "123")

    assert str(seen[0].url) == "https://fhir.example.org/r4/Patient/123"
    assert seen[0].headers["Authorization"] == "Bearer tok"
    assert seen[0].headers["Accept"] == FHIR_JSON
    assert response.status == 200
    assert response.json()["id"] == "123"

    captured = client.requests[0]
    assert captured.method == "GET"
    assert captured.direction == "outbound"
    assert captured.url == "https://fhir.example.org/r4/Patient/123"
    assert captured.status == 200
    assert json.loads(captured.response_body or "")["resourceType"] == "Patient"


def test_clearing_the_token_drops_the_header() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(401)

    client = _client(handler)
    client.set_bearer_token("tok")
    client.set_bearer_token(None)
    response = client.get("Patient/1")
    client.close()

    assert "Authorization" not in seen[0].headers
    assert response.status == 401


def test_search_params_and_form_posts() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"access_token": "abc"})

    client = _client(handler)
    client.search("Encounter", {"patient": "123", "date": "gt2020-01-01"})
    client.post_form("https://auth.example.org/token", {"grant_type": "authorization_code", "code": "c"})
    client.close()

    assert seen[0].url.params["patient"] == "123"
    assert seen[0].url.params["date"] == "gt2020-01-01"

    token_request = seen[1]
    assert str(token_request.url) == "https://auth.example.org/token"
    assert token_request.headers["Content-Type"] == "application/x-www-form-urlencoded"
    assert parse_qs(token_request.content.decode()) == {
        "grant_type": ["authorization_code"],
        "code": ["c"],
    }
    assert client.requests[1].request_body is not None


def test_transport_errors_become_protocol_client_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    with pytest.raises(ProtocolClientError, match=r"GET metadata failed"):
        client.get("metadata")
    assert client.requests == []


def test_bundle_pages_are_followed_up_to_the_limit() -> None:
    pages = {
        "/r4/Encounter": _bundle(["e1", "e2"], "https://fhir.example.org/r4/page2"),
        "/r4/page2": _bundle(["e3"], "https://fhir.example.org/r4/page3"),
        "/r4/page3": _bundle(["e4"]),
    }

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=pages[request.url.path])

    client = _client(handler)
    first = client.search("Encounter", {"patient": "123"})
    resources = client.fetch_all_bundled_resources(first)
    assert [r["id"] for r in resources] == ["e1", "e2", "e3", "e4"]
    assert len(client.requests) == 3

    limited = _client(handler, max_pages=2)
    first = limited.search("Encounter", {"patient": "123"})
    assert [r["id"] for r in limited.fetch_all_bundled_resources(first)] == ["e1", "e2", "e3"]


def test_protocol_response_helpers() -> None:
    response = ProtocolResponse(
        method="GET",
        url="x",
        status=200,
        headers={"content-type": "application/fhir+json; charset=utf-8", "ETag": "W/1"},
        body='{"a": 1}',
    )
    assert response.content_type.startswith("application/fhir+json")
    assert response.header("etag") == "W/1"
    assert response.header("missing") is None
    assert response.json() == {"a": 1}
    assert next_link({"link": [{"relation": "self", "url": "a"}]}) is None
