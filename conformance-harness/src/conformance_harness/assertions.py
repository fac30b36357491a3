"""Assertion helpers for sequence checks.

Each helper either returns quietly or raises a `CheckSignal` that the engine
turns into the matching Test Result outcome.
"""

from __future__ import annotations

import re
from typing import Any, Mapping, NoReturn, Optional, Sequence

from conformance_harness.client import ProtocolResponse
from conformance_harness.errors import (
    AssertionFailure,
    OmitCondition,
    PassCondition,
    SkipCondition,
    TodoCondition,
)

_HTTP_URI_RE = re.compile(r"^https?://[^\s/$.?#].[^\s]*$", re.IGNORECASE)


def assert_true(
    condition: Any, message: str = "", details: Optional[Mapping[str, Any]] = None
) -> None:
    if not condition:
        raise AssertionFailure(message or "assertion failed", details)


def assert_equal(expected: Any, actual: Any, message: str = "") -> None:
    if expected != actual:
        prefix = f"{message}: " if message else ""
        raise AssertionFailure(f"{prefix}expected {expected!r}, got {actual!r}")


def assert_response_ok(response: ProtocolResponse, error_message: str = "") -> None:
    if response.status not in {200, 201}:
        msg = f"Bad response code: expected 200, 201, but found {response.status}."
        if error_message:
            msg = f"{msg} {error_message}"
        raise AssertionFailure(msg)


def assert_response_status(response: ProtocolResponse, expected: Sequence[int]) -> None:
    if response.status not in set(expected):
        allowed = ", ".join(str(s) for s in expected)
        raise AssertionFailure(
            f"Bad response code: expected {allowed}, but found {response.status}."
        )


def assert_response_content_type(response: ProtocolResponse, content_type: str) -> None:
    header = response.content_type
    if not header:
        raise AssertionFailure("no Content-Type header in response")
    if not header.split(";")[0].strip().lower().startswith(content_type.lower()):
        raise AssertionFailure(
            f"Expected content-type {content_type} but found {header}"
        )


def assert_resource_type(resource: Any, resource_type: str) -> None:
    actual = resource.get("resourceType") if isinstance(resource, Mapping) else None
    if actual != resource_type:
        raise AssertionFailure(
            f"Bad resource type received: expected {resource_type}, but received {actual}"
        )


def assert_bundle_response(response: ProtocolResponse) -> Mapping[str, Any]:
    body = response.json()
    assert_resource_type(body, "Bundle")
    return body


def assert_valid_http_uri(uri: Any, message: str = "") -> None:
    if not isinstance(uri, str) or _HTTP_URI_RE.match(uri) is None:
        raise AssertionFailure(message or f"Invalid URI: {uri!r}")


def skip(message: str, details: Optional[Mapping[str, Any]] = None) -> NoReturn:
    raise SkipCondition(message, details)


def skip_if(condition: Any, message: str) -> None:
    if condition:
        raise SkipCondition(message)


def skip_unless(condition: Any, message: str) -> None:
    if not condition:
        raise SkipCondition(message)


def omit(message: str) -> NoReturn:
    raise OmitCondition(message)


def todo(message: str = "") -> NoReturn:
    raise TodoCondition(message)


def pass_with(message: str) -> NoReturn:
    raise PassCondition(message)
