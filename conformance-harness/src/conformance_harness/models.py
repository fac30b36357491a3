from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Sequence

from conformance_harness.variables import VariableStore

PASS = "pass"
FAIL = "fail"
ERROR = "error"
SKIP = "skip"
OMIT = "omit"
TODO = "todo"
WAIT = "wait"
CANCEL = "cancel"

ALLOWED_CHECK_RESULTS = {PASS, FAIL, ERROR, SKIP, OMIT, TODO, WAIT, CANCEL}

ALLOWED_SEQUENCE_RESULTS = {PASS, FAIL, ERROR, SKIP, WAIT, CANCEL}

CANCEL_MESSAGE = "Test cancelled by user."


def new_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if isinstance(value, datetime) else None


def _dt_from_str(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value.strip():
        return datetime.fromisoformat(value.strip())
    return utc_now()


@dataclass(frozen=True)
class RequestResponse:
    """One captured HTTP exchange; `direction` is outbound or inbound."""

    method: str
    url: str
    direction: str = "outbound"
    request_headers: Mapping[str, str] = field(default_factory=dict)
    request_body: Optional[str] = None
    status: Optional[int] = None
    response_headers: Mapping[str, str] = field(default_factory=dict)
    response_body: Optional[str] = None
    timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction,
            "method": self.method,
            "url": self.url,
            "request_headers": dict(self.request_headers),
            "request_body": self.request_body,
            "status": self.status,
            "response_headers": dict(self.response_headers),
            "response_body": self.response_body,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RequestResponse":
        return cls(
            method=str(data.get("method") or ""),
            url=str(data.get("url") or ""),
            direction=str(data.get("direction") or "outbound"),
            request_headers=dict(data.get("request_headers") or {}),
            request_body=data.get("request_body"),
            status=data.get("status"),
            response_headers=dict(data.get("response_headers") or {}),
            response_body=data.get("response_body"),
            timestamp=data.get("timestamp"),
        )


@dataclass(frozen=True)
class TestResult:
    __test__ = False

    id: str
    check_id: str
    name: str
    result: str
    message: str = ""
    details: Mapping[str, Any] = field(default_factory=dict)
    required: bool = True
    url: str = ""
    description: str = ""
    ref: str = ""
    index: int = 0
    warnings: Sequence[str] = field(default_factory=tuple)
    information: Sequence[str] = field(default_factory=tuple)
    request_responses: Sequence[RequestResponse] = field(default_factory=tuple)
    wait_at_endpoint: Optional[str] = None
    redirect_to_url: Optional[str] = None
    sequence_result_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "check_id": self.check_id,
            "name": self.name,
            "result": self.result,
            "message": self.message,
            "details": dict(self.details),
            "required": self.required,
            "url": self.url,
            "description": self.description,
            "ref": self.ref,
            "index": self.index,
            "warnings": list(self.warnings),
            "information": list(self.information),
            "request_responses": [rr.to_dict() for rr in self.request_responses],
            "wait_at_endpoint": self.wait_at_endpoint,
            "redirect_to_url": self.redirect_to_url,
            "sequence_result_id": self.sequence_result_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TestResult":
        return cls(
            id=str(data.get("id") or new_id()),
            check_id=str(data.get("check_id") or ""),
            name=str(data.get("name") or ""),
            result=str(data.get("result") or ""),
            message=str(data.get("message") or ""),
            details=dict(data.get("details") or {}),
            required=bool(data.get("required", True)),
            url=str(data.get("url") or ""),
            description=str(data.get("description") or ""),
            ref=str(data.get("ref") or ""),
            index=int(data.get("index") or 0),
            warnings=tuple(data.get("warnings") or ()),
            information=tuple(data.get("information") or ()),
            request_responses=tuple(
                RequestResponse.from_dict(rr) for rr in (data.get("request_responses") or ())
            ),
            wait_at_endpoint=data.get("wait_at_endpoint"),
            redirect_to_url=data.get("redirect_to_url"),
            sequence_result_id=data.get("sequence_result_id"),
        )


_COUNT_FIELDS = (
    "required_passed",
    "required_total",
    "optional_passed",
    "optional_total",
    "error_count",
    "skip_count",
    "todo_count",
    "required_omitted",
    "optional_omitted",
)


@dataclass
class SequenceResult:
    id: str
    name: str
    test_case_id: str
    test_set_id: str
    instance_id: str
    result: str = "pending"
    message: str = ""
    test_results: list[TestResult] = field(default_factory=list)
    required: bool = True
    redirect_to_url: Optional[str] = None
    wait_at_endpoint: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    input_params: Dict[str, str] = field(default_factory=dict)
    output_results: Dict[str, Dict[str, Optional[str]]] = field(default_factory=dict)
    resumed_from: Optional[str] = None
    next_test_cases: list[str] = field(default_factory=list)
    stop_on_failure: bool = False
    pending_variables: Dict[str, Optional[str]] = field(default_factory=dict)

    required_passed: int = 0
    required_total: int = 0
    optional_passed: int = 0
    optional_total: int = 0
    error_count: int = 0
    skip_count: int = 0
    todo_count: int = 0
    required_omitted: int = 0
    optional_omitted: int = 0

    def reset_counts(self) -> None:
        for name in _COUNT_FIELDS:
            setattr(self, name, 0)

    def update_result_counts(self) -> None:
        self.reset_counts()
        for tr in self.test_results:
            if tr.required:
                self.required_total += 1
            else:
                self.optional_total += 1

            if tr.result == PASS:
                if tr.required:
                    self.required_passed += 1
                else:
                    self.optional_passed += 1
            elif tr.result == OMIT:
                if tr.required:
                    self.required_omitted += 1
                else:
                    self.optional_omitted += 1
            elif tr.result == ERROR:
                self.error_count += 1
            elif tr.result == SKIP:
                self.skip_count += 1
            elif tr.result == TODO:
                self.todo_count += 1

    @property
    def total_omitted(self) -> int:
        return self.required_omitted + self.optional_omitted

    @property
    def result_count(self) -> int:
        return len(self.test_results)

    def counts(self) -> Dict[str, int]:
        out = {name: int(getattr(self, name)) for name in _COUNT_FIELDS}
        out["total_omitted"] = self.total_omitted
        return out

    def waiting_test_result(self) -> Optional[TestResult]:
        for tr in reversed(self.test_results):
            if tr.result == WAIT:
                return tr
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "test_case_id": self.test_case_id,
            "test_set_id": self.test_set_id,
            "instance_id": self.instance_id,
            "result": self.result,
            "message": self.message,
            "test_results": [tr.to_dict() for tr in self.test_results],
            "required": self.required,
            "redirect_to_url": self.redirect_to_url,
            "wait_at_endpoint": self.wait_at_endpoint,
            "created_at": _dt_to_str(self.created_at),
            "input_params": dict(self.input_params),
            "output_results": {k: dict(v) for k, v in self.output_results.items()},
            "resumed_from": self.resumed_from,
            "next_test_cases": list(self.next_test_cases),
            "stop_on_failure": self.stop_on_failure,
            "pending_variables": dict(self.pending_variables),
            "counts": self.counts(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SequenceResult":
        result = cls(
            id=str(data.get("id") or new_id()),
            name=str(data.get("name") or ""),
            test_case_id=str(data.get("test_case_id") or ""),
            test_set_id=str(data.get("test_set_id") or ""),
            instance_id=str(data.get("instance_id") or ""),
            result=str(data.get("result") or "pending"),
            message=str(data.get("message") or ""),
            test_results=[TestResult.from_dict(tr) for tr in (data.get("test_results") or [])],
            required=bool(data.get("required", True)),
            redirect_to_url=data.get("redirect_to_url"),
            wait_at_endpoint=data.get("wait_at_endpoint"),
            created_at=_dt_from_str(data.get("created_at")),
            input_params=dict(data.get("input_params") or {}),
            output_results={k: dict(v) for k, v in (data.get("output_results") or {}).items()},
            resumed_from=data.get("resumed_from"),
            next_test_cases=list(data.get("next_test_cases") or []),
            stop_on_failure=bool(data.get("stop_on_failure", False)),
            pending_variables=dict(data.get("pending_variables") or {}),
        )
        result.update_result_counts()
        return result


@dataclass(frozen=True)
class ResourceReference:
    resource_type: str
    resource_id: str
    profile: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "profile": self.profile,
            "created_at": _dt_to_str(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ResourceReference":
        return cls(
            resource_type=str(data.get("resource_type") or ""),
            resource_id=str(data.get("resource_id") or ""),
            profile=data.get("profile"),
            created_at=_dt_from_str(data.get("created_at")),
        )


@dataclass(frozen=True)
class ClientConfig:
    """OAuth client registration used by launch sequences."""

    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    scopes: str = ""
    confidential_client: bool = False
    redirect_uri: Optional[str] = None
    launch_uri: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scopes": self.scopes,
            "confidential_client": self.confidential_client,
            "redirect_uri": self.redirect_uri,
            "launch_uri": self.launch_uri,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ClientConfig":
        return cls(
            client_id=data.get("client_id"),
            client_secret=data.get("client_secret"),
            scopes=str(data.get("scopes") or ""),
            confidential_client=bool(data.get("confidential_client", False)),
            redirect_uri=data.get("redirect_uri"),
            launch_uri=data.get("launch_uri"),
        )


@dataclass
class RunInstance:
    """One conformance run against one server.

    `sequence_results` is append-only; history is never rewritten, later
    results simply supersede earlier ones with the same name.
    """

    id: str
    url: str
    fhir_version: str = "r4"
    client: ClientConfig = field(default_factory=ClientConfig)
    client_endpoint_key: str = field(default_factory=lambda: new_id()[:12])
    variables: VariableStore = field(default_factory=VariableStore)
    sequence_results: list[SequenceResult] = field(default_factory=list)
    resource_references: list[ResourceReference] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(
        cls,
        url: str,
        *,
        fhir_version: str = "r4",
        client: Optional[ClientConfig] = None,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> "RunInstance":
        return cls(
            id=new_id(),
            url=str(url).rstrip("/"),
            fhir_version=str(fhir_version),
            client=client or ClientConfig(),
            variables=VariableStore(variables or {}),
        )

    def add_sequence_result(self, result: SequenceResult) -> None:
        if any(existing.id == result.id for existing in self.sequence_results):
            raise ValueError(f"duplicate sequence result id: {result.id}")
        self.sequence_results.append(result)

    def sequence_result(self, result_id: str) -> Optional[SequenceResult]:
        for sr in self.sequence_results:
            if sr.id == result_id:
                return sr
        return None

    def latest_result(self, name: str) -> Optional[SequenceResult]:
        latest: Optional[SequenceResult] = None
        for sr in self.sequence_results:
            if sr.name != name:
                continue
            if latest is None or sr.created_at >= latest.created_at:
                latest = sr
        return latest

    def waiting_on_sequence(self) -> Optional[SequenceResult]:
        names: list[str] = []
        for sr in self.sequence_results:
            if sr.name not in names:
                names.append(sr.name)
        for name in names:
            latest = self.latest_result(name)
            if latest is not None and latest.result == WAIT:
                return latest
        return None

    def add_resource_reference(
        self, resource_type: str, resource_id: str, *, profile: Optional[str] = None
    ) -> None:
        for ref in self.resource_references:
            if ref.resource_type == resource_type and ref.resource_id == resource_id:
                return
        self.resource_references.append(
            ResourceReference(resource_type=resource_type, resource_id=resource_id, profile=profile)
        )

    def resource_ids(self, resource_type: str) -> list[str]:
        return [r.resource_id for r in self.resource_references if r.resource_type == resource_type]

    @property
    def patient_id(self) -> Optional[str]:
        ids = self.resource_ids("Patient")
        if ids:
            return ids[0]
        return self.variables.get("patient_id")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "fhir_version": self.fhir_version,
            "client": self.client.to_dict(),
            "client_endpoint_key": self.client_endpoint_key,
            "variables": self.variables.to_dict(),
            "sequence_results": [sr.to_dict() for sr in self.sequence_results],
            "resource_references": [r.to_dict() for r in self.resource_references],
            "created_at": _dt_to_str(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RunInstance":
        variables = data.get("variables")
        return cls(
            id=str(data.get("id") or new_id()),
            url=str(data.get("url") or ""),
            fhir_version=str(data.get("fhir_version") or "r4"),
            client=ClientConfig.from_dict(data.get("client") or {}),
            client_endpoint_key=str(data.get("client_endpoint_key") or new_id()[:12]),
            variables=VariableStore.from_dict(variables if isinstance(variables, Mapping) else {}),
            sequence_results=[
                SequenceResult.from_dict(sr) for sr in (data.get("sequence_results") or [])
            ],
            resource_references=[
                ResourceReference.from_dict(r) for r in (data.get("resource_references") or [])
            ],
            created_at=_dt_from_str(data.get("created_at")),
        )
