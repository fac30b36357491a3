from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Mapping, Optional, Protocol
from urllib.parse import urljoin

import httpx
import structlog

from conformance_harness.errors import ProtocolClientError
from conformance_harness.models import RequestResponse, utc_now

FHIR_JSON = "application/fhir+json"

DEFAULT_MAX_PAGES = 20


@dataclass(frozen=True)
class ProtocolResponse:
    method: str
    url: str
    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: str = ""

    @property
    def content_type(self) -> str:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value
        return ""

    def header(self, name: str) -> Optional[str]:
        for key, value in self.headers.items():
            if key.lower() == name.lower():
                return value
        return None

    def json(self) -> Any:
        return json.loads(self.body)


class ProtocolClient(Protocol):
    """What sequences need from a server client.

    Every request is appended to `requests` so the engine can attach the
    exchanges made by a check to that check's Test Result.
    """

    requests: list[RequestResponse]

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None,
        data: Optional[Mapping[str, Any]] = None,
        json_body: Any = None,
    ) -> ProtocolResponse: ...

    def set_bearer_token(self, token: Optional[str]) -> None: ...


def _headers_dict(headers: Any) -> Dict[str, str]:
    return {str(k): str(v) for k, v in dict(headers or {}).items()}


def _body_text(content: Optional[bytes]) -> Optional[str]:
    if not content:
        return None
    return content.decode("utf-8", errors="replace")


class HttpProtocolClient:
    """`ProtocolClient` over httpx.

    Relative URLs are resolved against the server base URL. Transport errors
    surface as `ProtocolClientError`; HTTP error statuses do not raise.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 30.0,
        verify: bool = True,
        max_pages: int = DEFAULT_MAX_PAGES,
        transport: Optional[httpx.BaseTransport] = None,
        logger: Any = None,
    ) -> None:
        self.base_url = str(base_url).rstrip("/") + "/"
        self.max_pages = int(max_pages)
        self.requests: list[RequestResponse] = []
        self._token: Optional[str] = None
        self._log = logger if logger is not None else structlog.get_logger("conformance.client")
        self._http = httpx.Client(
            timeout=timeout_s,
            verify=verify,
            transport=transport,
            follow_redirects=False,
        )

    def __enter__(self) -> "HttpProtocolClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def set_bearer_token(self, token: Optional[str]) -> None:
        self._token = token or None

    def _absolute(self, url: str) -> str:
        if url.startswith("http://") or url.startswith("https://"):
            return url
        return urljoin(self.base_url, url.lstrip("/"))

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None,
        data: Optional[Mapping[str, Any]] = None,
        json_body: Any = None,
    ) -> ProtocolResponse:
        method = method.upper()
        merged: Dict[str, str] = {"Accept": FHIR_JSON}
        if self._token:
            merged["Authorization"] = f"Bearer {self._token}"
        merged.update(dict(headers or {}))

        try:
            response = self._http.request(
                method,
                self._absolute(url),
                headers=merged,
                params=dict(params) if params else None,
                data=dict(data) if data else None,
                json=json_body,
            )
        except httpx.HTTPError as e:
            self._log.warning("http.error", method=method, url=url, error=str(e))
            raise ProtocolClientError(f"{method} {url} failed: {e}") from e

        captured = RequestResponse(
            method=method,
            url=str(response.request.url),
            direction="outbound",
            request_headers=_headers_dict(response.request.headers),
            request_body=_body_text(response.request.content),
            status=response.status_code,
            response_headers=_headers_dict(response.headers),
            response_body=response.text,
            timestamp=utc_now().isoformat(),
        )
        self.requests.append(captured)
        self._log.debug(
            "http.request", method=method, url=captured.url, status=response.status_code
        )
        return ProtocolResponse(
            method=method,
            url=captured.url,
            status=response.status_code,
            headers=dict(captured.response_headers),
            body=response.text,
        )

    def get(self, url: str, **kwargs: Any) -> ProtocolResponse:
        return self.request("GET", url, **kwargs)

    def read(self, resource_type: str, resource_id: str) -> ProtocolResponse:
        return self.request("GET", f"{resource_type}/{resource_id}")

    def search(self, resource_type: str, params: Mapping[str, Any]) -> ProtocolResponse:
        return self.request("GET", resource_type, params=params)

    def post_form(
        self, url: str, data: Mapping[str, Any], headers: Optional[Mapping[str, str]] = None
    ) -> ProtocolResponse:
        merged = {"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"}
        merged.update(dict(headers or {}))
        return self.request("POST", url, headers=merged, data=data)

    def iter_bundle_pages(self, first: ProtocolResponse) -> Iterator[Dict[str, Any]]:
        """Yield each bundle page, following `next` links up to `max_pages`."""
        page = first.json()
        pages = 0
        while isinstance(page, dict):
            yield page
            pages += 1
            if pages >= self.max_pages:
                return
            next_url = next_link(page)
            if not next_url:
                return
            page = self.get(next_url).json()

    def fetch_all_bundled_resources(self, first: ProtocolResponse) -> list[Dict[str, Any]]:
        resources: list[Dict[str, Any]] = []
        for page in self.iter_bundle_pages(first):
            for entry in page.get("entry") or []:
                resource = entry.get("resource") if isinstance(entry, dict) else None
                if isinstance(resource, dict):
                    resources.append(resource)
        return resources


def next_link(bundle: Mapping[str, Any]) -> Optional[str]:
    for link in bundle.get("link") or []:
        if isinstance(link, dict) and link.get("relation") == "next" and link.get("url"):
            return str(link["url"])
    return None
