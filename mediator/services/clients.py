"""
HTTP clients for the three remote systems the mediator talks to.

Every request is a synchronous round trip with basic auth and an explicit
timeout. Transport failures, timeouts and 5xx answers raise
UpstreamUnavailable (retryable); other 4xx answers raise UpstreamRejected.
No client retries on its own; retry policy belongs to the sync trigger.

requests.Session is not thread-safe, so a client shares one session across
threads only when the caller injects it. Otherwise each thread that uses the
client (one per sync worker) gets its own session.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

import requests

from mediator.config import settings
from mediator.exceptions import UpstreamRejected, UpstreamUnavailable

logger = logging.getLogger(__name__)

FHIR_CONTENT_TYPE = "application/fhir+json"


@dataclass
class FhirResponse:
    """Status and decoded body of a remote write."""

    status_code: int
    body: dict[str, Any]


class RestClient:
    CONTENT_TYPE = "application/json"

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        *,
        timeout: float,
        system: str,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.system = system
        self.auth = (username, password)
        self._shared = self._configure(session) if session is not None else None
        self._local = threading.local()

    def _configure(self, session: requests.Session) -> requests.Session:
        session.auth = self.auth
        session.headers.update(
            {
                "Accept": f"{FHIR_CONTENT_TYPE}, application/json",
                "Content-Type": self.CONTENT_TYPE,
            }
        )
        return session

    @property
    def session(self) -> requests.Session:
        if self._shared is not None:
            return self._shared
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._local.session = self._configure(requests.Session())
        return session

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = self._url(path)
        operation = f"{method} {path}"
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self.session.request(method, url, **kwargs)
        except requests.Timeout as exc:
            raise UpstreamUnavailable(
                f"{self.system} request timed out after {self.timeout}s: {operation}",
                system=self.system,
                operation=operation,
                url=url,
                timeout=True,
            ) from exc
        except requests.RequestException as exc:
            raise UpstreamUnavailable(
                f"{self.system} request failed: {operation}: {exc}",
                system=self.system,
                operation=operation,
                url=url,
            ) from exc

        if response.status_code >= 500:
            raise UpstreamUnavailable(
                f"{self.system} returned HTTP {response.status_code} for {operation}",
                system=self.system,
                operation=operation,
                url=url,
            )
        return response

    def request_json(self, method: str, path: str, *, allow: tuple[int, ...] = (), **kwargs: Any) -> FhirResponse:
        response = self.request(method, path, **kwargs)
        if response.status_code >= 400 and response.status_code not in allow:
            snippet = response.text.strip().replace("\n", " ")[:240]
            raise UpstreamRejected(
                f"{self.system} rejected {method} {path} with HTTP {response.status_code}: {snippet}",
                system=self.system,
                status_code=response.status_code,
            )
        if not response.content:
            return FhirResponse(response.status_code, {})
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamUnavailable(
                f"{self.system} response for {method} {path} is not valid JSON",
                system=self.system,
                operation=f"{method} {path}",
                url=self._url(path),
            ) from exc
        return FhirResponse(response.status_code, payload if isinstance(payload, dict) else {"items": payload})


class FhirClient(RestClient):
    """Resource-level access to a FHIR R4 server (the FHIR store or OpenMRS' FHIR2 module)."""

    CONTENT_TYPE = FHIR_CONTENT_TYPE

    def __init__(self, base_url: str, username: str, password: str, *, timeout: float,
                 system: str = "fhir", session: requests.Session | None = None):
        super().__init__(base_url, username, password, timeout=timeout, system=system, session=session)

    def search(self, resource_type: str, **params: str) -> dict[str, Any]:
        bundle = self.request_json("GET", f"/{resource_type}/", params=params or None).body
        bundle.setdefault("total", len(bundle.get("entry") or []))
        bundle.setdefault("entry", [])
        return bundle

    def search_by_identifier(self, resource_type: str, identifier: str) -> list[dict[str, Any]]:
        bundle = self.search(resource_type, identifier=identifier)
        return [entry["resource"] for entry in bundle["entry"] if "resource" in entry]

    def search_all(self, resource_type: str, **params: str) -> list[dict[str, Any]]:
        """Follow ``next`` links until the search is exhausted."""
        bundle = self.search(resource_type, **params)
        resources = [entry["resource"] for entry in bundle["entry"] if "resource" in entry]
        next_url = _next_link(bundle)
        while next_url:
            page = self.request_json("GET", next_url).body
            resources.extend(entry["resource"] for entry in page.get("entry", []) if "resource" in entry)
            next_url = _next_link(page)
        return resources

    def read(self, resource_type: str, resource_id: str) -> dict[str, Any] | None:
        response = self.request_json("GET", f"/{resource_type}/{resource_id}", allow=(404, 410))
        if response.status_code in (404, 410):
            return None
        return response.body

    def create(self, resource_type: str, resource: dict[str, Any]) -> FhirResponse:
        body = {**resource, "resourceType": resource_type}
        return self.request_json("POST", f"/{resource_type}", json=body)

    def update(self, resource_type: str, resource_id: str, resource: dict[str, Any]) -> FhirResponse:
        body = {**resource, "resourceType": resource_type, "id": resource_id}
        return self.request_json("PUT", f"/{resource_type}/{resource_id}", json=body)

    def delete(self, resource_type: str, resource_id: str) -> FhirResponse:
        return self.request_json("DELETE", f"/{resource_type}/{resource_id}", allow=(404, 410))


class OpenMrsClient(FhirClient):
    """OpenMRS: FHIR2 resources under /ws/fhir2/R4 plus the legacy REST API."""

    FHIR_PATH = "/ws/fhir2/R4"
    REST_PATH = "/ws/rest/v1"

    def __init__(self, app_url: str, username: str, password: str, *, timeout: float,
                 session: requests.Session | None = None):
        self.app_url = app_url.rstrip("/")
        super().__init__(self.app_url + self.FHIR_PATH, username, password,
                         timeout=timeout, system="openmrs", session=session)

    def ensure_identifier_type(self, name: str) -> str:
        """Return the uuid of the patient identifier type ``name``, creating it if needed."""
        path = f"{self.app_url}{self.REST_PATH}/patientidentifiertype"
        found = self.request_json("GET", path, params={"q": name}).body
        for result in found.get("results", []):
            if result.get("display") == name or result.get("name") == name:
                return result["uuid"]

        created = self.request_json(
            "POST",
            path,
            headers={"Content-Type": "application/json"},
            json={
                "name": name,
                "description": name,
                "required": False,
                "locationBehavior": "NOT_USED",
                "uniquenessBehavior": "Unique",
            },
        )
        logger.info("Created OpenMRS identifier type '%s'", name)
        return created.body.get("uuid", "")


class ChtClient(RestClient):
    """CHT REST API surface used for record submission and place lookup."""

    def create_person(self, person: dict[str, Any]) -> FhirResponse:
        return self.request_json("POST", "/api/v1/people", json=person)

    def submit_record(self, record: dict[str, Any]) -> FhirResponse:
        return self.request_json("POST", "/api/v2/records", json=record)

    def submit_bulk_docs(self, docs: dict[str, Any]) -> FhirResponse:
        return self.request_json("POST", "/medic/_bulk_docs", json=docs)

    def get_user(self, username: str) -> dict[str, Any]:
        return self.request_json("GET", f"/api/v2/users/{username}").body


def _next_link(bundle: dict[str, Any]) -> str | None:
    for link in bundle.get("link", []) or []:
        if link.get("relation") == "next" and link.get("url"):
            return link["url"]
    return None


def get_fhir_client() -> FhirClient:
    return FhirClient(
        settings.FHIR_URL,
        settings.FHIR_USERNAME,
        settings.FHIR_PASSWORD,
        timeout=settings.REQUEST_TIMEOUT_SECONDS,
    )


def get_openmrs_client() -> OpenMrsClient:
    return OpenMrsClient(
        settings.OPENMRS_URL,
        settings.OPENMRS_USERNAME,
        settings.OPENMRS_PASSWORD,
        timeout=settings.REQUEST_TIMEOUT_SECONDS,
    )


def get_cht_client() -> ChtClient:
    return ChtClient(
        settings.CHT_URL,
        settings.CHT_USERNAME,
        settings.CHT_PASSWORD,
        timeout=settings.REQUEST_TIMEOUT_SECONDS,
        system="cht",
    )
