"""Shared fixtures: in-memory stand-ins for the FHIR store and OpenMRS, and a test database."""

from __future__ import annotations

import copy
import itertools
import uuid
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mediator.main import app
from mediator.models.database import Base, get_db
from mediator.services.clients import FhirResponse, get_fhir_client, get_openmrs_client


class FakeFhirServer:
    """Implements the FhirClient surface against dicts, with optional failure injection."""

    def __init__(self, system: str = "fhir", id_prefix: str | None = None):
        self.system = system
        self.resources: dict[str, dict[str, dict[str, Any]]] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], list[Exception]] = {}
        self.identifier_types: dict[str, str] = {}
        self._ids = itertools.count(1)
        self._id_prefix = id_prefix

    # -- test helpers -------------------------------------------------------

    def fail(self, method: str, resource_type: str, exc: Exception, times: int = 1) -> None:
        self.failures.setdefault((method, resource_type), []).extend([exc] * times)

    def put(self, resource: dict[str, Any]) -> dict[str, Any]:
        stored = copy.deepcopy(resource)
        stored.setdefault("id", self._new_id())
        self.resources.setdefault(stored["resourceType"], {})[stored["id"]] = stored
        return stored

    def all(self, resource_type: str) -> list[dict[str, Any]]:
        return list(self.resources.get(resource_type, {}).values())

    def count(self, resource_type: str) -> int:
        return len(self.resources.get(resource_type, {}))

    # -- FhirClient surface -------------------------------------------------

    def _record(self, method: str, resource_type: str) -> None:
        self.calls.append((method, resource_type))
        pending = self.failures.get((method, resource_type))
        if pending:
            raise pending.pop(0)

    def _new_id(self) -> str:
        if self._id_prefix:
            return f"{self._id_prefix}-{next(self._ids)}"
        return str(uuid.uuid4())

    def search(self, resource_type: str, **params: str) -> dict[str, Any]:
        self._record("GET", resource_type)
        matches = []
        for resource in self.all(resource_type):
            if "identifier" in params and not any(
                ident.get("value") == params["identifier"] for ident in resource.get("identifier", [])
            ):
                continue
            if "subject" in params and (resource.get("subject") or {}).get("reference") != params["subject"]:
                continue
            matches.append(copy.deepcopy(resource))
        return {
            "resourceType": "Bundle",
            "type": "searchset",
            "total": len(matches),
            "entry": [{"resource": resource} for resource in matches],
        }

    def search_by_identifier(self, resource_type: str, identifier: str) -> list[dict[str, Any]]:
        return [entry["resource"] for entry in self.search(resource_type, identifier=identifier)["entry"]]

    def search_all(self, resource_type: str, **params: str) -> list[dict[str, Any]]:
        return [entry["resource"] for entry in self.search(resource_type, **params)["entry"]]

    def read(self, resource_type: str, resource_id: str) -> dict[str, Any] | None:
        self._record("GET", resource_type)
        resource = self.resources.get(resource_type, {}).get(resource_id)
        return copy.deepcopy(resource) if resource else None

    def create(self, resource_type: str, resource: dict[str, Any]) -> FhirResponse:
        self._record("POST", resource_type)
        body = {**copy.deepcopy(resource), "resourceType": resource_type, "id": self._new_id()}
        self.resources.setdefault(resource_type, {})[body["id"]] = body
        return FhirResponse(201, copy.deepcopy(body))

    def update(self, resource_type: str, resource_id: str, resource: dict[str, Any]) -> FhirResponse:
        self._record("PUT", resource_type)
        existed = resource_id in self.resources.get(resource_type, {})
        body = {**copy.deepcopy(resource), "resourceType": resource_type, "id": resource_id}
        self.resources.setdefault(resource_type, {})[resource_id] = body
        return FhirResponse(200 if existed else 201, copy.deepcopy(body))

    def delete(self, resource_type: str, resource_id: str) -> FhirResponse:
        self._record("DELETE", resource_type)
        if self.resources.get(resource_type, {}).pop(resource_id, None) is None:
            return FhirResponse(404, {})
        return FhirResponse(200, {})

    def ensure_identifier_type(self, name: str) -> str:
        self._record("POST", "patientidentifiertype")
        return self.identifier_types.setdefault(name, str(uuid.uuid4()))


# ---------------------------------------------------------------------------
# Resource factories
# ---------------------------------------------------------------------------


def make_patient(patient_id: str | None = None, **overrides: Any) -> dict[str, Any]:
    patient_id = patient_id or str(uuid.uuid4())
    patient = {
        "resourceType": "Patient",
        "identifier": [{"system": "official", "value": patient_id}],
        "name": [{"given": ["CHTOpenMRS"], "family": "Patient"}],
        "gender": "female",
        "birthDate": "1990-01-15",
        "telecom": [{"system": "phone", "value": "+2548277217095"}],
    }
    patient.update(overrides)
    return patient


def make_encounter(patient_id: str, encounter_id: str | None = None, **overrides: Any) -> dict[str, Any]:
    """Inbound (CHT outbound push) Encounter shape."""
    encounter = {
        "resourceType": "Encounter",
        "identifier": [{"system": "official", "value": encounter_id or str(uuid.uuid4())}],
        "status": "finished",
        "class": {"system": "http://terminology.hl7.org/CodeSystem/v3-ActCode", "code": "AMB"},
        "type": [{"text": "Community health worker visit"}],
        "subject": [{"reference": f"Patient/{patient_id}"}],
        "participant": [{"type": [{"text": "Community health worker"}]}],
        "period": {"start": "2024-03-01T10:00:00Z", "end": "2024-03-01T10:30:00Z"},
    }
    encounter.update(overrides)
    return encounter


def make_observation(patient_id: str, encounter_id: str, observation_id: str | None = None,
                     **overrides: Any) -> dict[str, Any]:
    observation = {
        "resourceType": "Observation",
        "identifier": [{"system": "official", "value": observation_id or str(uuid.uuid4())}],
        "status": "final",
        "code": {"coding": [{"system": "http://loinc.org", "code": "29463-7", "display": "Body weight"}]},
        "subject": {"reference": f"Patient/{patient_id}"},
        "encounter": {"reference": f"Encounter/{encounter_id}"},
        "valueQuantity": {"value": 62.5, "unit": "kg"},
        "effectiveDateTime": "2024-03-01T10:05:00Z",
    }
    observation.update(overrides)
    return observation


def make_endpoint(identifier: str = "test-endpoint", **overrides: Any) -> dict[str, Any]:
    endpoint = {
        "resourceType": "Endpoint",
        "identifier": [{"system": "official", "value": identifier}],
        "status": "active",
        "connectionType": {"system": "http://terminology.hl7.org/CodeSystem/endpoint-connection-type",
                           "code": "hl7-fhir-rest"},
        "address": "https://interop.free.beeceptor.com/callback",
        "payloadType": [{"text": "application/json"}],
    }
    endpoint.update(overrides)
    return endpoint


def make_organization(identifier: str = "test-org", endpoint_ref: dict | None = None,
                      **overrides: Any) -> dict[str, Any]:
    organization = {
        "resourceType": "Organization",
        "identifier": [{"system": "official", "value": identifier}],
        "name": "Test Organization",
        "endpoint": [endpoint_ref or {"reference": "Endpoint/1"}],
    }
    organization.update(overrides)
    return organization


def make_service_request(patient_id: str, organization: str = "test-org", **overrides: Any) -> dict[str, Any]:
    request = {
        "resourceType": "ServiceRequest",
        "status": "active",
        "intent": "order",
        "subject": {"reference": f"Patient/{patient_id}"},
        "requester": {"reference": f"Organization/{organization}"},
    }
    request.update(overrides)
    return request


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fhir():
    return FakeFhirServer("fhir")


@pytest.fixture
def openmrs():
    return FakeFhirServer("openmrs", id_prefix="omrs")


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSession = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def client(fhir, openmrs, db_session):
    app.dependency_overrides[get_fhir_client] = lambda: fhir
    app.dependency_overrides[get_openmrs_client] = lambda: openmrs
    app.dependency_overrides[get_db] = lambda: db_session
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()
