"""
Workflow tests against running CHT, FHIR store, OpenMRS and mediator instances.

Skipped unless MEDIATOR_LIVE_TESTS=1. Propagation between the systems is
eventually consistent, so every check polls until it holds or times out.
"""

import os
import time
import uuid

import pytest

from mediator.config import settings
from mediator.services.clients import RestClient, get_cht_client, get_fhir_client, get_openmrs_client

pytestmark = [
    pytest.mark.live,
    pytest.mark.skipif(os.getenv("MEDIATOR_LIVE_TESTS") != "1", reason="set MEDIATOR_LIVE_TESTS=1 to run"),
]

MEDIATOR_URL = os.getenv("MEDIATOR_URL", "http://localhost:6000/mediator")
CALLBACK = "https://interop.free.beeceptor.com/callback"


def _eventually(check, timeout=30.0, interval=2.0):
    deadline = time.monotonic() + timeout
    while True:
        value = check()
        if value or time.monotonic() > deadline:
            return value
        time.sleep(interval)


@pytest.fixture(scope="module")
def mediator():
    return RestClient(
        MEDIATOR_URL,
        settings.FHIR_USERNAME,
        settings.FHIR_PASSWORD,
        timeout=settings.REQUEST_TIMEOUT_SECONDS,
        system="mediator",
    )


@pytest.fixture(scope="module")
def cht():
    return get_cht_client()


@pytest.fixture(scope="module")
def fhir():
    return get_fhir_client()


@pytest.fixture(scope="module")
def openmrs():
    return get_openmrs_client()


@pytest.fixture(scope="module")
def place_id(cht):
    return cht.get_user("maria")["place"][0]["_id"]


def _create_cht_patient(cht, place_id, name):
    response = cht.create_person(
        {
            "name": name,
            "type": "person",
            "sex": "female",
            "date_of_birth": "1990-01-15",
            "phone": "+2548277217095",
            "place": place_id,
        }
    )
    assert response.body.get("ok") is True
    return response.body["id"]


def test_mediator_is_up(mediator):
    assert mediator.request_json("GET", "/").body["status"] == "success"


def test_openmrs_workflow(mediator, cht, fhir, openmrs, place_id):
    patient_id = _create_cht_patient(cht, place_id, "CHTOpenMRS Patient")

    assert _eventually(lambda: fhir.search("Patient", identifier=patient_id)["total"] == 1)

    sync = mediator.request_json("GET", "/openmrs/sync")
    assert sync.status_code == 200

    found = _eventually(lambda: openmrs.search("Patient", identifier=patient_id)["total"] == 1)
    assert found
    openmrs_id = openmrs.search_by_identifier("Patient", patient_id)[0]["id"]
    linked = fhir.read("Patient", patient_id)
    assert any(ident.get("value") == openmrs_id for ident in linked["identifier"])

    # A second sync must not duplicate anything.
    second = mediator.request_json("GET", "/openmrs/sync").body
    assert all(counts["created"] == 0 for counts in second["counts"].values())
    assert openmrs.search("Patient", identifier=patient_id)["total"] == 1


def test_ltfu_workflow(mediator, cht, fhir, place_id):
    endpoint_identifier = f"test-endpoint-{uuid.uuid4().hex[:8]}"
    organization_identifier = f"test-org-{uuid.uuid4().hex[:8]}"

    endpoint = mediator.request_json(
        "POST",
        "/endpoint",
        json={
            "resourceType": "Endpoint",
            "identifier": [{"system": "official", "value": endpoint_identifier}],
            "status": "active",
            "connectionType": {
                "system": "http://terminology.hl7.org/CodeSystem/endpoint-connection-type",
                "code": "hl7-fhir-rest",
            },
            "address": CALLBACK,
            "payloadType": [{"text": "application/json"}],
        },
    )
    assert endpoint.status_code == 201

    organization = mediator.request_json(
        "POST",
        "/organization",
        json={
            "resourceType": "Organization",
            "identifier": [{"system": "official", "value": organization_identifier}],
            "name": "Test Organization",
            "endpoint": [{"reference": f"Endpoint/{endpoint.body['id']}"}],
        },
    )
    assert organization.status_code == 201

    patient_id = _create_cht_patient(cht, place_id, "LTFU patient")
    assert _eventually(lambda: fhir.search("Patient", identifier=patient_id)["total"] == 1)

    service_request = mediator.request_json(
        "POST",
        "/service-request",
        json={
            "resourceType": "ServiceRequest",
            "status": "active",
            "intent": "order",
            "subject": {"reference": f"Patient/{patient_id}"},
            "requester": {"reference": f"Organization/{organization_identifier}"},
        },
    )
    assert service_request.status_code == 201
    assert service_request.body["criteria"] == f"Encounter?identifier={patient_id}"

    task_report = mediator.request_json(
        "POST",
        "/encounter",
        json={
            "resourceType": "Encounter",
            "identifier": [{"system": "official", "value": str(uuid.uuid4())}],
            "status": "finished",
            "class": {"code": "AMB"},
            "type": [{"text": "Client follow up"}],
            "subject": [{"reference": f"Patient/{patient_id}"}],
            "participant": [{"type": [{"text": "Community health worker"}]}],
        },
    )
    assert task_report.status_code == 201

    assert _eventually(lambda: fhir.search("Encounter", subject=f"Patient/{patient_id}")["total"] == 1)
