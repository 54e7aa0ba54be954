"""Tests for the per-item sync pipelines and keyed upsert – no network required."""

import pytest

from conftest import make_encounter, make_observation, make_patient
from mediator.exceptions import ConflictOnUpsert, UpstreamUnavailable
from mediator.sync.pipeline import (
    CREATED,
    FAILED,
    SKIPPED,
    UPDATED,
    build_inbound_pipeline,
    build_openmrs_pipeline,
    run_item,
    upsert,
)

ENCOUNTER_ID = "3f2b6c1e-8a4d-4e7b-9c0a-5d1e2f3a4b5c"


def _inbound(fhir, resource_type, payload):
    return run_item(build_inbound_pipeline(resource_type, fhir), resource_type, {"payload": payload})


def _to_openmrs(fhir, openmrs, resource_type, resource):
    return run_item(
        build_openmrs_pipeline(resource_type, fhir, openmrs), resource_type, {"payload": resource}
    )


# ---------------------------------------------------------------------------
# upsert
# ---------------------------------------------------------------------------


def test_upsert_creates_then_skips_then_updates(fhir):
    patient = {**make_patient("p-1"), "id": "p-1"}

    outcome, stored = upsert(fhir, "Patient", patient, "p-1")
    assert outcome == CREATED
    assert stored["id"] == "p-1"

    outcome, _ = upsert(fhir, "Patient", patient, "p-1")
    assert outcome == SKIPPED

    outcome, stored = upsert(fhir, "Patient", {**patient, "gender": "male"}, "p-1")
    assert outcome == UPDATED
    assert fhir.count("Patient") == 1
    assert fhir.read("Patient", "p-1")["gender"] == "male"


def test_upsert_without_logical_id_posts(openmrs):
    outcome, stored = upsert(openmrs, "Patient", make_patient("p-1"), "p-1")
    assert outcome == CREATED
    assert stored["id"].startswith("omrs-")
    assert ("POST", "Patient") in openmrs.calls


def test_upsert_keeps_identifiers_attached_by_other_systems(fhir):
    fhir.put({**make_patient("p-1"), "id": "p-1", "identifier": [
        {"system": "official", "value": "p-1"},
        {"system": "openmrs", "value": "omrs-1"},
    ]})

    outcome, stored = upsert(fhir, "Patient", {**make_patient("p-1"), "id": "p-1"}, "p-1")

    assert outcome == SKIPPED
    assert {"system": "openmrs", "value": "omrs-1"} in stored["identifier"]


def test_upsert_applies_fields_removed_at_source(fhir):
    patient = {**make_patient("p-1"), "id": "p-1"}
    upsert(fhir, "Patient", patient, "p-1")

    without_phone = {key: value for key, value in patient.items() if key != "telecom"}
    outcome, stored = upsert(fhir, "Patient", without_phone, "p-1")

    assert outcome == UPDATED
    assert "telecom" not in stored
    assert "telecom" not in fhir.read("Patient", "p-1")


def test_inbound_push_without_a_field_updates_store(fhir):
    assert _inbound(fhir, "Patient", make_patient("p-1")).outcome == CREATED

    payload = make_patient("p-1")
    del payload["telecom"]
    result = _inbound(fhir, "Patient", payload)

    assert result.outcome == UPDATED
    assert "telecom" not in fhir.read("Patient", "p-1")


def test_removal_keeps_linked_identifiers(fhir):
    fhir.put({**make_patient("p-1"), "id": "p-1", "identifier": [
        {"system": "official", "value": "p-1"},
        {"system": "openmrs", "value": "omrs-1"},
    ]})
    payload = {**make_patient("p-1"), "id": "p-1"}
    del payload["birthDate"]

    outcome, stored = upsert(fhir, "Patient", payload, "p-1")

    assert outcome == UPDATED
    assert "birthDate" not in stored
    assert {"system": "openmrs", "value": "omrs-1"} in stored["identifier"]


def test_upsert_refuses_ambiguous_identifier(fhir):
    fhir.put(make_patient("dup"))
    fhir.put(make_patient("dup"))
    with pytest.raises(ConflictOnUpsert) as excinfo:
        upsert(fhir, "Patient", make_patient("dup"), "dup")
    assert excinfo.value.status_code == 409


# ---------------------------------------------------------------------------
# inbound pipeline (CHT -> FHIR store)
# ---------------------------------------------------------------------------


def test_inbound_encounter_is_canonicalised_and_stored(fhir):
    result = _inbound(fhir, "Encounter", make_encounter("p-1", ENCOUNTER_ID))

    assert result.outcome == CREATED
    assert result.state == "upserted"
    stored = fhir.read("Encounter", ENCOUNTER_ID)
    assert stored["subject"] == {"reference": "Patient/p-1"}


def test_inbound_invalid_payload_writes_nothing(fhir):
    result = _inbound(fhir, "Encounter", make_encounter("p-1", identifier=[]))

    assert result.outcome == FAILED
    assert result.step == "validate"
    assert result.error_kind == "ValidationError"
    assert result.status_code == 400
    assert any(error["field"] == "identifier" for error in result.details)
    assert fhir.calls == []


def test_inbound_is_idempotent(fhir):
    payload = make_patient("p-1")
    assert _inbound(fhir, "Patient", payload).outcome == CREATED
    assert _inbound(fhir, "Patient", payload).outcome == SKIPPED
    assert fhir.count("Patient") == 1


def test_upstream_failure_is_reported_as_retryable(fhir):
    fhir.fail("GET", "Patient", UpstreamUnavailable("down", system="fhir", timeout=True))

    result = _inbound(fhir, "Patient", make_patient("p-1"))

    assert result.outcome == FAILED
    assert result.state == "failed"
    assert result.step == "upsert"
    assert result.retryable
    assert result.status_code == 504


# ---------------------------------------------------------------------------
# OpenMRS pipeline (FHIR store -> OpenMRS)
# ---------------------------------------------------------------------------


def test_patient_sync_links_openmrs_id_back_to_fhir(fhir, openmrs):
    patient = fhir.put({**make_patient("p-1"), "id": "p-1"})

    result = _to_openmrs(fhir, openmrs, "Patient", patient)

    assert result.outcome == CREATED
    openmrs_patient = openmrs.search_by_identifier("Patient", "p-1")[0]
    linked = fhir.read("Patient", "p-1")
    assert {"system": "openmrs", "value": openmrs_patient["id"]} in linked["identifier"]


def test_encounter_sync_requires_patient_in_openmrs(fhir, openmrs):
    fhir.put({**make_patient("p-1"), "id": "p-1"})
    _inbound(fhir, "Encounter", make_encounter("p-1", ENCOUNTER_ID))
    encounter = fhir.read("Encounter", ENCOUNTER_ID)

    result = _to_openmrs(fhir, openmrs, "Encounter", encounter)

    assert result.outcome == FAILED
    assert result.step == "transform"
    assert result.error_kind == "MissingReference"
    assert openmrs.count("Encounter") == 0


def test_observation_sync_rewrites_references(fhir, openmrs):
    patient = fhir.put({**make_patient("p-1"), "id": "p-1"})
    _inbound(fhir, "Encounter", make_encounter("p-1", ENCOUNTER_ID))
    _inbound(fhir, "Observation", make_observation("p-1", ENCOUNTER_ID, "o-1"))

    _to_openmrs(fhir, openmrs, "Patient", patient)
    _to_openmrs(fhir, openmrs, "Encounter", fhir.read("Encounter", ENCOUNTER_ID))
    result = _to_openmrs(fhir, openmrs, "Observation", fhir.read("Observation", "o-1"))

    assert result.outcome == CREATED
    observation = openmrs.search_by_identifier("Observation", "o-1")[0]
    omrs_patient = openmrs.search_by_identifier("Patient", "p-1")[0]
    omrs_encounter = openmrs.search_by_identifier("Encounter", ENCOUNTER_ID)[0]
    assert observation["subject"] == {"reference": f"Patient/{omrs_patient['id']}"}
    assert observation["encounter"] == {"reference": f"Encounter/{omrs_encounter['id']}"}


def test_callback_style_item_is_resolved_from_store(fhir, openmrs):
    fhir.put({**make_patient("p-1"), "id": "p-1"})

    result = run_item(
        build_openmrs_pipeline("Patient", fhir, openmrs), "Patient", {"identifier": "p-1"}
    )

    assert result.outcome == CREATED


def test_callback_style_item_missing_from_store_fails_at_resolve(fhir, openmrs):
    result = run_item(
        build_openmrs_pipeline("Patient", fhir, openmrs), "Patient", {"identifier": "ghost"}
    )
    assert result.outcome == FAILED
    assert result.step == "resolve"
    assert result.state == "failed"
