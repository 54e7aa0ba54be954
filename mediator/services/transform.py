"""
Resource transformation.

Pure, deterministic mappings between the representations each system uses:

- inbound (CHT outbound push) payloads -> canonical FHIR store resources
- FHIR store resources -> OpenMRS FHIR2 resources
- patient id + callback URL -> FHIR Subscription

Cross-system correlation always goes through the official identifier; the
FHIR store logical id of a canonical resource is that same value.
"""

from __future__ import annotations

import copy
from typing import Any, Callable

from mediator.exceptions import InvalidArgument, MissingReference, ValidationError

OFFICIAL_SYSTEM = "official"
OPENMRS_SYSTEM = "openmrs"

CHT_PATIENT_ID_TYPE = "CHT Patient ID"
CHT_DOCUMENT_ID_TYPE = "CHT Document ID"

SERVER_FIELDS = ("id", "meta", "text")

# (resource_type, reference) -> rewritten reference, or None when unknown
ReferenceResolver = Callable[[str, str], "str | None"]


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------


def official_identifier(resource: dict[str, Any]) -> str:
    """Return the single official identifier value of ``resource``."""
    values = [
        ident.get("value")
        for ident in resource.get("identifier") or []
        if ident.get("system") == OFFICIAL_SYSTEM and ident.get("value")
    ]
    if len(values) != 1:
        raise ValidationError(
            f"{resource.get('resourceType', 'Resource')} must carry exactly one official identifier",
            details=[{"field": "identifier", "message": f"found {len(values)} official identifiers"}],
        )
    return values[0]


def add_identifier(resource: dict[str, Any], system: str, value: str) -> dict[str, Any]:
    """Copy of ``resource`` carrying ``{system, value}``; unchanged if already present."""
    result = copy.deepcopy(resource)
    identifiers = result.setdefault("identifier", [])
    if not any(i.get("system") == system and i.get("value") == value for i in identifiers):
        identifiers.append({"system": system, "value": value})
    return result


def strip_server_fields(resource: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in resource.items() if key not in SERVER_FIELDS}


def reference_id(reference: str) -> str:
    """``"Patient/abc"`` -> ``"abc"``."""
    return reference.rstrip("/").rsplit("/", 1)[-1]


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------


def to_fhir_subscription(patient_id: str, callback_url: str) -> dict[str, Any]:
    """Build the Subscription that notifies ``callback_url`` of the patient's Encounters."""
    if not patient_id or not isinstance(patient_id, str):
        raise InvalidArgument(
            "Invalid 'patientId' was expecting type of 'string' "
            f"but received '{type(patient_id).__name__}'"
        )
    if not callback_url or not isinstance(callback_url, str):
        raise InvalidArgument(
            "Invalid 'callbackUrl' was expecting type of 'string' "
            f"but received '{type(callback_url).__name__}'"
        )

    return {
        "resourceType": "Subscription",
        "id": patient_id,
        "status": "requested",
        "reason": "Follow up request for patient",
        "criteria": f"Encounter?identifier={patient_id}",
        "channel": {
            "type": "rest-hook",
            "endpoint": callback_url,
            "payload": "application/fhir+json",
            "header": ["Content-Type: application/fhir+json"],
        },
    }


# ---------------------------------------------------------------------------
# Inbound payload -> FHIR store
# ---------------------------------------------------------------------------


def _canonical(resource_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    resource = strip_server_fields(copy.deepcopy(payload))
    resource["resourceType"] = resource_type
    resource["id"] = official_identifier(payload)
    return resource


def to_fhir_patient(payload: dict[str, Any]) -> dict[str, Any]:
    return _canonical("Patient", payload)


def to_fhir_encounter(payload: dict[str, Any]) -> dict[str, Any]:
    # Inbound encounters carry subject as a one-element array.
    resource = _canonical("Encounter", payload)
    subject = payload.get("subject")
    if isinstance(subject, list):
        resource["subject"] = copy.deepcopy(subject[0])
    return resource


def to_fhir_observation(payload: dict[str, Any]) -> dict[str, Any]:
    return _canonical("Observation", payload)


# ---------------------------------------------------------------------------
# FHIR store -> OpenMRS
# ---------------------------------------------------------------------------


def _openmrs_identifier(value: str, type_name: str) -> dict[str, Any]:
    return {
        "system": OFFICIAL_SYSTEM,
        "use": "official",
        "type": {"text": type_name},
        "value": value,
    }


def _rewrite(resolve: ReferenceResolver, resource_type: str, reference: dict[str, Any],
             field: str) -> dict[str, Any]:
    ref = reference.get("reference", "")
    target = resolve(resource_type, ref)
    if not target:
        raise MissingReference(
            f"Cannot resolve {field} reference '{ref}' in OpenMRS",
            details={"field": field, "reference": ref},
        )
    return {"reference": target}


def to_openmrs_patient(patient: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {
        "resourceType": "Patient",
        "identifier": [_openmrs_identifier(official_identifier(patient), CHT_PATIENT_ID_TYPE)],
    }
    for key in ("name", "gender", "birthDate", "telecom", "address", "active"):
        if key in patient:
            result[key] = copy.deepcopy(patient[key])
    return result


def to_openmrs_encounter(encounter: dict[str, Any], resolve: ReferenceResolver) -> dict[str, Any]:
    result: dict[str, Any] = {
        "resourceType": "Encounter",
        "identifier": [_openmrs_identifier(official_identifier(encounter), CHT_DOCUMENT_ID_TYPE)],
        "status": encounter["status"],
        "class": copy.deepcopy(encounter["class"]),
        "subject": _rewrite(resolve, "Patient", encounter["subject"], "subject"),
    }
    for key in ("type", "period"):
        if key in encounter:
            result[key] = copy.deepcopy(encounter[key])
    return result


def to_openmrs_observation(observation: dict[str, Any], resolve: ReferenceResolver) -> dict[str, Any]:
    result: dict[str, Any] = {
        "resourceType": "Observation",
        "identifier": [_openmrs_identifier(official_identifier(observation), CHT_DOCUMENT_ID_TYPE)],
        "status": observation["status"],
        "code": copy.deepcopy(observation["code"]),
        "subject": _rewrite(resolve, "Patient", observation["subject"], "subject"),
    }
    if "encounter" in observation:
        result["encounter"] = _rewrite(resolve, "Encounter", observation["encounter"], "encounter")
    for key, value in observation.items():
        if key.startswith("value") or key in ("effectiveDateTime", "category", "issued"):
            result[key] = copy.deepcopy(value)
    return result


OPENMRS_TRANSFORMS = {
    "Encounter": to_openmrs_encounter,
    "Observation": to_openmrs_observation,
}

FHIR_TRANSFORMS = {
    "Patient": to_fhir_patient,
    "Encounter": to_fhir_encounter,
    "Observation": to_fhir_observation,
}
