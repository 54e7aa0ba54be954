"""
Declarative JSON schemas for the FHIR resources the mediator accepts.

Two registries map a resource type to its structural contract:

- INBOUND_SCHEMAS describe payloads arriving at the mediator boundary
  (CHT outbound push, operator requests).
- FHIR_SCHEMAS describe canonical resources read back from the FHIR store
  before they are written to OpenMRS.

Every identified resource carries exactly one identifier with system
"official"; that value is the cross-system correlation key.
"""

VALID_GENDERS = ("male", "female", "other", "unknown")

UUID_PATTERN = "^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"

_DRAFT = "https://json-schema.org/draft/2020-12/schema"


def _official_identifier(value_schema: dict | None = None, *, only: bool = False) -> dict:
    official = {
        "type": "object",
        "required": ["system", "value"],
        "properties": {
            "system": {"type": "string", "const": "official"},
            "value": value_schema or {"type": "string", "minLength": 1},
        },
    }
    if only:
        return {"type": "array", "minItems": 1, "maxItems": 1, "items": official}
    # Other identifiers (e.g. the OpenMRS id) may sit beside the official one.
    return {
        "type": "array",
        "items": {"type": "object", "required": ["value"]},
        "contains": official,
        "minContains": 1,
        "maxContains": 1,
    }


def _single(items: dict | None = None) -> dict:
    schema: dict = {"type": "array", "minItems": 1, "maxItems": 1}
    if items:
        schema["items"] = items
    return schema


_REFERENCE = {
    "type": "object",
    "required": ["reference"],
    "properties": {"reference": {"type": "string", "minLength": 1}},
}


ENCOUNTER_SCHEMA: dict = {
    "$schema": _DRAFT,
    "title": "Encounter (mediator payload)",
    "type": "object",
    "required": ["identifier", "status", "class", "type", "subject", "participant"],
    "properties": {
        "identifier": _official_identifier({"type": "string", "pattern": UUID_PATTERN}, only=True),
        "status": {"type": "string", "minLength": 1},
        "class": {},
        "type": _single(),
        "subject": _single(_REFERENCE),
        "participant": _single(),
    },
}


PATIENT_SCHEMA: dict = {
    "$schema": _DRAFT,
    "title": "Patient",
    "type": "object",
    "required": ["identifier", "name"],
    "properties": {
        "identifier": _official_identifier(),
        "name": {"type": "array", "minItems": 1},
        "gender": {"type": "string", "enum": list(VALID_GENDERS)},
        "birthDate": {"type": "string", "pattern": "^\\d{4}-\\d{2}-\\d{2}$"},
        "telecom": {"type": "array"},
    },
}


OBSERVATION_SCHEMA: dict = {
    "$schema": _DRAFT,
    "title": "Observation",
    "type": "object",
    "required": ["identifier", "status", "code", "subject"],
    "properties": {
        "identifier": _official_identifier(),
        "status": {
            "type": "string",
            "enum": ["registered", "preliminary", "final", "amended", "corrected",
                     "cancelled", "entered-in-error", "unknown"],
        },
        "code": {"type": "object"},
        "subject": _REFERENCE,
        "encounter": _REFERENCE,
    },
}


ENDPOINT_SCHEMA: dict = {
    "$schema": _DRAFT,
    "title": "Endpoint",
    "type": "object",
    "required": ["identifier", "status", "address", "payloadType"],
    "properties": {
        "identifier": _official_identifier(),
        "status": {
            "type": "string",
            "enum": ["active", "suspended", "error", "off", "entered-in-error", "test"],
        },
        "address": {"type": "string", "minLength": 1},
        "payloadType": {"type": "array", "minItems": 1},
    },
}


ORGANIZATION_SCHEMA: dict = {
    "$schema": _DRAFT,
    "title": "Organization",
    "type": "object",
    "required": ["identifier", "endpoint"],
    "properties": {
        "identifier": _official_identifier(),
        "name": {"type": "string"},
        "endpoint": {
            "type": "array",
            "minItems": 1,
            "items": {"anyOf": [_REFERENCE, {"type": "object", "required": ["identifier"]}]},
        },
    },
}


SERVICE_REQUEST_SCHEMA: dict = {
    "$schema": _DRAFT,
    "title": "ServiceRequest",
    "type": "object",
    "required": ["status", "intent", "subject", "requester"],
    "properties": {
        "status": {"type": "string", "minLength": 1},
        "intent": {"type": "string", "minLength": 1},
        "subject": _REFERENCE,
        "requester": _REFERENCE,
    },
}


SUBSCRIPTION_SCHEMA: dict = {
    "$schema": _DRAFT,
    "title": "Subscription",
    "type": "object",
    "required": ["resourceType", "status", "criteria", "channel"],
    "properties": {
        "resourceType": {"type": "string", "const": "Subscription"},
        "status": {"type": "string", "enum": ["requested", "active", "error", "off"]},
        "criteria": {"type": "string", "minLength": 1},
        "channel": {
            "type": "object",
            "required": ["type", "endpoint"],
            "properties": {
                "type": {"type": "string", "const": "rest-hook"},
                "endpoint": {"type": "string", "minLength": 1},
                "payload": {"type": "string"},
                "header": {"type": "array", "items": {"type": "string"}},
            },
        },
    },
}


# Canonical forms stored in the FHIR store: subject is a single reference
# object rather than the one-element array of the inbound payload.
FHIR_ENCOUNTER_SCHEMA: dict = {
    "$schema": _DRAFT,
    "title": "Encounter (FHIR)",
    "type": "object",
    "required": ["resourceType", "identifier", "status", "class", "subject"],
    "properties": {
        "resourceType": {"type": "string", "const": "Encounter"},
        "identifier": _official_identifier(),
        "status": {"type": "string", "minLength": 1},
        "subject": _REFERENCE,
    },
}


def _canonical(schema: dict, resource_type: str) -> dict:
    canonical = dict(schema)
    canonical["required"] = ["resourceType", *schema["required"]]
    canonical["properties"] = {
        "resourceType": {"type": "string", "const": resource_type},
        **schema["properties"],
    }
    return canonical


INBOUND_SCHEMAS: dict[str, dict] = {
    "Encounter": ENCOUNTER_SCHEMA,
    "Patient": PATIENT_SCHEMA,
    "Observation": OBSERVATION_SCHEMA,
    "Endpoint": ENDPOINT_SCHEMA,
    "Organization": ORGANIZATION_SCHEMA,
    "ServiceRequest": SERVICE_REQUEST_SCHEMA,
    "Subscription": SUBSCRIPTION_SCHEMA,
}

FHIR_SCHEMAS: dict[str, dict] = {
    "Patient": _canonical(PATIENT_SCHEMA, "Patient"),
    "Encounter": FHIR_ENCOUNTER_SCHEMA,
    "Observation": _canonical(OBSERVATION_SCHEMA, "Observation"),
}
