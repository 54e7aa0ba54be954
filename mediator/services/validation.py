"""
Resource validation.

Each resource type maps to a JSON schema (see mediator.schemas.fhir) that is
evaluated uniformly. Resources forwarded to the FHIR store as-is are also
checked against their FHIR R4B model from fhir.resources. Validation never
repairs a payload and always reports every failing field, not just the
first one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import jsonschema
from fhir.resources.R4B.endpoint import Endpoint
from fhir.resources.R4B.organization import Organization
from fhir.resources.R4B.resource import Resource
from fhir.resources.R4B.servicerequest import ServiceRequest
from fhir.resources.R4B.subscription import Subscription
from jsonschema.validators import validator_for
from pydantic import ValidationError as ModelValidationError

from mediator.exceptions import ValidationError
from mediator.schemas.fhir import INBOUND_SCHEMAS

# Resources the mediator forwards without transforming them.
FHIR_MODELS: dict[str, type[Resource]] = {
    "Endpoint": Endpoint,
    "Organization": Organization,
    "ServiceRequest": ServiceRequest,
    "Subscription": Subscription,
}


@dataclass
class ValidationResult:
    valid: bool
    errors: list[dict[str, str]] = field(default_factory=list)


def _field_path(error: jsonschema.ValidationError) -> str:
    path = list(error.absolute_path)
    # "required" errors point at the parent object; name the missing field.
    if error.validator == "required" and isinstance(error.validator_value, list):
        missing = [name for name in error.validator_value if f"'{name}'" in error.message]
        if missing:
            path.append(missing[0])
    return ".".join(str(part) for part in path) or "$"


def validate_fhir_model(resource_type: str, payload: dict[str, Any]) -> list[dict[str, str]]:
    """Check ``payload`` against its FHIR R4B model; types without a model pass."""
    model = FHIR_MODELS.get(resource_type)
    if model is None:
        return []
    try:
        model(**payload)
    except ModelValidationError as exc:
        return [
            {"field": ".".join(str(part) for part in error["loc"]) or "$", "message": error["msg"]}
            for error in exc.errors()
        ]
    return []


def validate(
    resource_type: str,
    payload: Any,
    schemas: dict[str, dict[str, Any]] = INBOUND_SCHEMAS,
) -> ValidationResult:
    """Check ``payload`` against the contract registered for ``resource_type``."""
    schema = schemas.get(resource_type)
    if schema is None:
        return ValidationResult(
            valid=False,
            errors=[{"field": "resourceType", "message": f"Unsupported resource type '{resource_type}'"}],
        )
    if not isinstance(payload, dict):
        return ValidationResult(
            valid=False,
            errors=[{"field": "$", "message": f"Expected a JSON object, got {type(payload).__name__}"}],
        )

    declared = payload.get("resourceType")
    errors: list[dict[str, str]] = []
    if declared is not None and declared != resource_type:
        errors.append(
            {"field": "resourceType", "message": f"Expected '{resource_type}', got '{declared}'"}
        )

    validator_cls = validator_for(schema, default=jsonschema.Draft7Validator)
    validator = validator_cls(schema)
    for error in sorted(validator.iter_errors(payload), key=lambda e: [str(p) for p in e.absolute_path]):
        errors.append({"field": _field_path(error), "message": error.message})

    for error in validate_fhir_model(resource_type, payload):
        if error not in errors:
            errors.append(error)

    return ValidationResult(valid=not errors, errors=errors)


def ensure_valid(
    resource_type: str,
    payload: Any,
    schemas: dict[str, dict[str, Any]] = INBOUND_SCHEMAS,
) -> None:
    """Raise ValidationError listing every failing field when ``payload`` is invalid."""
    result = validate(resource_type, payload, schemas)
    if not result.valid:
        raise ValidationError(f"Invalid {resource_type} resource", details=result.errors)
