"""
Per-item sync pipelines.

Every item runs resolve -> validate -> transform -> upsert strictly in
sequence. Two directions are supported:

- inbound: a CHT outbound-push payload becomes a canonical FHIR store resource
- openmrs: a FHIR store resource is pushed into OpenMRS

Upserts are keyed by the official identifier, so re-running a pipeline on an
unchanged source creates nothing new.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from mediator.exceptions import ConflictOnUpsert, MediatorError, MissingReference
from mediator.schemas.fhir import FHIR_SCHEMAS, INBOUND_SCHEMAS
from mediator.services.clients import FhirClient
from mediator.services.transform import (
    FHIR_TRANSFORMS,
    OPENMRS_SYSTEM,
    OPENMRS_TRANSFORMS,
    add_identifier,
    official_identifier,
    reference_id,
    strip_server_fields,
    to_openmrs_patient,
)
from mediator.services.validation import ensure_valid
from mediator.sync.dag import DAG, ItemState

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class SyncItemResult:
    resource_type: str
    identifier: str | None
    state: str
    outcome: str
    step: str | None = None
    error: str | None = None
    error_kind: str | None = None
    retryable: bool = False
    attempts: int = 1
    resource_id: str | None = None
    details: Any = None
    status_code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_type": self.resource_type,
            "identifier": self.identifier,
            "state": self.state,
            "outcome": self.outcome,
            "step": self.step,
            "error": self.error,
            "error_kind": self.error_kind,
            "retryable": self.retryable,
            "attempts": self.attempts,
            "resource_id": self.resource_id,
            "details": self.details,
        }


# ---------------------------------------------------------------------------
# Upsert
# ---------------------------------------------------------------------------


def _comparable(resource: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in strip_server_fields(resource).items() if key != "resourceType"}


def same_content(desired: dict[str, Any], existing: dict[str, Any]) -> bool:
    """
    True when the stored resource already equals the desired one, server
    fields aside. A field dropped at the source counts as a difference.
    """
    return _comparable(desired) == _comparable(existing)


def keep_linked_identifiers(resource: dict[str, Any], existing: dict[str, Any]) -> dict[str, Any]:
    """Carry over identifiers other systems attached downstream (e.g. the OpenMRS id)."""
    identifiers = list(resource.get("identifier") or [])
    systems = {ident.get("system") for ident in identifiers}
    for ident in existing.get("identifier") or []:
        if ident.get("system") not in systems and ident not in identifiers:
            identifiers.append(ident)
    return {**resource, "identifier": identifiers}


def upsert(
    client: FhirClient,
    resource_type: str,
    resource: dict[str, Any],
    identifier: str,
) -> tuple[str, dict[str, Any]]:
    """
    Create-if-absent / update-if-present, keyed by official identifier.

    Resources carrying a logical id are created with PUT so the id is kept;
    the rest are POSTed and get a server id. Returns (outcome, stored resource).
    """
    matches = client.search_by_identifier(resource_type, identifier)
    if len(matches) > 1:
        raise ConflictOnUpsert(
            f"{len(matches)} {resource_type} resources in {client.system} share identifier '{identifier}'",
            details={"resource_type": resource_type, "identifier": identifier, "system": client.system},
        )

    if not matches:
        if resource.get("id"):
            stored = client.update(resource_type, resource["id"], resource).body
        else:
            stored = client.create(resource_type, resource).body
        return CREATED, stored or resource

    existing = matches[0]
    resource = keep_linked_identifiers(resource, existing)
    if same_content(resource, existing):
        return SKIPPED, existing
    stored = client.update(resource_type, existing["id"], resource).body
    return UPDATED, stored or {**resource, "id": existing["id"]}


# ---------------------------------------------------------------------------
# Reference resolution (FHIR store ids -> OpenMRS ids)
# ---------------------------------------------------------------------------


class OpenMrsReferenceResolver:
    """Map a FHIR store reference to the OpenMRS resource with the same official identifier."""

    def __init__(self, fhir: FhirClient, openmrs: FhirClient):
        self.fhir = fhir
        self.openmrs = openmrs

    def __call__(self, resource_type: str, reference: str) -> str | None:
        source = self.fhir.read(resource_type, reference_id(reference))
        if source is None:
            return None
        try:
            identifier = official_identifier(source)
        except MediatorError:
            return None
        matches = self.openmrs.search_by_identifier(resource_type, identifier)
        if len(matches) != 1:
            return None
        return f"{resource_type}/{matches[0]['id']}"


# ---------------------------------------------------------------------------
# Pipeline builders
# ---------------------------------------------------------------------------


def _add_sequence(dag: DAG, resolve, validate, transform, load) -> DAG:
    dag.add_task("resolve", resolve)
    dag.add_task("validate", validate, depends_on=["resolve"], advances_to=ItemState.VALIDATED)
    dag.add_task("transform", transform, depends_on=["validate"], advances_to=ItemState.TRANSFORMED)
    dag.add_task("upsert", load, depends_on=["transform"], advances_to=ItemState.UPSERTED)
    return dag


def build_inbound_pipeline(resource_type: str, fhir: FhirClient) -> DAG:
    """CHT outbound-push payload -> FHIR store."""
    if resource_type not in FHIR_TRANSFORMS:
        raise ValueError(f"No inbound pipeline for {resource_type}")

    def resolve(context: dict[str, Any]) -> dict[str, Any]:
        return {"source": context["payload"]}

    def validate(context: dict[str, Any]) -> dict[str, Any]:
        ensure_valid(resource_type, context["source"], INBOUND_SCHEMAS)
        return {"identifier": official_identifier(context["source"])}

    def transform(context: dict[str, Any]) -> dict[str, Any]:
        return {"target": FHIR_TRANSFORMS[resource_type](context["source"])}

    def load(context: dict[str, Any]) -> dict[str, Any]:
        outcome, stored = upsert(fhir, resource_type, context["target"], context["identifier"])
        return {"outcome": outcome, "stored": stored}

    return _add_sequence(DAG(f"inbound:{resource_type}"), resolve, validate, transform, load)


def build_openmrs_pipeline(resource_type: str, fhir: FhirClient, openmrs: FhirClient) -> DAG:
    """FHIR store resource -> OpenMRS."""
    if resource_type != "Patient" and resource_type not in OPENMRS_TRANSFORMS:
        raise ValueError(f"No OpenMRS pipeline for {resource_type}")
    resolver = OpenMrsReferenceResolver(fhir, openmrs)

    def resolve(context: dict[str, Any]) -> dict[str, Any]:
        source = context.get("payload")
        if source is None:
            matches = fhir.search_by_identifier(resource_type, context["identifier"])
            if not matches:
                raise MissingReference(
                    f"{resource_type} '{context['identifier']}' not found in FHIR store",
                    details={"resource_type": resource_type, "identifier": context["identifier"]},
                )
            source = matches[0]
        return {"source": source}

    def validate(context: dict[str, Any]) -> dict[str, Any]:
        ensure_valid(resource_type, context["source"], FHIR_SCHEMAS)
        return {"identifier": official_identifier(context["source"])}

    def transform(context: dict[str, Any]) -> dict[str, Any]:
        source = context["source"]
        if resource_type == "Patient":
            return {"target": to_openmrs_patient(source)}
        return {"target": OPENMRS_TRANSFORMS[resource_type](source, resolver)}

    def load(context: dict[str, Any]) -> dict[str, Any]:
        outcome, stored = upsert(openmrs, resource_type, context["target"], context["identifier"])
        if resource_type == "Patient" and stored.get("id"):
            _link_openmrs_id(fhir, context["source"], stored["id"])
        return {"outcome": outcome, "stored": stored}

    return _add_sequence(DAG(f"openmrs:{resource_type}"), resolve, validate, transform, load)


def _link_openmrs_id(fhir: FhirClient, patient: dict[str, Any], openmrs_id: str) -> None:
    """Record the OpenMRS id on the FHIR store Patient; no write when already present."""
    linked = add_identifier(patient, OPENMRS_SYSTEM, openmrs_id)
    if linked["identifier"] == patient.get("identifier"):
        return
    fhir.update("Patient", patient["id"], linked)
    logger.info("Linked FHIR Patient %s to OpenMRS Patient %s", patient["id"], openmrs_id)


def run_item(dag: DAG, resource_type: str, context: dict[str, Any]) -> SyncItemResult:
    """Run one item's pipeline and fold the outcome into a SyncItemResult."""
    dag.run(context)
    failed = dag.failed_task
    identifier = context.get("identifier")
    validate_task = dag.tasks.get("validate")
    if validate_task is not None and validate_task.result.get("identifier"):
        identifier = validate_task.result["identifier"]

    if failed is not None:
        exc = failed.exception
        return SyncItemResult(
            resource_type=resource_type,
            identifier=identifier,
            state=dag.tracker.state.value,
            outcome=FAILED,
            step=failed.name,
            error=failed.error,
            error_kind=type(exc).__name__ if exc else None,
            retryable=bool(getattr(exc, "retryable", False)),
            details=getattr(exc, "details", None),
            status_code=getattr(exc, "status_code", 500),
        )

    result = dag.tasks["upsert"].result
    return SyncItemResult(
        resource_type=resource_type,
        identifier=identifier,
        state=dag.tracker.state.value,
        outcome=result["outcome"],
        resource_id=(result.get("stored") or {}).get("id"),
    )
