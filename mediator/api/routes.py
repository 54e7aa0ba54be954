"""
FastAPI routes – the mediator's HTTP surface.

Consumed by the orchestration engine (channel routing), by CHT outbound push
and by FHIR Subscription rest-hooks. Every handler is stateless: each request
builds its own clients and sync trigger, and every lookup goes to the remote
system of record.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from mediator.config import settings
from mediator.exceptions import MediatorError
from mediator.models.database import get_db
from mediator.schemas.api import HealthResponse, SyncItemResponse, SyncSummaryResponse
from mediator.services.audit import log_action, log_item, record_sync_run
from mediator.services.clients import FhirClient, OpenMrsClient, get_fhir_client, get_openmrs_client
from mediator.services.endpoints import (
    organization_identifier_from_reference,
    resolve_callback_endpoint,
)
from mediator.services.subscriptions import SubscriptionManager
from mediator.services.transform import reference_id
from mediator.services.validation import ensure_valid
from mediator.sync.pipeline import CREATED, FAILED
from mediator.sync.trigger import SyncTrigger

logger = logging.getLogger(__name__)

router = APIRouter()


def get_sync_trigger(
    fhir: FhirClient = Depends(get_fhir_client),
    openmrs: OpenMrsClient = Depends(get_openmrs_client),
) -> SyncTrigger:
    return SyncTrigger(fhir, openmrs)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@router.get("/", response_model=HealthResponse)
def health_check():
    return HealthResponse(status="success", environment=settings.ENVIRONMENT)


# ---------------------------------------------------------------------------
# Sync triggers
# ---------------------------------------------------------------------------

@router.get("/openmrs/sync", response_model=SyncSummaryResponse)
def sync_openmrs(trigger: SyncTrigger = Depends(get_sync_trigger), db: Session = Depends(get_db)):
    """Push FHIR store Patients, Encounters and Observations into OpenMRS now."""
    summary = trigger.sync_openmrs()
    record_sync_run(db, summary, system="openmrs")
    return summary.to_dict()


@router.post("/callback", response_model=SyncSummaryResponse)
def subscription_callback(
    payload: dict[str, Any] = Body(...),
    trigger: SyncTrigger = Depends(get_sync_trigger),
    db: Session = Depends(get_db),
):
    """FHIR Subscription rest-hook target."""
    summary = trigger.handle_callback(payload)
    record_sync_run(db, summary, system="openmrs")
    return summary.to_dict()


def _push(resource_type: str, payload: dict[str, Any], trigger: SyncTrigger, db: Session):
    item = trigger.handle_cht_payload(resource_type, payload)
    log_item(db, actor="cht-outbound-push", system="fhir", item=item)
    db.commit()
    if item.outcome == FAILED:
        status_code = item.status_code or 500
    else:
        status_code = 201 if item.outcome == CREATED else 200
    body = SyncItemResponse(**item.to_dict()).model_dump()
    return JSONResponse(body, status_code=status_code)


@router.post("/patient", response_model=SyncItemResponse)
def push_patient(
    payload: dict[str, Any] = Body(...),
    trigger: SyncTrigger = Depends(get_sync_trigger),
    db: Session = Depends(get_db),
):
    return _push("Patient", payload, trigger, db)


@router.post("/encounter", response_model=SyncItemResponse)
def push_encounter(
    payload: dict[str, Any] = Body(...),
    trigger: SyncTrigger = Depends(get_sync_trigger),
    db: Session = Depends(get_db),
):
    return _push("Encounter", payload, trigger, db)


@router.post("/observation", response_model=SyncItemResponse)
def push_observation(
    payload: dict[str, Any] = Body(...),
    trigger: SyncTrigger = Depends(get_sync_trigger),
    db: Session = Depends(get_db),
):
    return _push("Observation", payload, trigger, db)


# ---------------------------------------------------------------------------
# LTFU: Endpoint, Organization, ServiceRequest
# ---------------------------------------------------------------------------

def _forward(resource_type: str, payload: dict[str, Any], fhir: FhirClient, db: Session) -> JSONResponse:
    ensure_valid(resource_type, payload)
    response = fhir.create(resource_type, payload)
    log_action(
        db,
        actor="mediator-api",
        action="create",
        system="fhir",
        resource_type=resource_type,
        resource_id=str(response.body.get("id", "")),
    )
    db.commit()
    return JSONResponse(response.body, status_code=response.status_code)


@router.post("/endpoint")
def create_endpoint(
    payload: dict[str, Any] = Body(...),
    fhir: FhirClient = Depends(get_fhir_client),
    db: Session = Depends(get_db),
):
    return _forward("Endpoint", payload, fhir, db)


@router.post("/organization")
def create_organization(
    payload: dict[str, Any] = Body(...),
    fhir: FhirClient = Depends(get_fhir_client),
    db: Session = Depends(get_db),
):
    return _forward("Organization", payload, fhir, db)


def _withdraw(fhir: FhirClient, resource_type: str, resource_id: str | None) -> None:
    """Delete a resource written earlier in a request that is now failing."""
    if not resource_id:
        return
    try:
        fhir.delete(resource_type, resource_id)
    except MediatorError as exc:
        logger.error("Could not withdraw %s/%s: %s", resource_type, resource_id, exc.message)
        return
    logger.warning("Withdrew %s/%s after a failed follow-up write", resource_type, resource_id)


@router.post("/service-request")
def create_service_request(
    payload: dict[str, Any] = Body(...),
    fhir: FhirClient = Depends(get_fhir_client),
    db: Session = Depends(get_db),
):
    """
    Record a follow-up request and subscribe the requesting Organization's
    callback Endpoint to the patient's Encounters. Returns the Subscription,
    whose ``criteria`` is the Encounter search that detects fulfilment.

    Both resources are written or neither is: everything is checked before
    the first write, and the ServiceRequest is withdrawn when the
    Subscription cannot be created.
    """
    ensure_valid("ServiceRequest", payload)
    organization = organization_identifier_from_reference(payload["requester"]["reference"])
    endpoint = resolve_callback_endpoint(fhir, organization)
    patient_id = reference_id(payload["subject"]["reference"])
    subscriptions = SubscriptionManager(fhir)
    subscriptions.build(patient_id, endpoint["address"])

    created = fhir.create("ServiceRequest", payload)
    try:
        subscription = subscriptions.create(patient_id, endpoint["address"])
    except MediatorError:
        _withdraw(fhir, "ServiceRequest", created.body.get("id"))
        raise

    log_action(
        db,
        actor="mediator-api",
        action="create",
        system="fhir",
        resource_type="ServiceRequest",
        resource_id=str(created.body.get("id", "")),
        detail={"organization": organization, "patient": patient_id},
    )
    log_action(
        db,
        actor="mediator-api",
        action="create",
        system="fhir",
        resource_type="Subscription",
        resource_id=str(subscription.body.get("id", patient_id)),
        detail={"callback": endpoint["address"]},
    )
    db.commit()
    return JSONResponse(subscription.body, status_code=subscription.status_code)


@router.delete("/subscription/{subscription_id}")
def delete_subscription(
    subscription_id: str,
    fhir: FhirClient = Depends(get_fhir_client),
    db: Session = Depends(get_db),
):
    deleted = SubscriptionManager(fhir).delete(subscription_id)
    if deleted:
        log_action(
            db,
            actor="mediator-api",
            action="delete",
            system="fhir",
            resource_type="Subscription",
            resource_id=subscription_id,
        )
        db.commit()
    return {"status": "success", "deleted": deleted}
