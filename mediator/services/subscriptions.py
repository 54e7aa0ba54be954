"""Subscription lifecycle against the FHIR store. The store is the only record of state."""

from __future__ import annotations

import logging
from typing import Any

from mediator.services.clients import FhirClient, FhirResponse
from mediator.services.transform import to_fhir_subscription
from mediator.services.validation import ensure_valid

logger = logging.getLogger(__name__)


class SubscriptionManager:
    def __init__(self, fhir: FhirClient):
        self.fhir = fhir

    def build(self, patient_id: str, callback_url: str) -> dict[str, Any]:
        """Build and validate the Subscription without writing it."""
        subscription = to_fhir_subscription(patient_id, callback_url)
        ensure_valid("Subscription", subscription)
        return subscription

    def create(self, patient_id: str, callback_url: str) -> FhirResponse:
        subscription = self.build(patient_id, callback_url)
        response = self.fhir.create("Subscription", subscription)
        logger.info(
            "Created Subscription %s for patient %s -> %s",
            response.body.get("id"),
            patient_id,
            callback_url,
        )
        return response

    def find(self, subscription_id: str) -> dict[str, Any] | None:
        return self.fhir.read("Subscription", subscription_id)

    def delete(self, subscription_id: str) -> bool:
        """Delete a Subscription. Returns False when the store had no such id."""
        response = self.fhir.delete("Subscription", subscription_id)
        if response.status_code in (404, 410):
            logger.info("Subscription %s already absent", subscription_id)
            return False
        logger.info("Deleted Subscription %s", subscription_id)
        return True
