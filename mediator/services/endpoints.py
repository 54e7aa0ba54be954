"""Resolve an Organization's registered callback Endpoint."""

from __future__ import annotations

import logging
from typing import Any

from mediator.exceptions import MissingEndpoint, MissingReference
from mediator.services.clients import FhirClient
from mediator.services.transform import reference_id

logger = logging.getLogger(__name__)


def organization_identifier_from_reference(reference: str) -> str:
    """``"Organization/test-org"`` -> ``"test-org"``."""
    return reference_id(reference)


def resolve_callback_endpoint(fhir: FhirClient, organization_identifier: str) -> dict[str, Any]:
    """
    Look up the Organization by identifier and return the Endpoint it references.

    Raises MissingReference when the Organization does not exist and
    MissingEndpoint (400) unless it references exactly one Endpoint that
    resolves and carries an address. Each lookup is a single round trip;
    retrying is the caller's decision.
    """
    organizations = fhir.search_by_identifier("Organization", organization_identifier)
    if not organizations:
        raise MissingReference(
            f"Organization '{organization_identifier}' not found",
            details={"organization": organization_identifier},
        )
    organization = organizations[0]

    endpoints = organization.get("endpoint") or []
    if not endpoints or not endpoints[0]:
        raise MissingEndpoint(
            "Organization has no endpoint attached",
            status_code=400,
            details={"organization": organization_identifier},
        )
    if len(endpoints) != 1:
        raise MissingEndpoint(
            f"Organization must reference exactly one endpoint, found {len(endpoints)}",
            status_code=400,
            details={"organization": organization_identifier, "endpoints": endpoints},
        )

    endpoint_ref = endpoints[0]
    endpoint_identifier = (endpoint_ref.get("identifier") or {}).get("value")
    if endpoint_identifier:
        matches = fhir.search_by_identifier("Endpoint", endpoint_identifier)
        endpoint = matches[0] if matches else None
    elif endpoint_ref.get("reference"):
        endpoint = fhir.read("Endpoint", reference_id(endpoint_ref["reference"]))
    else:
        endpoint = None

    if endpoint is None:
        raise MissingEndpoint(
            "Organization endpoint reference does not resolve",
            status_code=400,
            details={"organization": organization_identifier, "endpoint": endpoint_ref},
        )
    if not endpoint.get("address"):
        raise MissingEndpoint(
            "Organization endpoint has no callback address",
            status_code=400,
            details={"organization": organization_identifier, "endpoint": endpoint.get("id")},
        )
    logger.info(
        "Resolved Organization %s to Endpoint %s", organization_identifier, endpoint.get("address")
    )
    return endpoint
