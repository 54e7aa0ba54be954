"""
Sync trigger – drives batches of items through their pipelines.

Entry points:
- sync_openmrs():      "sync now" from an operator or timer (FHIR store -> OpenMRS)
- handle_callback():   FHIR Subscription rest-hook (FHIR store -> OpenMRS)
- handle_cht_payload(): CHT outbound push (CHT -> FHIR store)

All three re-enter the same keyed, idempotent pipelines, so they may race
with each other without duplicating resources. Items of one batch run
concurrently up to a configured limit; each item's own steps run strictly in
sequence. Cancellation is honoured between items, never inside one.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from mediator.config import settings
from mediator.exceptions import MediatorError
from mediator.services.clients import FhirClient, OpenMrsClient
from mediator.services.transform import (
    CHT_DOCUMENT_ID_TYPE,
    CHT_PATIENT_ID_TYPE,
    official_identifier,
)
from mediator.sync.dag import DAG, ItemState
from mediator.sync.pipeline import (
    CREATED,
    FAILED,
    SKIPPED,
    UPDATED,
    SyncItemResult,
    build_inbound_pipeline,
    build_openmrs_pipeline,
    run_item,
)

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"
OUTCOMES = (CREATED, UPDATED, SKIPPED, FAILED, CANCELLED)

# Patients first: Encounters and Observations reference them downstream.
OPENMRS_SYNC_ORDER = ("Patient", "Encounter", "Observation")

MAX_BACKOFF_SECONDS = 30.0


@dataclass
class SyncSummary:
    trigger: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    items: list[SyncItemResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def counts(self) -> dict[str, dict[str, int]]:
        counts: dict[str, dict[str, int]] = {}
        for item in self.items:
            per_type = counts.setdefault(item.resource_type, {outcome: 0 for outcome in OUTCOMES})
            per_type[item.outcome] += 1
        return counts

    @property
    def status(self) -> str:
        failed = sum(1 for item in self.items if item.outcome == FAILED)
        if self.cancelled:
            return "cancelled"
        if not failed:
            return "completed"
        return "failed" if failed == len(self.items) else "partial"

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger": self.trigger,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled": self.cancelled,
            "counts": self.counts,
            "items": [item.to_dict() for item in self.items],
        }


class SyncTrigger:
    def __init__(
        self,
        fhir: FhirClient,
        openmrs: OpenMrsClient | None = None,
        *,
        max_concurrency: int | None = None,
        retry_enabled: bool | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        lookback_minutes: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.fhir = fhir
        self.openmrs = openmrs
        self.max_concurrency = max(1, max_concurrency or settings.SYNC_MAX_CONCURRENCY)
        self.retry_enabled = settings.SYNC_RETRY_ENABLED if retry_enabled is None else retry_enabled
        self.max_retries = settings.SYNC_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_seconds = (
            settings.SYNC_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self.lookback_minutes = (
            settings.SYNC_LOOKBACK_MINUTES if lookback_minutes is None else lookback_minutes
        )
        self._sleep = sleep
        self._cancel = threading.Event()

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Stop starting new items; items already running finish their pipeline."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ------------------------------------------------------------------
    # Item execution
    # ------------------------------------------------------------------

    def backoff_delay(self, attempt: int) -> float:
        return min(self.backoff_seconds * (2 ** (attempt - 1)), MAX_BACKOFF_SECONDS)

    def run_with_retry(
        self,
        resource_type: str,
        build: Callable[[], DAG],
        context: dict[str, Any],
    ) -> SyncItemResult:
        attempt = 1
        while True:
            result = run_item(build(), resource_type, context)
            result.attempts = attempt
            if (
                result.outcome != FAILED
                or not result.retryable
                or not self.retry_enabled
                or attempt > self.max_retries
            ):
                return result
            delay = self.backoff_delay(attempt)
            logger.warning(
                "%s %s failed at '%s' (%s); retry %d/%d in %.1fs",
                resource_type,
                result.identifier,
                result.step,
                result.error,
                attempt,
                self.max_retries,
                delay,
            )
            self._sleep(delay)
            attempt += 1

    def _run_item_unless_cancelled(
        self,
        resource_type: str,
        build: Callable[[], DAG],
        context: dict[str, Any],
    ) -> SyncItemResult:
        if self.cancelled:
            return SyncItemResult(
                resource_type=resource_type,
                identifier=context.get("identifier"),
                state=ItemState.PENDING.value,
                outcome=CANCELLED,
                attempts=0,
            )
        return self.run_with_retry(resource_type, build, context)

    def sync_items(
        self,
        resource_type: str,
        contexts: list[dict[str, Any]],
        build: Callable[[], DAG],
    ) -> list[SyncItemResult]:
        """Run one batch concurrently (bounded); results keep the input order."""
        if not contexts:
            return []
        workers = min(self.max_concurrency, len(contexts))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sync") as pool:
            futures = [
                pool.submit(self._run_item_unless_cancelled, resource_type, build, context)
                for context in contexts
            ]
            return [future.result() for future in futures]

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def handle_cht_payload(self, resource_type: str, payload: dict[str, Any]) -> SyncItemResult:
        """CHT outbound push: validate, canonicalise and upsert into the FHIR store."""
        return self.run_with_retry(
            resource_type,
            lambda: build_inbound_pipeline(resource_type, self.fhir),
            {"payload": payload},
        )

    def sync_openmrs(self) -> SyncSummary:
        """Push FHIR store Patients, Encounters and Observations into OpenMRS."""
        openmrs = self._require_openmrs()
        summary = SyncSummary(trigger="openmrs-sync")

        for name in (CHT_PATIENT_ID_TYPE, CHT_DOCUMENT_ID_TYPE):
            openmrs.ensure_identifier_type(name)

        params: dict[str, str] = {}
        if self.lookback_minutes > 0:
            since = datetime.now(timezone.utc) - timedelta(minutes=self.lookback_minutes)
            params["_lastUpdated"] = f"ge{since.strftime('%Y-%m-%dT%H:%M:%SZ')}"

        for resource_type in OPENMRS_SYNC_ORDER:
            if self.cancelled:
                break
            resources = self.fhir.search_all(resource_type, **params)
            logger.info("OpenMRS sync: %d %s resources to process", len(resources), resource_type)
            summary.items.extend(
                self.sync_items(
                    resource_type,
                    [{"payload": resource} for resource in resources],
                    self._openmrs_builder(resource_type, openmrs),
                )
            )
        return self._finish(summary)

    def handle_callback(self, payload: dict[str, Any]) -> SyncSummary:
        """
        Subscription rest-hook: the notification only says *what* changed;
        each resource is re-read from the FHIR store by official identifier
        and pushed through the OpenMRS pipeline.
        """
        openmrs = self._require_openmrs()
        summary = SyncSummary(trigger="subscription-callback")

        if payload.get("resourceType") == "Bundle":
            resources = [e["resource"] for e in payload.get("entry") or [] if e.get("resource")]
        else:
            resources = [payload]

        by_type: dict[str, list[dict[str, Any]]] = {}
        for resource in resources:
            resource_type = resource.get("resourceType", "")
            if resource_type not in OPENMRS_SYNC_ORDER:
                logger.info("Ignoring callback for unsupported resource type '%s'", resource_type)
                continue
            try:
                identifier = official_identifier(resource)
            except MediatorError as exc:
                summary.items.append(
                    SyncItemResult(
                        resource_type=resource_type,
                        identifier=None,
                        state=ItemState.FAILED.value,
                        outcome=FAILED,
                        step="resolve",
                        error=exc.message,
                        error_kind=exc.kind,
                        details=exc.details,
                    )
                )
                continue
            by_type.setdefault(resource_type, []).append({"identifier": identifier})

        for resource_type in OPENMRS_SYNC_ORDER:
            if self.cancelled:
                break
            contexts = by_type.get(resource_type)
            if contexts:
                summary.items.extend(
                    self.sync_items(resource_type, contexts, self._openmrs_builder(resource_type, openmrs))
                )
        return self._finish(summary)

    # ------------------------------------------------------------------

    def _openmrs_builder(self, resource_type: str, openmrs: OpenMrsClient) -> Callable[[], DAG]:
        return lambda: build_openmrs_pipeline(resource_type, self.fhir, openmrs)

    def _require_openmrs(self) -> OpenMrsClient:
        if self.openmrs is None:
            raise RuntimeError("SyncTrigger was created without an OpenMRS client")
        return self.openmrs

    def _finish(self, summary: SyncSummary) -> SyncSummary:
        summary.cancelled = self.cancelled
        summary.completed_at = datetime.now(timezone.utc)
        logger.info("Sync '%s' finished – %s %s", summary.trigger, summary.status, summary.counts)
        return summary
