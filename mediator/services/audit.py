"""Audit trail for downstream writes and sync runs."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from mediator.models.records import AuditLog, SyncRun
from mediator.sync.pipeline import CREATED, FAILED, UPDATED, SyncItemResult
from mediator.sync.trigger import SyncSummary

logger = logging.getLogger(__name__)

_ACTIONS = {CREATED: "create", UPDATED: "update"}


def log_action(
    db: Session,
    *,
    actor: str,
    action: str,
    system: str,
    resource_type: str,
    resource_id: str,
    detail: dict[str, Any] | None = None,
) -> None:
    """Write an audit log entry."""
    entry = AuditLog(
        actor=actor,
        action=action,
        system=system,
        resource_type=resource_type,
        resource_id=resource_id,
        detail=detail,
    )
    db.add(entry)
    db.flush()
    logger.info("AUDIT: %s %s %s %s/%s", actor, action, system, resource_type, resource_id)


def log_item(db: Session, *, actor: str, system: str, item: SyncItemResult) -> None:
    """Audit an item result; skipped and failed items wrote nothing."""
    action = _ACTIONS.get(item.outcome)
    if action is None:
        return
    log_action(
        db,
        actor=actor,
        action=action,
        system=system,
        resource_type=item.resource_type,
        resource_id=item.identifier or item.resource_id or "",
        detail={"resource_id": item.resource_id, "attempts": item.attempts},
    )


def record_sync_run(db: Session, summary: SyncSummary, *, system: str) -> SyncRun:
    for item in summary.items:
        log_item(db, actor=summary.trigger, system=system, item=item)

    failures = [item.to_dict() for item in summary.items if item.outcome == FAILED]
    run = SyncRun(
        trigger=summary.trigger,
        status=summary.status,
        started_at=summary.started_at,
        completed_at=summary.completed_at,
        item_count=len(summary.items),
        failed_count=len(failures),
        counts=summary.counts,
        failures=failures,
    )
    db.add(run)
    db.commit()
    return run
