"""
Append-only history of what the mediator did.

These tables are never consulted to decide sync behaviour: resource and
subscription state lives in the FHIR store alone.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Uuid

from mediator.models.database import Base


# ---------------------------------------------------------------------------
# Audit Log – one row per downstream write
# ---------------------------------------------------------------------------
class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    actor = Column(String(128), nullable=False, comment="Trigger or route that caused the write")
    action = Column(String(64), nullable=False, comment="create | update | delete")
    system = Column(String(32), nullable=False, comment="fhir | openmrs | cht")
    resource_type = Column(String(64), nullable=False)
    resource_id = Column(String(128), nullable=False, comment="Official identifier or server id")
    detail = Column(JSON, comment="Context for the action")
    timestamp = Column(DateTime, default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (Index("ix_audit_timestamp", "timestamp"),)


# ---------------------------------------------------------------------------
# Sync Run – one row per batch
# ---------------------------------------------------------------------------
class SyncRun(Base):
    __tablename__ = "sync_runs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    trigger = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False)
    started_at = Column(DateTime)
    completed_at = Column(DateTime, nullable=True)
    item_count = Column(Integer, default=0)
    failed_count = Column(Integer, default=0)
    counts = Column(JSON, default=dict)
    failures = Column(JSON, default=list)
