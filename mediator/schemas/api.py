"""Pydantic models for API request/response serialization."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str = "success"
    environment: str


# ---------------------------------------------------------------------------
# Sync results
# ---------------------------------------------------------------------------

class SyncItemResponse(BaseModel):
    resource_type: str
    identifier: str | None = None
    state: str
    outcome: str
    step: str | None = None
    error: str | None = None
    error_kind: str | None = None
    retryable: bool = False
    attempts: int = 1
    resource_id: str | None = None
    details: Any = None


class SyncSummaryResponse(BaseModel):
    trigger: str
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    cancelled: bool = False
    counts: dict[str, dict[str, int]] = {}
    items: list[SyncItemResponse] = []


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ErrorResponse(BaseModel):
    status: str = "error"
    kind: str
    message: str
    details: Any = None
