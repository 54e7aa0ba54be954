"""
Error kinds raised by the mediator.

All exceptions inherit from MediatorError so the API layer can render any of
them with a single handler. Each carries the HTTP status it maps to and
whether a caller may retry the failed operation.
"""

from __future__ import annotations

from typing import Any


class MediatorError(Exception):
    """Base class for all mediator errors."""

    status_code: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"status": "error", "kind": self.kind, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(MediatorError):
    """Payload does not satisfy the structural contract of its resource type."""

    status_code = 400


class InvalidArgument(MediatorError):
    """A caller passed an empty or wrongly typed argument."""

    status_code = 400


class MissingReference(MediatorError):
    """A linked resource the operation depends on could not be found."""

    status_code = 400


class MissingEndpoint(MissingReference):
    """An Organization has no callback Endpoint attached."""


class ConflictOnUpsert(MediatorError):
    """More than one downstream resource carries the same official identifier."""

    status_code = 409


class UpstreamRejected(MediatorError):
    """A remote system answered with a 4xx status."""

    def __init__(self, message: str, *, system: str, status_code: int, details: Any = None):
        super().__init__(message, status_code=status_code, details=details)
        self.system = system


class UpstreamUnavailable(MediatorError):
    """A remote system could not be reached, timed out, or answered 5xx."""

    status_code = 502
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        system: str,
        operation: str = "",
        url: str = "",
        timeout: bool = False,
    ):
        super().__init__(
            message,
            status_code=504 if timeout else 502,
            details={"system": system, "operation": operation, "url": url},
        )
        self.system = system
        self.operation = operation
        self.url = url
        self.timeout = timeout
