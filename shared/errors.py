from __future__ import annotations

from typing import Any, Optional


class CRMError(Exception):
    """Base error for CRM services; endpoints map it to a JSON error response."""

    code = "crm_error"
    status_code = 400

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details


class NotFoundError(CRMError):
    code = "not_found"
    status_code = 404


class ConflictError(CRMError):
    code = "conflict"
    status_code = 409


class InvalidStateError(CRMError):
    code = "invalid_state"
    status_code = 409


class PermissionDeniedError(CRMError):
    code = "forbidden"
    status_code = 403


class TenantContextError(CRMError):
    code = "tenant_required"
    status_code = 400


class ValidationFailedError(CRMError):
    code = "validation_error"
    status_code = 400

    def __init__(self, errors: list, message: Optional[str] = None):
        summary = "; ".join(f"{err.get('field')}: {err.get('message')}" for err in errors or [])
        super().__init__(message or f"Validation failed: {summary}", details=errors)
        self.errors = errors
