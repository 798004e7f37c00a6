"""Domain error taxonomy.

Every error carries a stable ``code`` and an HTTP-style ``status_code`` so a
host application can map it onto its own transport without inspecting types.
"""

import builtins
from typing import Optional

from cardhub.core.logging import get_correlation_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id

    def to_payload(self) -> dict:
        rid = self.request_id or get_correlation_id()
        return {
            "error": {"code": self.code, "message": self.message, "request_id": rid},
            "detail": self.message,
        }


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class QuotaExceededError(AppError):
    """Raised when a plan limit is reached; resolved by upgrading, not retrying."""
    code = "quota_exceeded"
    status_code = 403


class PaymentRequiredError(AppError):
    code = "payment_required"
    status_code = 402


class StorageError(AppError):
    """Raised when the persistence layer fails; fatal for the current operation."""
    code = "storage_error"
    status_code = 503
