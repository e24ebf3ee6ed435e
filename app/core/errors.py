# app/core/errors.py
"""Error kinds raised by the billing services.

Each kind carries the HTTP status and error code it maps to, so route
handlers can let them propagate and the exception handler registered in
``app.main`` renders them through ``error_response``.
"""

from __future__ import annotations

from typing import Any, Optional


class BillingError(Exception):
    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, data: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.data = data


class UnauthorizedError(BillingError):
    status_code = 401
    error_code = "UNAUTHORIZED"


class NotFoundError(BillingError):
    status_code = 404
    error_code = "NOT_FOUND"


class InvalidArgumentError(BillingError):
    status_code = 400
    error_code = "INVALID_ARGUMENT"


class ForbiddenError(BillingError):
    status_code = 403
    error_code = "FORBIDDEN"


class ConflictError(BillingError):
    status_code = 409
    error_code = "CONFLICT"


class ExternalServiceError(BillingError):
    """The billing provider rejected a call or could not be reached."""

    status_code = 502
    error_code = "EXTERNAL_SERVICE_ERROR"
