# app/core/response.py
from typing import Any, Optional, Literal, Dict
from pydantic import BaseModel
from fastapi.responses import JSONResponse
import traceback
from app.core.config import settings
from app.core.errors import BillingError

# Error code used when an HTTPException carries none of its own
HTTP_ERROR_CODES: Dict[int, str] = {
    400: "INVALID_ARGUMENT",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    502: "EXTERNAL_SERVICE_ERROR",
}


class ErrorDetail(BaseModel):
    """Per-field validation failure"""
    field: Optional[str] = None
    message: str
    code: Optional[str] = None


class ResponseModel(BaseModel):
    status: Literal["success", "error"]
    msg: str
    data: Optional[Any] = None


class ErrorResponseModel(BaseModel):
    status: Literal["error"] = "error"
    msg: str
    error_code: str
    details: Optional[list[ErrorDetail]] = None
    data: Optional[Any] = None
    # Only included in development
    debug_info: Optional[Dict[str, Any]] = None


def success_response(
    msg: str = "OK", data: Any = None, status_code: int = 200
) -> JSONResponse:
    """Create a success response"""
    payload = ResponseModel(status="success", msg=msg, data=data).model_dump(
        exclude_none=True
    )
    return JSONResponse(status_code=status_code, content=payload)


def error_response(
    msg: str,
    data: Any = None,
    status_code: int = 400,
    error_code: Optional[str] = None,
    details: Optional[list[ErrorDetail]] = None
) -> JSONResponse:
    """Error envelope. ``error_code`` falls back to the one for ``status_code``."""
    debug_info = None
    if settings.DEBUG and status_code >= 500:
        debug_info = {
            "traceback": traceback.format_exc(),
            "environment": settings.ENVIRONMENT
        }

    payload = ErrorResponseModel(
        msg=msg,
        error_code=error_code or HTTP_ERROR_CODES.get(status_code, "INTERNAL_ERROR"),
        details=details,
        data=data,
        debug_info=debug_info
    ).model_dump(exclude_none=True)

    return JSONResponse(status_code=status_code, content=payload)


def billing_error_response(exc: BillingError) -> JSONResponse:
    """Render a billing service error with its own status and code"""
    return error_response(
        msg=exc.message,
        data=exc.data,
        status_code=exc.status_code,
        error_code=exc.error_code,
    )


def validation_error_response(
    errors: list[Dict[str, Any]],
    status_code: int = 422
) -> JSONResponse:
    """Body or query parameters failed pydantic validation"""
    details = []
    for err in errors:
        loc = err.get("loc", [])
        field = ".".join(str(x) for x in loc if x != "body")
        details.append(ErrorDetail(
            field=field or (str(loc[-1]) if loc else None),
            message=err.get("msg", "Validation error"),
            code=err.get("type"),
        ))

    return error_response(
        msg="Invalid request parameters",
        details=details,
        status_code=status_code,
        error_code="VALIDATION_ERROR"
    )
