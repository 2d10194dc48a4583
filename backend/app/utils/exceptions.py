"""
Scheduling Errors and HTTP Mapping
Every failure leaves the API in the same envelope: {"success": false, "error": {...}}
"""

from typing import Optional
from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import logging

from app.schemas.common import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)


class SchedulingException(Exception):
    """Base for errors that carry their own code and HTTP status"""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        details: Optional[dict] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)

    def to_response(self) -> dict:
        return error_body(self.code, self.message, self.details)


class ValidationError(SchedulingException):
    """Malformed availability or scheduling input"""

    def __init__(
        self,
        message: str = "Input validation failed",
        code: str = "VALIDATION_ERROR",
        details: Optional[dict] = None
    ):
        super().__init__(code, message, status.HTTP_422_UNPROCESSABLE_ENTITY, details)


class NotFoundError(SchedulingException):
    """Job, contractor or availability profile missing; code becomes e.g. JOB_NOT_FOUND"""

    def __init__(self, resource_type: str, resource_id: Optional[str] = None):
        self.resource_type = resource_type
        self.resource_id = resource_id
        label = f"{resource_type} '{resource_id}'" if resource_id else resource_type
        super().__init__(
            f"{resource_type.upper().replace(' ', '_')}_NOT_FOUND",
            f"{label} not found",
            status.HTTP_404_NOT_FOUND
        )


class AvailabilityConflictError(SchedulingException):
    """A booking failed one of the availability checks; the reason is the error code"""

    def __init__(self, reason: str, message: str, details: Optional[dict] = None):
        self.reason = reason
        super().__init__(reason, message, status.HTTP_409_CONFLICT, details)


class PersistenceError(SchedulingException):
    """Storage kept failing after local retries"""

    def __init__(self, operation: str = ""):
        self.operation = operation
        super().__init__(
            "PERSISTENCE_ERROR",
            "The request could not be completed, please try again",
            status.HTTP_503_SERVICE_UNAVAILABLE
        )


class ExternalServiceError(SchedulingException):
    """A downstream API failed"""

    def __init__(self, service_name: str, message: str = ""):
        super().__init__(
            f"{service_name.upper()}_ERROR",
            message or f"{service_name} service error",
            status.HTTP_502_BAD_GATEWAY
        )


class RoutingServiceError(ExternalServiceError):
    def __init__(self, message: str = "Failed to compute optimized route"):
        super().__init__("ROUTING", message)


def error_body(code: str, message: str, details: Optional[dict] = None) -> dict:
    return ErrorResponse(
        error=ErrorDetail(code=code, message=message, details=details)
    ).model_dump(exclude_none=True)


async def scheduling_exception_handler(request: Request, exc: SchedulingException) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(f"{request.method} {request.url.path} failed: {exc.code} - {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Flatten pydantic errors into field/message pairs"""
    errors = [
        {
            "field": ".".join(str(part) for part in error["loc"]),
            "message": error["msg"],
            "type": error["type"]
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_body("VALIDATION_ERROR", "Input validation failed", {"errors": errors})
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict):
        body = error_body(detail.get("code", "HTTP_ERROR"), detail.get("message", str(detail)))
    else:
        body = error_body("HTTP_ERROR", str(detail))
    return JSONResponse(status_code=exc.status_code, content=body, headers=exc.headers)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("INTERNAL_SERVER_ERROR", "An unexpected error occurred")
    )


def register_exception_handlers(app) -> None:
    app.add_exception_handler(SchedulingException, scheduling_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
