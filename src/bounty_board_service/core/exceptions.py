"""Service error taxonomy and FastAPI exception handlers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from bounty_board_service.logging import get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI, Request
    from starlette.types import ExceptionHandler


class ServiceError(Exception):
    """Error carrying a machine-readable code, message, HTTP status and details."""

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
        self.details = details if details is not None else {}


class NotFoundError(ServiceError):
    """Referenced entity does not exist."""

    def __init__(self, message: str) -> None:
        super().__init__("NOT_FOUND", message, 404)


class ValidationError(ServiceError):
    """A precondition of the requested operation is violated."""

    def __init__(self, message: str) -> None:
        super().__init__("VALIDATION_ERROR", message, 400)


class AuthenticationError(ServiceError):
    """The caller could not be identified."""

    def __init__(self, message: str) -> None:
        super().__init__("UNAUTHENTICATED", message, 401)


class AuthorizationError(ServiceError):
    """The caller is identified but not permitted to act."""

    def __init__(self, message: str) -> None:
        super().__init__("FORBIDDEN", message, 403)


class EscrowContractError(ServiceError):
    """A ledger movement into or out of escrow failed."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        details: dict[str, Any] = {}
        if cause is not None:
            details["cause"] = type(cause).__name__
        super().__init__("ESCROW_CONTRACT_ERROR", message, 502, details)


class ExternalServiceError(ServiceError):
    """
    Failure talking to an external system.

    ``retryable`` tells the retry helper whether another attempt may succeed.
    """

    def __init__(
        self,
        error: str,
        message: str,
        *,
        retryable: bool,
        status_code: int = 502,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(error, message, status_code, details)
        self.retryable = retryable


class RateLimitError(ExternalServiceError):
    """External system asked us to slow down; ``retry_after`` is in seconds."""

    def __init__(self, service: str, retry_after: float | None) -> None:
        super().__init__(
            "RATE_LIMITED",
            f"{service} rate limit exceeded",
            retryable=True,
            status_code=429,
            details={"service": service, "retry_after": retry_after},
        )
        self.retry_after = retry_after


class OperationTimeoutError(ServiceError):
    """A single attempt of a wrapped operation exceeded its time budget."""

    def __init__(self, operation_name: str, timeout_ms: int) -> None:
        super().__init__(
            "TIMEOUT",
            f"Operation '{operation_name}' timed out after {timeout_ms}ms",
            504,
            {"operation": operation_name, "timeout_ms": timeout_ms},
        )
        self.operation_name = operation_name
        self.timeout_ms = timeout_ms


class CircuitOpenError(ServiceError):
    """Calls to an operation are short-circuited by an open breaker."""

    def __init__(self, operation_name: str) -> None:
        super().__init__(
            "SERVICE_UNAVAILABLE",
            f"Circuit breaker is open for '{operation_name}'",
            503,
            {"operation": operation_name},
        )
        self.operation_name = operation_name


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Handle ServiceError exceptions."""
    logger = get_logger(__name__)
    logger.warning(
        "Service error",
        extra={
            "error_code": exc.error,
            "status_code": exc.status_code,
            "path": str(request.url.path),
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "message": exc.message, "details": exc.details},
    )


async def unhandled_exception_handler(request: Request, _exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions without leaking internals."""
    logger = get_logger(__name__)
    logger.exception("Unhandled exception", extra={"path": str(request.url.path)})
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_ERROR",
            "message": "An unexpected error occurred",
            "details": {},
        },
    )


async def http_exception_handler(
    _request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handle Starlette HTTP exceptions (e.g., 404/405 from router)."""
    if exc.status_code == 405:
        return JSONResponse(
            status_code=405,
            content={
                "error": "METHOD_NOT_ALLOWED",
                "message": "Method not allowed",
                "details": {},
            },
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "message": str(exc.detail),
            "details": {},
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the app."""
    app.add_exception_handler(ServiceError, cast("ExceptionHandler", service_error_handler))
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.add_exception_handler(
        StarletteHTTPException,
        cast("ExceptionHandler", http_exception_handler),
    )
