from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class TooManyRequestsError(AppError):
    def __init__(self, message: str = "Too many requests"):
        super().__init__(message, code="RATE_LIMITED", status_code=status.HTTP_429_TOO_MANY_REQUESTS)


# Payment taxonomy. Everything below aborts an initiation before a Transaction row exists.


class ValidationFailure(AppError):
    """Bad amount, phone or missing field; rejected before the gateway is contacted."""

    def __init__(self, message: str = "Invalid payment request", details: dict[str, Any] | None = None):
        super().__init__(message, code="VALIDATION_FAILURE", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class AuthFailure(AppError):
    """Credential exchange with the gateway failed."""

    def __init__(self, message: str = "Failed to obtain M-Pesa access token", details: dict[str, Any] | None = None):
        super().__init__(message, code="AUTH_FAILURE", status_code=status.HTTP_502_BAD_GATEWAY, details=details)


class GatewayRejection(AppError):
    """Gateway answered but did not accept the push."""

    def __init__(self, message: str = "STK push was not accepted", details: dict[str, Any] | None = None):
        super().__init__(message, code="GATEWAY_REJECTION", status_code=status.HTTP_502_BAD_GATEWAY, details=details)


class NetworkFailure(AppError):
    """Timeout or unreachable gateway. Safe to retry: a retry creates a new Transaction."""

    def __init__(self, message: str = "Failed to reach M-Pesa", details: dict[str, Any] | None = None):
        super().__init__(message, code="NETWORK_FAILURE", status_code=status.HTTP_504_GATEWAY_TIMEOUT, details=details)


def _error_body(request: Request, message: str, code: str, details: dict[str, Any]) -> dict[str, Any]:
    body: dict[str, Any] = {
        "success": False,
        "message": message,
        "error": {
            "message": message,
            "code": code,
            "details": details,
        },
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return body


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.message, exc.code, exc.details),
    )


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_body(request, "Validation error", "VALIDATION_ERROR", {"errors": exc.errors()}),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from app.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(request, "Internal server error", "INTERNAL_ERROR", {}),
    )
