"""Application error taxonomy and the FastAPI handler that renders it.

Each error carries an HTTP status and a stable machine-readable ``code``. Route
handlers raise these directly; the handler registered in ``fitapp.main`` turns
them into ``{"success": false, "error": {"code": ..., "message": ...}}``.
"""

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class AppError(Exception):
    """Base class for errors that surface to API callers verbatim."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "SERVER_ERROR"

    def __init__(self, message: str, code: str | None = None, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"


class AuthenticationError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "AUTHENTICATION_REQUIRED"


class AuthorizationError(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class ConflictError(AppError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"


class LockedError(AppError):
    """Account locked after repeated failed logins (raised by the auth subsystem)."""

    status_code = status.HTTP_423_LOCKED
    code = "ACCOUNT_LOCKED"


class ProviderUnavailableError(AppError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "PAYMENT_PROVIDER_ERROR"


class ServiceUnavailableError(AppError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "SERVICE_UNAVAILABLE"


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render an AppError as the standard JSON error envelope."""
    error: dict = {"code": exc.code, "message": exc.message}
    if exc.details:
        error["details"] = exc.details
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": error},
        headers=headers,
    )


async def request_validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render request schema failures as a 400 ValidationError envelope."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg')}" if location else str(first.get("msg", "Invalid request"))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "error": {
                "code": ValidationError.code,
                "message": message,
                "details": jsonable_encoder(errors),
            },
        },
    )
