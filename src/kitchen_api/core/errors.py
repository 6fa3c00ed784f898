"""Error taxonomy shared by the rewards, ordering and ingestion services."""

from __future__ import annotations

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from loguru import logger


class RewardsError(Exception):
    """Base class for domain failures surfaced to callers."""

    code = "error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(RewardsError):
    """Malformed input, illegal state transition, unknown role or offer."""

    code = "validation_error"
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(RewardsError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(RewardsError):
    """Request is well formed but the current state forbids it."""

    code = "conflict"
    status_code = status.HTTP_409_CONFLICT


class ExternalServiceError(RewardsError):
    """Payment gateway rejected or could not be reached."""

    code = "external_service_error"
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class InternalError(RewardsError):
    """Storage transaction could not be committed after bounded retries."""

    code = "internal_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


async def _handle_rewards_error(request: Request, exc: RewardsError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "Request failed",
        path=request.url.path,
        method=request.method,
        error_code=exc.code,
        error=exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "code": exc.code})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RewardsError, _handle_rewards_error)  # type: ignore[arg-type]
