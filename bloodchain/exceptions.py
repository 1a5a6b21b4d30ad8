"""
Ledger error taxonomy and the FastAPI handlers that render it
"""
from typing import Optional

import structlog
from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = structlog.get_logger()


class LedgerError(Exception):
    """Base exception for ledger errors."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "ledger_error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(LedgerError):
    """Malformed append request or a forbidden mutation. Not retryable."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"


class AuthorizationError(LedgerError):
    """Caller is not allowed to act on the resource."""

    status_code = status.HTTP_403_FORBIDDEN
    code = "authorization_error"


class NotFoundError(LedgerError):
    """Unknown conversation, partner, message or attachment."""

    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class ConflictError(LedgerError):
    """Lost the race for a conversation tail. Safe to retry from the top."""

    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class ChainIntegrityError(LedgerError):
    """
    A conversation's hash chain is broken or tampered.

    Terminal for the call that found it; never corrected automatically.
    """

    status_code = status.HTTP_409_CONFLICT
    code = "chain_integrity_error"

    def __init__(self, detail: str, conversation_id: Optional[str] = None, broken_at: Optional[int] = None):
        super().__init__(detail)
        self.conversation_id = conversation_id
        self.broken_at = broken_at


async def ledger_exception_handler(request: Request, exc: LedgerError):
    """Render domain errors as {"detail", "code"}."""
    content = {"detail": exc.detail, "code": exc.code}
    if isinstance(exc, ChainIntegrityError):
        content["conversationId"] = exc.conversation_id
        content["brokenAt"] = exc.broken_at
        logger.error(
            "chain_integrity_error",
            conversation_id=exc.conversation_id,
            broken_at=exc.broken_at,
            path=request.url.path,
        )
    elif exc.status_code >= 409:
        logger.warning("ledger_error", code=exc.code, detail=exc.detail, path=request.url.path)
    return JSONResponse(status_code=exc.status_code, content=content)


async def global_exception_handler(request: Request, exc: Exception):
    """
    Catch-all for unhandled exceptions.
    Prevents stack trace leakage to clients.
    """
    logger.error("unhandled_exception", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "An unexpected error occurred.", "code": "internal_error"},
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Standard HTTP exception handler."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": "http_error"},
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Pydantic request validation error handler."""
    logger.warning("request_validation_error", errors=exc.errors(), path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": "Validation error", "code": "request_validation_error", "errors": jsonable_errors(exc)},
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    """Drop non-serializable context (e.g. exception objects) from pydantic errors"""
    errors = []
    for err in exc.errors():
        errors.append({k: v for k, v in err.items() if k in ("loc", "msg", "type")})
    return errors
