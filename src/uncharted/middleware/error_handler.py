"""Global error handlers with consistent JSON error responses.

Community refusals carry a stable ``reason`` code for user-facing
messaging. Faults and storage errors are logged and reported generically.
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from uncharted.community.errors import (
    CommunityFault,
    CommunityNotFound,
    CommunityRefusal,
    RefusalReason,
)

logger = structlog.get_logger()

REFUSAL_STATUS_CODES: dict[RefusalReason, int] = {
    RefusalReason.INSUFFICIENT_LEVEL: 403,
    RefusalReason.PRIVATE_REQUIRES_PLATINUM: 403,
    RefusalReason.NOT_GROUP_CREATOR: 403,
    RefusalReason.GROUP_NOT_OPEN: 409,
    RefusalReason.GROUP_FULL: 409,
    RefusalReason.ALREADY_MEMBER: 409,
    RefusalReason.CREATOR_CANNOT_LEAVE: 409,
    RefusalReason.NOT_A_MEMBER: 409,
    RefusalReason.INVALID_TRANSITION: 409,
}


def setup_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Handle HTTP exceptions with consistent JSON format."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle validation errors with consistent JSON format."""
        return JSONResponse(
            status_code=422,
            content={"detail": "Validation error", "errors": exc.errors()},
        )

    @app.exception_handler(CommunityRefusal)
    async def refusal_handler(request: Request, exc: CommunityRefusal) -> JSONResponse:
        """Expected business-rule refusal, shown to the user."""
        logger.info("community_refusal", path=request.url.path, reason=exc.reason.value)
        return JSONResponse(
            status_code=REFUSAL_STATUS_CODES.get(exc.reason, 409),
            content={"detail": exc.message, "reason": exc.reason.value},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        """Invalid argument that slipped past request validation."""
        logger.info("invalid_argument", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(CommunityNotFound)
    async def not_found_handler(_request: Request, exc: CommunityNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": f"{exc.entity} not found"})

    @app.exception_handler(IntegrityError)
    async def integrity_handler(request: Request, exc: IntegrityError) -> JSONResponse:
        """A uniqueness/check constraint caught a concurrent conflicting write."""
        logger.warning("integrity_conflict", path=request.url.path, error=str(exc.orig))
        return JSONResponse(
            status_code=409,
            content={"detail": "Conflicting update, please retry"},
        )

    @app.exception_handler(CommunityFault)
    async def fault_handler(request: Request, exc: CommunityFault) -> JSONResponse:
        logger.error("community_fault", path=request.url.path, error=str(exc), exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.exception_handler(SQLAlchemyError)
    async def storage_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("storage_error", path=request.url.path, error=str(exc), exc_info=exc)
        return JSONResponse(status_code=503, content={"detail": "Storage temporarily unavailable"})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions; always returns JSON."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )
