"""Exception handler middleware for structured error responses."""

import logging
from fastapi import Request
from fastapi.responses import JSONResponse
from ..exceptions import ConsistencyError, ContextVCException, NotFoundError

logger = logging.getLogger(__name__)


def _log_level(exc: ContextVCException) -> int:
    if isinstance(exc, ConsistencyError):
        return logging.CRITICAL
    if isinstance(exc, NotFoundError):
        return logging.INFO
    if exc.status_code >= 500:
        return logging.ERROR
    return logging.WARNING


async def contextvc_exception_handler(request: Request, exc: ContextVCException) -> JSONResponse:
    """
    Handle custom exceptions and return structured JSON responses.

    Absence (404) is logged at INFO, bad input at WARNING, storage
    failures at ERROR and broken invariants at CRITICAL.

    Args:
        request: FastAPI request object
        exc: ContextVCException instance

    Returns:
        JSONResponse with error details
    """
    logger.log(
        _log_level(exc),
        f"ContextVCException: {exc.error_code.value}",
        extra={
            "error_code": exc.error_code.value,
            "path": request.url.path,
            "method": request.method,
            "details": exc.details,
            "status_code": exc.status_code
        }
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict()
    )
