"""Map engine exceptions to JSON error responses."""

from fastapi import Request
from fastapi.responses import JSONResponse

from visualflow.core.exceptions import VisualFlowException
from visualflow.infra.telemetry import get_logger

logger = get_logger(__name__)


async def exception_handler(request: Request, exc: VisualFlowException) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", exc=exc, path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_ERROR",
            "detail": "An unexpected error occurred",
            "status_code": 500,
        },
    )
