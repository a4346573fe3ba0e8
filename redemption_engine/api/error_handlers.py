"""
Exception handlers mapping engine errors to HTTP responses

Every error is rendered as:
    {"success": false, "error": {"code", "message", "context"}, "timestamp"}
"""
import logging
import time
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from redemption_engine.errors import ErrorCodes, RedemptionEngineError

logger = logging.getLogger(__name__)

VALIDATION_ERROR = "ValidationError"
HTTP_ERROR = "HttpError"


def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    context: Optional[Dict[str, Any]] = None
) -> JSONResponse:
    """Create standardized error response"""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {
                "code": error_code,
                "message": message,
                "context": context or {}
            },
            "timestamp": time.time()
        }
    )


async def engine_exception_handler(request: Request, exc: RedemptionEngineError):
    """Handle every RedemptionEngineError subclass"""
    if exc.category == "infrastructure":
        logger.error(f"Infrastructure error on {request.url.path}: {exc.message}")
    elif exc.category in ("credential", "review"):
        logger.warning(f"{exc.code} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.url.path}: {exc.message}")

    return create_error_response(exc.code, exc.message, exc.status_code, exc.context)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(str(loc) for loc in e.get("loc", [])),
            "message": e.get("msg")
        }
        for e in exc.errors()
    ]
    return create_error_response(
        VALIDATION_ERROR,
        "Request validation failed",
        422,
        {"errors": errors}
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    return create_error_response(HTTP_ERROR, str(exc.detail), exc.status_code)


async def general_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.url.path}: {exc}")
    return create_error_response(
        ErrorCodes.INFRASTRUCTURE_ERROR,
        "Internal server error",
        500
    )


def add_error_handlers(app):
    """Add all error handlers to FastAPI app"""
    app.add_exception_handler(RedemptionEngineError, engine_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
