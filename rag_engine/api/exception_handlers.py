"""
===============================================================================
CRC CARD: api/exception_handlers.py (centralized exception mapping)
===============================================================================

Responsibilities:
  - Translate exceptions that escape the routers into RFC 7807 responses.
  - Log service errors with request_id + error_id.
  - Never leak internal details for untyped exceptions.

Collaborators:
  - crosscutting.error_responses: AppHTTPException, app_exception_handler
  - crosscutting.exceptions: RAGError hierarchy
  - interfaces.api.http.error_mapping.to_http_error
===============================================================================
"""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..crosscutting.config import get_settings
from ..crosscutting.error_responses import (
    AppHTTPException,
    ErrorCode,
    app_exception_handler,
    validation_error,
)
from ..crosscutting.exceptions import RAGError
from ..crosscutting.logger import logger
from ..interfaces.api.http.error_mapping import to_http_error


def _request_id_from(request: Request) -> str | None:
    return getattr(getattr(request, "state", None), "request_id", None)


async def rag_error_handler(request: Request, exc: RAGError) -> JSONResponse:
    request_id = _request_id_from(request)
    app_exc = to_http_error(exc)
    logger.error(
        "Service error",
        extra={
            "code": app_exc.code.value,
            "error_id": exc.error_id,
            "error_message": exc.message,
            "request_id": request_id,
        },
    )
    app_exc.errors = [{"error_id": exc.error_id}]
    return await app_exception_handler(request, app_exc)


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return await app_exception_handler(
        request, validation_error("Request validation failed", errors)
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = _request_id_from(request)
    logger.error(
        "Unhandled exception",
        exc_info=True,
        extra={"request_id": request_id, "error": str(exc)},
    )
    detail = "Internal error." if get_settings().is_production() else str(exc)
    app_exc = AppHTTPException(status_code=500, code=ErrorCode.INTERNAL_ERROR, detail=detail)
    return await app_exception_handler(request, app_exc)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppHTTPException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(RAGError, rag_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
