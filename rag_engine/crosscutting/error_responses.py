"""
===============================================================================
MODULE: Problem Details responses (RFC 7807)
===============================================================================

Every HTTP error leaves the engine as application/problem+json with a
stable ``code``, so clients branch on the code and operators correlate
through request_id / error_id.

-------------------------------------------------------------------------------
CRC (Component Card)
-------------------------------------------------------------------------------
Component:
  AppHTTPException + problem_response() + handlers

Responsibilities:
  - Catalog of error codes (ErrorCode)
  - Problem Details body (ErrorDetail)
  - Shortcuts for the errors the routers raise
  - FastAPI handlers

Collaborators:
  - crosscutting/middleware.py (request_id on request.state)
  - api/exception_handlers.py (engine errors -> AppHTTPException)
===============================================================================
"""

from __future__ import annotations

from enum import Enum
from http import HTTPStatus
from typing import Any, Mapping

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

PROBLEM_JSON_MEDIA_TYPE = "application/problem+json"


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    ALL_PROVIDERS_FAILED = "ALL_PROVIDERS_FAILED"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    QUERY_TIMEOUT = "QUERY_TIMEOUT"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


class ErrorDetail(BaseModel):
    """Problem Details body plus ``code`` and optional ``errors`` entries."""

    type: str = "about:blank"
    title: str
    status: int
    detail: str
    code: ErrorCode
    instance: str | None = None
    errors: list[dict[str, Any]] | None = None


OPENAPI_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    status: {
        "description": f"{label} (problem+json)",
        "model": ErrorDetail,
        "content": {
            PROBLEM_JSON_MEDIA_TYPE: {"schema": {"$ref": "#/components/schemas/ErrorDetail"}}
        },
    }
    for status, label in (
        (404, "Not Found"),
        (422, "Validation Error"),
        (503, "Service Unavailable"),
        ("default", "Error"),
    )
}


class AppHTTPException(HTTPException):
    """HTTPException carrying an ErrorCode, optional details and headers (Retry-After)."""

    def __init__(
        self,
        status_code: int,
        code: ErrorCode,
        detail: str,
        errors: list[dict[str, Any]] | None = None,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.code = code
        self.errors = errors


def validation_error(detail: str, errors: list[dict[str, Any]] | None = None) -> AppHTTPException:
    return AppHTTPException(422, ErrorCode.VALIDATION_ERROR, detail, errors)


def not_found(resource: str, identifier: str) -> AppHTTPException:
    return AppHTTPException(404, ErrorCode.NOT_FOUND, f"{resource} '{identifier}' not found")


def service_unavailable(
    code: ErrorCode, detail: str, *, retry_after: int | None = None
) -> AppHTTPException:
    headers = None if retry_after is None else {"Retry-After": str(retry_after)}
    return AppHTTPException(503, code, detail, headers=headers)


def internal_error(detail: str = "An unexpected error occurred") -> AppHTTPException:
    return AppHTTPException(500, ErrorCode.INTERNAL_ERROR, detail)


def problem_response(
    request: Request,
    *,
    status: int,
    code: ErrorCode,
    detail: str,
    errors: list[dict[str, Any]] | None = None,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    """Render a problem+json response; the request id is appended to ``errors``."""
    request_id = getattr(request.state, "request_id", None)
    entries = list(errors or [])
    if request_id:
        entries.append({"request_id": request_id})

    body = ErrorDetail(
        type=f"about:blank/{code.value.lower()}",
        title=HTTPStatus(status).phrase,
        status=status,
        detail=detail,
        code=code,
        instance=str(request.url),
        errors=entries or None,
    )
    return JSONResponse(
        status_code=status,
        content=body.model_dump(mode="json", exclude_none=True),
        headers=dict(headers) if headers else None,
        media_type=PROBLEM_JSON_MEDIA_TYPE,
    )


async def app_exception_handler(request: Request, exc: AppHTTPException) -> JSONResponse:
    return problem_response(
        request,
        status=exc.status_code,
        code=exc.code,
        detail=str(exc.detail),
        errors=exc.errors,
        headers=exc.headers,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # The message of an untyped exception never reaches the client.
    return problem_response(
        request,
        status=500,
        code=ErrorCode.INTERNAL_ERROR,
        detail="An unexpected error occurred",
    )
