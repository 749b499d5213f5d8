"""
===============================================================================
MODULE: HTTP middleware (request context)
===============================================================================

RequestContextMiddleware:
  - Accept a well-formed X-Request-Id or mint a UUID4
  - Expose it on request.state and in the logging ContextVars
  - One access log line per request, except health checks and scrapes (/healthz, /metrics)
  - Reset the ContextVars when the request ends

Collaborators:
  - rag_engine/context.py
  - crosscutting/logger.py
===============================================================================
"""

from __future__ import annotations

import re
import time
import uuid
from typing import Awaitable, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..context import clear_context, set_request_context
from .logger import logger

REQUEST_ID_HEADER = "X-Request-Id"
QUIET_PATHS = frozenset({"/healthz", "/metrics"})

_SAFE_REQUEST_ID = re.compile(r"[A-Za-z0-9._-]{1,128}")


def resolve_request_id(header_value: str | None) -> str:
    candidate = (header_value or "").strip()
    if _SAFE_REQUEST_ID.fullmatch(candidate):
        return candidate
    return str(uuid.uuid4())


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        set_request_context(request_id=request_id)

        started = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Request failed", extra={"method": request.method})
            raise
        else:
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            if request.url.path not in QUIET_PATHS:
                logger.info(
                    "Request handled",
                    extra={
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": response.status_code if response else 500,
                        "latency_ms": round((time.perf_counter() - started) * 1000, 2),
                    },
                )
            clear_context()
