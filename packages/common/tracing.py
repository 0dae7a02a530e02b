"""Tracing helpers for FastAPI.

Adds a request-level trace middleware that injects/propagates `X-Request-ID`
and logs method, path, status and latency for every request.
"""

from .logging import set_request_id
from fastapi import Request, Response
from typing import Callable, Awaitable
import logging, time, uuid

log = logging.getLogger("assessment.http")


async def trace_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    """ASGI middleware to attach a correlation id and echo it in the response.

    - Reads `X-Request-ID` from the incoming request or generates a UUIDv4.
    - Stores it in a ContextVar so logs include the same id.
    - Sets the same header on the outgoing response.
    """
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    set_request_id(rid)
    t0 = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Request-ID"] = rid
    log.info(
        "%s %s -> %d (%.1f ms)",
        request.method, request.url.path, response.status_code, (time.perf_counter() - t0) * 1000,
    )
    return response
