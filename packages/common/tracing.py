"""Tracing helpers for FastAPI.

Adds a request-level trace middleware that injects/propagates `X-Request-ID`
so every log line of a request carries the same correlation id, and writes
one access log line per request.
"""

from .logging import set_request_id
from fastapi import Request, Response
from typing import Callable, Awaitable
import logging, time, uuid

log = logging.getLogger("quizcore.access")


async def trace_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    """ASGI middleware to attach a correlation id and echo it in the response.

    - Reads `X-Request-ID` from the incoming request or generates a UUIDv4.
    - Stores it in a ContextVar so logs include the same id.
    - Logs method, path, status and latency once the response is ready.
    - Sets the same header on the outgoing response.
    """
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    set_request_id(rid)
    t0 = time.perf_counter()
    try:
        response = await call_next(request)
        log.info("request", extra={"ctx": {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "ms": round((time.perf_counter() - t0) * 1000, 2),
        }})
    finally:
        set_request_id(None)
    response.headers["X-Request-ID"] = rid
    return response
