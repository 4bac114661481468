"""
Request Correlation Middleware
Tags every HTTP request with a short id that appears in logs and in error
envelopes as requestId.
"""

import secrets
import time
from fastapi import Request

REQUEST_ID_HEADER = "X-Request-ID"


def new_request_id() -> str:
    return f"{int(time.time() * 1000):x}{secrets.token_hex(3)}"


async def assign_request_id(request: Request, call_next):
    """HTTP middleware: reuse the caller's X-Request-ID or mint one"""
    request.state.request_id = request.headers.get(REQUEST_ID_HEADER) or new_request_id()
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request.state.request_id
    return response


def get_request_id(request: Request) -> str:
    """Dependency returning the current request's id"""
    request_id = getattr(request.state, "request_id", None)
    if request_id is None:
        request_id = new_request_id()
        request.state.request_id = request_id
    return request_id
