"""API Middleware"""

from .request_id import (
    REQUEST_ID_HEADER,
    assign_request_id,
    get_request_id,
    new_request_id
)

__all__ = [
    "REQUEST_ID_HEADER",
    "assign_request_id",
    "get_request_id",
    "new_request_id"
]
