"""JSON-RPC error responses written by the proxy."""

from __future__ import annotations

import json
import logging
from http import HTTPStatus

logger = logging.getLogger(__name__)

RATE_LIMIT_ERROR_CODE = -32000
RATE_LIMIT_ERROR_MESSAGE = "agent exceeds scan node request limit"

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


def _request_id(body: bytes | str) -> int:
    text = body.decode("utf-8") if isinstance(body, (bytes, bytearray)) else body
    text = text.lstrip()
    if not text:
        raise ValueError("empty request body")
    payload, _ = json.JSONDecoder().raw_decode(text)
    if payload is None:
        return 0
    if not isinstance(payload, dict):
        raise ValueError("request body is not a JSON object")
    request_id = payload.get("id")
    if request_id is None:
        return 0
    if isinstance(request_id, bool) or not isinstance(request_id, int):
        raise ValueError(f"request id is not an integer: {request_id!r}")
    if not _INT64_MIN <= request_id <= _INT64_MAX:
        raise ValueError(f"request id out of range: {request_id}")
    return request_id


def too_many_requests_response(body: bytes | str) -> tuple[int, bytes]:
    """Build the status and body answering a rate-limited JSON-RPC request.

    The body is empty when the request cannot be decoded.
    """
    status = int(HTTPStatus.TOO_MANY_REQUESTS)
    try:
        request_id = _request_id(body)
    except ValueError as exc:
        logger.error("failed to decode jsonrpc request body: %s", exc)
        return status, b""

    response = {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": {"code": RATE_LIMIT_ERROR_CODE, "message": RATE_LIMIT_ERROR_MESSAGE},
    }
    return status, (json.dumps(response, separators=(",", ":")) + "\n").encode("utf-8")