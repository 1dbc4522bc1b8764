# src/token_relay/envelope.py
"""
Response envelope handling.

Every API response body is one of:

    {"status": "SUCCESS", "data": ..., "message": "...", "timestamp": "..."}
    {"status": "ERROR", "message": "...", "error": {"code": "...", "details": ...}, "timestamp": "..."}

A SUCCESS envelope surfaces only `data`. An ERROR envelope arriving with a
2xx status is a business error, distinct from an HTTP error.
"""

from typing import Any

import httpx

from .errors import BUSINESS_ERROR, BusinessError

STATUS_SUCCESS = "SUCCESS"
STATUS_ERROR = "ERROR"


def is_envelope(body: Any) -> bool:
    return isinstance(body, dict) and body.get("status") in (STATUS_SUCCESS, STATUS_ERROR)


def decode_body(response: httpx.Response) -> Any:
    """JSON when possible, text otherwise; None for an empty body."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def business_error_from_envelope(body: dict, silent: bool = False) -> BusinessError:
    error_part = body.get("error") if isinstance(body.get("error"), dict) else {}
    code = error_part.get("code") or BUSINESS_ERROR
    error = BusinessError(
        body.get("message") or "",
        code=code,
        details=error_part.get("details"),
    )
    if silent:
        error.silent = True
    return error


def unwrap_response(response: httpx.Response, silent: bool = False) -> Any:
    """
    Return the payload of a successful response.

    Raises:
        BusinessError: when the body is an ERROR envelope
    """
    body = decode_body(response)
    if not is_envelope(body):
        return body
    if body["status"] == STATUS_SUCCESS:
        return body.get("data")
    raise business_error_from_envelope(body, silent=silent)
