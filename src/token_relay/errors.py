# src/token_relay/errors.py

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

lib_logger = logging.getLogger("token_relay")


# =============================================================================
# ERROR TYPES
# =============================================================================

# Authentication
AUTH_TOKEN_EXPIRED = "AUTH_TOKEN_EXPIRED"
AUTH_TOKEN_INVALID = "AUTH_TOKEN_INVALID"
AUTH_PERMISSION_DENIED = "AUTH_PERMISSION_DENIED"
UNAUTHENTICATED = "UNAUTHENTICATED"

# HTTP
DATA_VALIDATION_FAILED = "DATA_VALIDATION_FAILED"
DATA_NOT_FOUND = "DATA_NOT_FOUND"
CONFLICT = "CONFLICT"
FILE_TOO_LARGE = "FILE_TOO_LARGE"
VALIDATION_ERROR = "VALIDATION_ERROR"
RATE_LIMIT = "RATE_LIMIT"
SERVER_ERROR = "SERVER_ERROR"
BAD_GATEWAY = "BAD_GATEWAY"
SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

# Network
NETWORK_ERROR = "NETWORK_ERROR"
TIMEOUT = "TIMEOUT"
REQUEST_ERROR = "REQUEST_ERROR"
REQUEST_BLOCKED = "REQUEST_BLOCKED"

# Token management
TOKEN_STORAGE_ERROR = "TOKEN_STORAGE_ERROR"
TOKEN_NOT_FOUND = "TOKEN_NOT_FOUND"
TOKEN_REFRESH_FAILED = "TOKEN_REFRESH_FAILED"

# Business
BUSINESS_ERROR = "BUSINESS_ERROR"
UNKNOWN_ERROR = "UNKNOWN_ERROR"

_STATUS_TO_TYPE = {
    400: DATA_VALIDATION_FAILED,
    401: AUTH_TOKEN_INVALID,
    403: AUTH_PERMISSION_DENIED,
    404: DATA_NOT_FOUND,
    409: CONFLICT,
    413: FILE_TOO_LARGE,
    422: VALIDATION_ERROR,
    429: RATE_LIMIT,
    500: SERVER_ERROR,
    502: BAD_GATEWAY,
    503: SERVICE_UNAVAILABLE,
}

_DEFAULT_STATUS_MESSAGES = {
    400: "Bad request.",
    401: "Authentication required.",
    403: "You do not have permission to perform this action.",
    404: "The requested resource was not found.",
    409: "The resource already exists.",
    422: "The submitted data is invalid.",
    429: "Too many requests. Please try again shortly.",
    500: "The server encountered an error.",
    502: "The server could not be reached.",
    503: "The service is temporarily unavailable.",
}

# Business error codes that are part of normal flows and never shown to the user
SILENT_ERROR_CODES = frozenset(
    {
        AUTH_TOKEN_EXPIRED,  # handled by redirecting to login
        "USER_NOT_FOUND",  # expected during a login probe for new users
        TOKEN_STORAGE_ERROR,
        TOKEN_NOT_FOUND,
        TOKEN_REFRESH_FAILED,
    }
)

# Types surfaced as a blocking dialog rather than a toast
CRITICAL_ERROR_TYPES = frozenset({SERVER_ERROR, NETWORK_ERROR, AUTH_PERMISSION_DENIED})


def map_http_status_to_error_type(status_code: int) -> str:
    return _STATUS_TO_TYPE.get(status_code, SERVER_ERROR)


def default_message_for_status(status_code: int) -> str:
    return _DEFAULT_STATUS_MESSAGES.get(status_code, "An unknown error occurred.")


def mask_credential(credential: Optional[str]) -> str:
    """
    Mask a credential for safe display in logs and error messages.

    Shows the last 6 characters of long values (e.g. "...xyz123").
    """
    if not credential:
        return "<none>"
    if len(credential) > 6:
        return f"...{credential[-6:]}"
    return "***"


# =============================================================================
# EXCEPTION HIERARCHY
# =============================================================================


class AppError(Exception):
    """
    Base class for every error the pipeline reports.

    Attributes:
        type: Error type constant (e.g. "NETWORK_ERROR", "AUTH_TOKEN_INVALID")
        message: Human-readable message, safe to show to a user
        retryable: Whether retrying the same call may succeed
        silent: Whether the error must be kept away from user notifications
        status_code: HTTP status when a response was received
        code: Server-provided error code, if any
        details: Server-provided error details, if any
        timestamp: ISO-8601 time the error was created
    """

    default_type = UNKNOWN_ERROR

    def __init__(
        self,
        message: str = "",
        *,
        type: Optional[str] = None,
        retryable: bool = False,
        silent: bool = False,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Any = None,
    ):
        self.type = type or self.default_type
        self.message = message or "An unknown error occurred."
        self.retryable = retryable
        self.silent = silent
        self.status_code = status_code
        self.code = code
        self.details = details
        self.timestamp = datetime.now(timezone.utc).isoformat()
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "message": self.message,
            "retryable": self.retryable,
            "silent": self.silent,
            "status_code": self.status_code,
            "code": self.code,
            "timestamp": self.timestamp,
        }

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(type={self.type!r}, status={self.status_code}, "
            f"message={self.message!r})"
        )


class StorageError(AppError):
    """Raised when the persistence backend fails to read or write credentials."""

    default_type = TOKEN_STORAGE_ERROR

    def __init__(self, message: str = "", **kwargs):
        kwargs.setdefault("silent", True)
        super().__init__(
            message or "Failed to persist authentication data.", **kwargs
        )


class NotFoundError(AppError):
    """Raised when no refresh credential is available for a renewal."""

    default_type = TOKEN_NOT_FOUND

    def __init__(self, message: str = "", **kwargs):
        kwargs.setdefault("silent", True)
        super().__init__(message or "No refresh credential is available.", **kwargs)


class RenewalFailedError(AppError):
    """Raised when the renewal callback rejected, raised, or timed out."""

    default_type = TOKEN_REFRESH_FAILED

    def __init__(self, message: str = "", **kwargs):
        kwargs.setdefault("silent", True)
        super().__init__(message or "Failed to renew the credentials.", **kwargs)


class NetworkError(AppError):
    """Raised when a request received no response at all."""

    default_type = NETWORK_ERROR

    def __init__(self, message: str = "", **kwargs):
        kwargs.setdefault("retryable", True)
        super().__init__(message or "Please check your network connection.", **kwargs)


class HttpError(AppError):
    """Raised when a response was received with an error status."""

    default_type = SERVER_ERROR

    def __init__(self, status_code: int, message: str = "", **kwargs):
        kwargs.setdefault("type", map_http_status_to_error_type(status_code))
        kwargs.setdefault("retryable", status_code >= 500 or status_code == 429)
        super().__init__(
            message or default_message_for_status(status_code),
            status_code=status_code,
            **kwargs,
        )

    @property
    def is_server_error(self) -> bool:
        return 500 <= self.status_code < 600


class BusinessError(AppError):
    """Raised when a 200 response carries an ERROR envelope."""

    default_type = BUSINESS_ERROR

    def __init__(self, message: str = "", **kwargs):
        code = kwargs.get("code")
        kwargs.setdefault("silent", code in SILENT_ERROR_CODES)
        kwargs.setdefault("status_code", 200)
        if code and "type" not in kwargs:
            kwargs["type"] = code
        super().__init__(message or "The request could not be processed.", **kwargs)


class RequestBlockedError(AppError):
    """Raised when withdrawal mode blocks a request before it is sent."""

    default_type = REQUEST_BLOCKED

    def __init__(self, path: str, message: str = "", **kwargs):
        self.path = path
        kwargs.setdefault("silent", True)
        super().__init__(
            message or f"Request to '{path}' blocked during withdrawal.", **kwargs
        )


class UnauthenticatedError(AppError):
    """Raised when the pipeline rejects a request because the session is gone."""

    default_type = UNAUTHENTICATED

    def __init__(self, message: str = "", **kwargs):
        kwargs.setdefault("silent", True)
        super().__init__(message or "Authentication required.", **kwargs)


# =============================================================================
# CLASSIFICATION
# =============================================================================


def http_error_from_response(response: httpx.Response, silent: bool = False) -> HttpError:
    """
    Build an HttpError from an error response, preferring the server's own
    message and error code when the body is an envelope.
    """
    message = ""
    code = None
    details = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get("message") or ""
        error_part = body.get("error")
        if isinstance(error_part, dict):
            code = error_part.get("code")
            details = error_part.get("details")
    return HttpError(
        response.status_code, message, code=code, details=details, silent=silent
    )


def classify_exception(error: BaseException, silent: bool = False) -> AppError:
    """
    Convert any exception raised around a request into an AppError.

    - AppError: returned unchanged
    - httpx.TimeoutException: NetworkError with type TIMEOUT
    - httpx.TransportError: NetworkError
    - httpx.HTTPStatusError: HttpError built from the response
    - anything else: AppError of type UNKNOWN_ERROR
    """
    if isinstance(error, AppError):
        return error
    if isinstance(error, httpx.TimeoutException):
        return NetworkError("The request timed out.", type=TIMEOUT, silent=silent)
    if isinstance(error, httpx.TransportError):
        return NetworkError(silent=silent)
    if isinstance(error, httpx.HTTPStatusError):
        return http_error_from_response(error.response, silent=silent)
    return AppError(str(error) or type(error).__name__, silent=silent)


def is_retryable_error(error: BaseException) -> bool:
    """Only network failures and 5xx responses are worth retrying."""
    if isinstance(error, NetworkError):
        return True
    if isinstance(error, HttpError):
        return error.is_server_error
    return False
