from typing import TYPE_CHECKING

from .config import ApiConfig, ConfigLoadError, ConfigValidationError
from .credential_store import (
    CredentialPair,
    CredentialState,
    CredentialStore,
    InitializeOutcome,
)
from .errors import (
    AppError,
    BusinessError,
    HttpError,
    NetworkError,
    NotFoundError,
    RenewalFailedError,
    RequestBlockedError,
    StorageError,
    UnauthenticatedError,
)
from .expiry import ExpiryEvaluator
from .notifications import (
    ErrorReporter,
    LoggingNotificationHandler,
    NoOpNotificationHandler,
    NotificationHandler,
)
from .pipeline import RequestPipeline, UnauthorizedReason
from .refresh_coordinator import RefreshCoordinator
from .result import Err, Ok, Result
from .retry_policy import RetryPolicy
from .scheduler import ProactiveScheduler
from .storage import JsonFileStorage, KeyValueStorage, MemoryStorage

# configure_logging pulls in colorlog; it is loaded on first access
if TYPE_CHECKING:
    from .logging_setup import configure_logging

__all__ = [
    "ApiConfig",
    "ConfigLoadError",
    "ConfigValidationError",
    "CredentialPair",
    "CredentialState",
    "CredentialStore",
    "InitializeOutcome",
    "AppError",
    "BusinessError",
    "HttpError",
    "NetworkError",
    "NotFoundError",
    "RenewalFailedError",
    "RequestBlockedError",
    "StorageError",
    "UnauthenticatedError",
    "ExpiryEvaluator",
    "ErrorReporter",
    "LoggingNotificationHandler",
    "NoOpNotificationHandler",
    "NotificationHandler",
    "RequestPipeline",
    "UnauthorizedReason",
    "RefreshCoordinator",
    "Err",
    "Ok",
    "Result",
    "RetryPolicy",
    "ProactiveScheduler",
    "JsonFileStorage",
    "KeyValueStorage",
    "MemoryStorage",
    "configure_logging",
]


def __getattr__(name):
    """Lazy-load configure_logging so importing the library stays light."""
    if name == "configure_logging":
        from .logging_setup import configure_logging

        return configure_logging
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
