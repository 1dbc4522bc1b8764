# src/token_relay/notifications.py

import logging
from typing import Optional, Protocol

from .errors import CRITICAL_ERROR_TYPES, AppError

lib_logger = logging.getLogger("token_relay")


class NotificationHandler(Protocol):
    """Renders user-facing messages. Implemented by the host application."""

    def show_error(self, message: str) -> None:
        """Blocking/prominent notification (dialog)."""

    def show_toast(self, message: str) -> None:
        """Lightweight notification."""


class NoOpNotificationHandler:
    def show_error(self, message: str) -> None:
        pass

    def show_toast(self, message: str) -> None:
        pass


class LoggingNotificationHandler:
    """Writes notifications to a logger; useful for CLIs and headless runs."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._logger = logger or logging.getLogger("token_relay.notifications")

    def show_error(self, message: str) -> None:
        self._logger.error(message)

    def show_toast(self, message: str) -> None:
        self._logger.warning(message)


class ErrorReporter:
    """
    Logs every error and forwards the non-silent ones to the user.

    Silent errors (expected "not found" during a login probe, token
    bookkeeping failures) stay observable to calling code and in the logs but
    never produce a notification.
    """

    def __init__(self, handler: Optional[NotificationHandler] = None):
        self._handler = handler or NoOpNotificationHandler()

    def set_handler(self, handler: NotificationHandler) -> None:
        self._handler = handler

    def report(self, error: AppError) -> None:
        summary = (
            f"AppError type={error.type} status={error.status_code} "
            f"code={error.code}: {error.message}"
        )
        if error.silent:
            # Not shown to the user, but still recorded
            lib_logger.info(f"Silent {summary}")
            return
        lib_logger.debug(summary)
        try:
            if error.type in CRITICAL_ERROR_TYPES:
                self._handler.show_error(error.message)
            else:
                self._handler.show_toast(error.message)
        except Exception as e:
            lib_logger.error(f"Notification handler failed: {e}")
