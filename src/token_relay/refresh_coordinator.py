# src/token_relay/refresh_coordinator.py
"""
Single-flight credential renewal.

At most one renewal runs per coordinator. Every caller that arrives while it
is running awaits the same task and receives the same Result; none of them
starts a second network exchange.

Concurrency note: the check of `_inflight` and its assignment in renew() are
separated by no `await`, so on a single asyncio event loop no other task can
run between them and no lock is needed. Sharing a coordinator across threads
or event loops would require guarding that check-and-set with a mutex.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Union

from .credential_store import CredentialPair, CredentialStore
from .errors import (
    AUTH_TOKEN_EXPIRED,
    AppError,
    NotFoundError,
    RenewalFailedError,
    mask_credential,
)
from .expiry import ExpiryEvaluator
from .failure_logger import log_failure
from .result import Err, Ok, Result

lib_logger = logging.getLogger("token_relay")

RenewalCallback = Callable[[], Awaitable[Union[CredentialPair, Result]]]


class RefreshCoordinator:
    def __init__(
        self,
        store: CredentialStore,
        evaluator: Optional[ExpiryEvaluator] = None,
        timeout: Optional[float] = None,
    ):
        """
        Args:
            store: Credential store updated on success and cleared on failure
            evaluator: When given, a refresh credential it reports as expired
                is never sent; local credentials are cleared instead
            timeout: Seconds the renewal callback may take; None disables
        """
        self._store = store
        self._evaluator = evaluator
        self._timeout = timeout
        self._inflight: Optional[asyncio.Task] = None
        self._renewal_count = 0

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None

    @property
    def renewal_count(self) -> int:
        """Number of renewals physically started by this coordinator."""
        return self._renewal_count

    async def renew(self, renewal_callback: RenewalCallback) -> Result[bool]:
        """
        Renew the credential pair, joining an in-flight renewal if there is one.

        Returns Ok(True) on success, or Err with NotFoundError (no refresh
        credential), RenewalFailedError (callback failed, rejected or timed
        out; the original error is kept as __cause__) or StorageError (new
        pair could not be saved). Failures after a renewal has started clear
        local credentials.
        """
        task = self._inflight
        if task is None:
            if not self._store.refresh_token:
                return Err(NotFoundError())
            self._renewal_count += 1
            task = asyncio.create_task(self._run(renewal_callback))
            self._inflight = task
            lib_logger.debug(f"Renewal #{self._renewal_count} started.")
        else:
            lib_logger.debug("Renewal already in flight; joining it.")

        # Callers may be cancelled while waiting; the renewal itself always completes
        return await asyncio.shield(task)

    async def wait_idle(self) -> None:
        """Wait for the in-flight renewal, if any, to finish."""
        task = self._inflight
        if task is not None:
            await asyncio.wait({task})

    async def _run(self, renewal_callback: RenewalCallback) -> Result[bool]:
        try:
            return await self._execute(renewal_callback)
        finally:
            # Cleared before the task completes, i.e. before any waiter resumes
            self._inflight = None

    async def _execute(self, renewal_callback: RenewalCallback) -> Result[bool]:
        refresh_token = self._store.refresh_token

        if self._evaluator is not None and self._evaluator.is_refresh_expired():
            lib_logger.info(
                f"Refresh credential {mask_credential(refresh_token)} has expired; "
                f"skipping renewal."
            )
            return await self._fail(
                RenewalFailedError(
                    "The refresh credential has expired.", code=AUTH_TOKEN_EXPIRED
                )
            )

        try:
            if self._timeout is not None:
                outcome = await asyncio.wait_for(renewal_callback(), timeout=self._timeout)
            else:
                outcome = await renewal_callback()
        except asyncio.TimeoutError as e:
            error = RenewalFailedError(f"Renewal timed out after {self._timeout}s.")
            error.__cause__ = e
            return await self._fail(error)
        except AppError as e:
            return await self._fail(self._as_renewal_error(e))
        except Exception as e:
            error = RenewalFailedError(f"Renewal raised {type(e).__name__}: {e}")
            error.__cause__ = e
            return await self._fail(error)

        if isinstance(outcome, Result):
            if outcome.is_err:
                return await self._fail(self._as_renewal_error(outcome.error))
            outcome = outcome.value
        if not isinstance(outcome, CredentialPair):
            return await self._fail(
                RenewalFailedError(
                    f"Renewal returned {type(outcome).__name__}, expected a credential pair."
                )
            )

        saved = await self._store.set(outcome)
        if saved.is_err:
            return await self._fail(saved.error)

        lib_logger.info(
            f"Credentials renewed; access credential now expires {outcome.access_expires_at}."
        )
        return Ok(True)

    async def _fail(self, error: AppError) -> Result[bool]:
        log_failure("renewal", error)
        cleared = await self._store.clear()
        if cleared.is_err:
            lib_logger.error(
                f"Could not clear credentials after failed renewal: {cleared.error.message}"
            )
        return Err(error)

    @staticmethod
    def _as_renewal_error(error: AppError) -> RenewalFailedError:
        """Report a rejection from the callback as a renewal failure, keeping its details."""
        if isinstance(error, RenewalFailedError):
            return error
        wrapped = RenewalFailedError(
            f"Renewal rejected: {error.message}",
            status_code=error.status_code,
            code=error.code,
            details=error.details,
        )
        wrapped.__cause__ = error
        return wrapped
