# src/token_relay/scheduler.py

import asyncio
import logging
from typing import Optional

from .credential_store import CredentialPair, CredentialStore
from .expiry import DEFAULT_THRESHOLD_MINUTES, ExpiryEvaluator
from .refresh_coordinator import RefreshCoordinator, RenewalCallback

lib_logger = logging.getLogger("token_relay")

DEFAULT_INTERVAL_SECONDS = 300.0


class ProactiveScheduler:
    """
    A background task that periodically renews the credentials before any
    request would need to.

    Failures are logged and otherwise ignored: a request that later hits a
    401 still renews reactively.
    """

    def __init__(
        self,
        store: CredentialStore,
        evaluator: ExpiryEvaluator,
        coordinator: RefreshCoordinator,
        renewal_callback: RenewalCallback,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        threshold_minutes: float = DEFAULT_THRESHOLD_MINUTES,
    ):
        self._store = store
        self._evaluator = evaluator
        self._coordinator = coordinator
        self._renewal_callback = renewal_callback
        self._interval = interval
        self._threshold_minutes = threshold_minutes
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def attach(self) -> None:
        """(Re)start on every credential set and stop on every clear."""
        self._store.add_set_listener(self._on_credentials_set)
        self._store.add_clear_listener(self.cancel)

    def _on_credentials_set(self, pair: CredentialPair) -> None:
        self.start(restart=True)

    def start(self, restart: bool = False) -> None:
        """Starts the background refresh task."""
        if self.running:
            if not restart:
                return
            self.cancel()
        self._task = asyncio.create_task(self._run())
        lib_logger.debug(
            f"Proactive refresh scheduled every {self._interval} seconds."
        )

    def cancel(self) -> None:
        """Cancels the background task without waiting for it."""
        if self._task is not None:
            if not self._task.done():
                self._task.cancel()
                lib_logger.debug("Proactive refresh cancelled.")
            self._task = None

    async def stop(self):
        """Stops the background refresh task and waits for it to finish."""
        task = self._task
        self.cancel()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def tick(self) -> bool:
        """
        Run one check. Returns True when a renewal was started and succeeded.
        """
        if self._coordinator.in_flight:
            lib_logger.debug("Renewal already in flight; skipping proactive check.")
            return False
        if not self._store.has_credentials():
            return False
        if not self._evaluator.is_access_expiring_soon(self._threshold_minutes):
            return False

        lib_logger.info("Access credential expiring soon; renewing proactively.")
        result = await self._coordinator.renew(self._renewal_callback)
        if result.is_err:
            lib_logger.warning(f"Proactive renewal failed: {result.error.message}")
            return False
        return True

    async def _run(self):
        """The main loop for the background task."""
        while True:
            try:
                await asyncio.sleep(self._interval)
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                lib_logger.error(f"Unexpected error in proactive refresh loop: {e}")
