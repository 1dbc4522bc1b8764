# src/token_relay/retry_policy.py

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Tuple

from .errors import is_retryable_error

lib_logger = logging.getLogger("token_relay")

RetryKey = Tuple[str, str]


def make_retry_key(method: str, path: str) -> RetryKey:
    return (method.upper(), path)


@dataclass
class RetryState:
    """Ledger entry for one (method, path)."""

    attempt: int
    max_attempts: int
    base_delay: float


class RetryPolicy:
    """
    Bounded exponential backoff with jitter for transient failures.

    The ledger is keyed by (method, path), so concurrent calls to the same
    endpoint share one budget. `max_attempts` counts sends: with the default
    of 3, the first two failures are retried and the third is final.

    Delay before retry n (1-based) is base_delay * 2**(n-1) * (1 + jitter),
    jitter drawn uniformly from [0, jitter_factor).
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        jitter_factor: float = 0.3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.jitter_factor = jitter_factor
        self._sleep = sleep
        self._rng = rng
        self._ledger: Dict[RetryKey, RetryState] = {}

    def get_state(self, key: RetryKey) -> Optional[RetryState]:
        return self._ledger.get(key)

    @property
    def pending_keys(self) -> list:
        return list(self._ledger.keys())

    def compute_delay(self, attempt: int) -> float:
        """Backoff in seconds before the retry that follows failure number `attempt`."""
        jitter = self._rng() * self.jitter_factor
        return self.base_delay * (2 ** (attempt - 1)) * (1 + jitter)

    async def should_retry(self, key: RetryKey, error: BaseException) -> bool:
        """
        Decide whether to resend after `error`, sleeping out the backoff first.

        Returns False (and drops the ledger entry) when the error is not
        retryable or the attempt budget for `key` is spent. The entry is also
        dropped when the backoff sleep is cancelled.
        """
        if not is_retryable_error(error):
            self._ledger.pop(key, None)
            return False

        state = self._ledger.get(key)
        if state is None:
            state = RetryState(
                attempt=0, max_attempts=self.max_attempts, base_delay=self.base_delay
            )
            self._ledger[key] = state

        state.attempt += 1
        if state.attempt >= state.max_attempts:
            self._ledger.pop(key, None)
            lib_logger.warning(
                f"Giving up on {key[0]} {key[1]} after {state.attempt} attempt(s)."
            )
            return False

        delay = self.compute_delay(state.attempt)
        lib_logger.info(
            f"Retrying {key[0]} {key[1]} ({state.attempt}/{state.max_attempts - 1}) "
            f"in {delay:.2f}s"
        )
        try:
            await self._sleep(delay)
        except asyncio.CancelledError:
            # The resend never happens, so the attempt is not charged
            self._ledger.pop(key, None)
            raise
        return True

    def record_success(self, key: RetryKey) -> None:
        self._ledger.pop(key, None)

    def reset(self) -> None:
        self._ledger.clear()
