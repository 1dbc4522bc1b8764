# src/token_relay/expiry.py

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Optional, Tuple

if TYPE_CHECKING:
    from .credential_store import CredentialStore

lib_logger = logging.getLogger("token_relay")

DEFAULT_THRESHOLD_MINUTES = 10
DEFAULT_CACHE_TTL_SECONDS = 1.0


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    A trailing "Z" is accepted and naive values are read as UTC.
    Returns None for missing or malformed values.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_past(value: Optional[str], now: datetime, missing_is_past: bool) -> bool:
    """True when `now` is at or after the timestamp; unparseable values yield `missing_is_past`."""
    moment = parse_timestamp(value)
    if moment is None:
        return missing_is_past
    return now >= moment


class ExpiryEvaluator:
    """
    Answers the two expiry questions the pipeline asks before sending.

    is_access_expiring_soon() fails open (a broken timestamp is "not
    expiring") because a 401 will trigger a reactive renewal anyway.
    is_refresh_expired() fails closed because it decides whether a renewal
    is attempted at all.

    The access check is cached for a short TTL so a burst of requests does
    one computation. The cached answer is reused only while the access expiry
    and threshold it was computed from are unchanged.
    """

    def __init__(
        self,
        store: "CredentialStore",
        cache_ttl: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._cache_ttl = cache_ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._monotonic = monotonic
        self._last_checked_at: Optional[float] = None
        self._last_result = False
        self._last_basis: Optional[Tuple[Optional[str], float]] = None

    def now(self) -> datetime:
        return self._clock()

    def is_access_expiring_soon(
        self, threshold_minutes: float = DEFAULT_THRESHOLD_MINUTES
    ) -> bool:
        pair = self._store.get()
        expires_at = pair.access_expires_at if pair else None
        basis = (expires_at, threshold_minutes)

        checked_at = self._monotonic()
        if (
            self._last_checked_at is not None
            and checked_at - self._last_checked_at < self._cache_ttl
            and self._last_basis == basis
        ):
            return self._last_result

        expiry = parse_timestamp(expires_at)
        if expiry is None:
            if expires_at:
                lib_logger.warning(
                    f"Unparseable access expiry '{expires_at}'; treating as not expiring."
                )
            result = False
        else:
            threshold = expiry - timedelta(minutes=threshold_minutes)
            result = self._clock() >= threshold

        self._last_checked_at = checked_at
        self._last_result = result
        self._last_basis = basis
        return result

    def is_refresh_expired(self) -> bool:
        pair = self._store.get()
        return is_past(
            pair.refresh_expires_at if pair else None,
            self._clock(),
            missing_is_past=True,
        )
