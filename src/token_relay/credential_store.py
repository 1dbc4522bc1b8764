# src/token_relay/credential_store.py

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from .errors import StorageError, mask_credential
from .expiry import is_past
from .result import Err, Ok, Result
from .storage import KeyValueStorage

lib_logger = logging.getLogger("token_relay")

# Persistence keys, in the camelCase the server uses for the credential pair
ACCESS_TOKEN_KEY = "accessToken"
REFRESH_TOKEN_KEY = "refreshToken"
ACCESS_EXPIRES_AT_KEY = "accessTokenExpiresAt"
REFRESH_EXPIRES_AT_KEY = "refreshTokenExpiresAt"

STORAGE_KEYS = (
    ACCESS_TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    ACCESS_EXPIRES_AT_KEY,
    REFRESH_EXPIRES_AT_KEY,
)

_SNAKE_ALIASES = {
    ACCESS_TOKEN_KEY: "access_token",
    REFRESH_TOKEN_KEY: "refresh_token",
    ACCESS_EXPIRES_AT_KEY: "access_expires_at",
    REFRESH_EXPIRES_AT_KEY: "refresh_expires_at",
}


class CredentialState(str, Enum):
    ABSENT = "absent"
    PRESENT = "present"


@dataclass(frozen=True)
class CredentialPair:
    """Access/refresh credentials with their ISO-8601 expiry timestamps."""

    access_token: str
    refresh_token: str
    access_expires_at: str
    refresh_expires_at: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CredentialPair":
        """
        Build a pair from a server payload (camelCase) or a snake_case mapping.

        Raises:
            ValueError: if any of the four fields is missing or empty
        """
        values = {}
        missing = []
        for key, attr in _SNAKE_ALIASES.items():
            value = data.get(key) or data.get(attr)
            if not value:
                missing.append(key)
            else:
                values[attr] = str(value)
        if missing:
            raise ValueError(f"Credential payload is missing: {', '.join(missing)}")
        return cls(**values)

    def to_storage_items(self) -> Dict[str, str]:
        return {
            ACCESS_TOKEN_KEY: self.access_token,
            REFRESH_TOKEN_KEY: self.refresh_token,
            ACCESS_EXPIRES_AT_KEY: self.access_expires_at,
            REFRESH_EXPIRES_AT_KEY: self.refresh_expires_at,
        }

    def __repr__(self) -> str:
        return (
            f"CredentialPair(access_token={mask_credential(self.access_token)!r}, "
            f"refresh_token={mask_credential(self.refresh_token)!r}, "
            f"access_expires_at={self.access_expires_at!r}, "
            f"refresh_expires_at={self.refresh_expires_at!r})"
        )


@dataclass(frozen=True)
class InitializeOutcome:
    state: CredentialState
    refresh_was_expired: bool = False


class CredentialStore:
    """
    Owns the credential pair in memory and keeps it in step with persistence.

    Mutations persist first and commit to memory only afterwards; a failed
    mutation leaves memory exactly as it was and is reported as StorageError.
    get() never suspends and never touches persistence.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        key_prefix: str = "",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._storage = storage
        self._key_prefix = key_prefix
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._pair: Optional[CredentialPair] = None
        self._set_listeners: List[Callable[[CredentialPair], None]] = []
        self._clear_listeners: List[Callable[[], None]] = []

    # --- keys -------------------------------------------------------------

    def _key(self, name: str) -> str:
        return f"{self._key_prefix}{name}"

    def _prefixed(self, items: Mapping[str, Optional[str]]) -> Dict[str, Optional[str]]:
        return {self._key(k): v for k, v in items.items()}

    def _removal_items(self) -> Dict[str, Optional[str]]:
        return {self._key(k): None for k in STORAGE_KEYS}

    # --- listeners --------------------------------------------------------

    def add_set_listener(self, listener: Callable[[CredentialPair], None]) -> None:
        """Register a callable invoked after every successful set()."""
        self._set_listeners.append(listener)

    def add_clear_listener(self, listener: Callable[[], None]) -> None:
        """Register a callable invoked after every successful clear()."""
        self._clear_listeners.append(listener)

    def _notify(self, listeners: List[Callable], *args) -> None:
        for listener in listeners:
            try:
                listener(*args)
            except Exception as e:
                lib_logger.error(f"Credential listener {listener!r} failed: {e}")

    # --- reads ------------------------------------------------------------

    def get(self) -> Optional[CredentialPair]:
        return self._pair

    @property
    def state(self) -> CredentialState:
        return CredentialState.PRESENT if self._pair else CredentialState.ABSENT

    @property
    def access_token(self) -> Optional[str]:
        return self._pair.access_token if self._pair else None

    @property
    def refresh_token(self) -> Optional[str]:
        return self._pair.refresh_token if self._pair else None

    def has_credentials(self) -> bool:
        return self._pair is not None

    # --- mutations --------------------------------------------------------

    async def initialize(self) -> Result[InitializeOutcome]:
        """
        Load the pair from persistence.

        A stored refresh credential that has already expired (or whose expiry
        is missing) is removed together with the other fields, and the
        outcome reports refresh_was_expired=True so the caller can signal an
        unauthenticated session. Incomplete records are removed as well.
        """
        try:
            values = await asyncio.gather(
                *(self._storage.get(self._key(k)) for k in STORAGE_KEYS)
            )
        except Exception as e:
            lib_logger.error(f"Failed to load credentials: {e}")
            return Err(StorageError(f"Failed to load credentials: {e}"))

        stored = {k: v for k, v in zip(STORAGE_KEYS, values) if v}
        if not stored:
            lib_logger.debug("No stored credentials found.")
            return Ok(InitializeOutcome(CredentialState.ABSENT))

        if len(stored) < len(STORAGE_KEYS):
            had_refresh = REFRESH_TOKEN_KEY in stored
            lib_logger.warning(
                f"Stored credentials are incomplete ({len(stored)}/{len(STORAGE_KEYS)} fields). "
                f"Removing remnants."
            )
            cleared = await self.clear()
            if cleared.is_err:
                return Err(cleared.error)
            return Ok(
                InitializeOutcome(CredentialState.ABSENT, refresh_was_expired=had_refresh)
            )

        pair = CredentialPair.from_dict(stored)
        if is_past(pair.refresh_expires_at, self._clock(), missing_is_past=True):
            lib_logger.info(
                f"Stored refresh credential {mask_credential(pair.refresh_token)} "
                f"expired at {pair.refresh_expires_at}. Clearing credentials."
            )
            cleared = await self.clear()
            if cleared.is_err:
                return Err(cleared.error)
            return Ok(InitializeOutcome(CredentialState.ABSENT, refresh_was_expired=True))

        self._pair = pair
        lib_logger.debug(
            f"Loaded credentials (access {mask_credential(pair.access_token)}, "
            f"expires {pair.access_expires_at})."
        )
        self._notify(self._set_listeners, pair)
        return Ok(InitializeOutcome(CredentialState.PRESENT))

    async def set(self, pair: CredentialPair) -> Result[None]:
        """Persist all four fields, then commit them to memory."""
        previous = self._pair
        try:
            await self._storage.set_many(self._prefixed(pair.to_storage_items()))
        except Exception as e:
            lib_logger.error(
                f"Failed to persist credentials: {e}. In-memory credentials NOT updated."
            )
            await self._rollback(previous)
            return Err(StorageError(f"Failed to save credentials: {e}"))

        self._pair = pair
        lib_logger.debug(
            f"Saved credentials (access {mask_credential(pair.access_token)}, "
            f"expires {pair.access_expires_at})."
        )
        self._notify(self._set_listeners, pair)
        return Ok()

    async def clear(self) -> Result[None]:
        """Remove all four fields, then forget them in memory. Idempotent."""
        try:
            await self._storage.set_many(self._removal_items())
        except Exception as e:
            lib_logger.error(
                f"Failed to remove credentials: {e}. In-memory credentials kept."
            )
            return Err(StorageError(f"Failed to remove credentials: {e}"))

        had_pair = self._pair is not None
        self._pair = None
        if had_pair:
            lib_logger.info("Credentials cleared.")
        self._notify(self._clear_listeners)
        return Ok()

    async def _rollback(self, previous: Optional[CredentialPair]) -> None:
        # Restore what memory (and therefore persistence) held before the failed write
        if previous is not None:
            items = self._prefixed(previous.to_storage_items())
        else:
            items = self._removal_items()
        try:
            await self._storage.set_many(items)
        except Exception as e:
            lib_logger.error(
                f"Rollback after failed credential write also failed: {e}. "
                f"Persisted credentials may be incomplete until the next write."
            )
