# src/token_relay/pipeline.py

import asyncio
import inspect
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Union

import httpx

from .config import ApiConfig
from .credential_store import CredentialPair, CredentialStore, InitializeOutcome
from .envelope import unwrap_response
from .errors import (
    AUTH_TOKEN_EXPIRED,
    DATA_VALIDATION_FAILED,
    AppError,
    RenewalFailedError,
    RequestBlockedError,
    UnauthenticatedError,
    classify_exception,
    http_error_from_response,
    mask_credential,
)
from .expiry import ExpiryEvaluator
from .failure_logger import log_failure
from .notifications import ErrorReporter, NotificationHandler
from .refresh_coordinator import RefreshCoordinator, RenewalCallback
from .result import Err, Result, wrap_async
from .retry_policy import RetryPolicy, make_retry_key
from .scheduler import ProactiveScheduler
from .storage import KeyValueStorage

lib_logger = logging.getLogger("token_relay")


class UnauthorizedReason(str, Enum):
    RENEWAL_FAILED = "renewal_failed"
    REFRESH_EXPIRED = "refresh_expired"
    NO_CREDENTIAL = "no_credential"
    AUTH_REJECTED = "auth_rejected"
    WITHDRAWAL_BLOCKED = "withdrawal_blocked"


UnauthorizedCallback = Callable[[UnauthorizedReason], Optional[Awaitable[None]]]
RequestInterceptor = Callable[[httpx.Request], Optional[Awaitable[None]]]


@dataclass
class PendingCall:
    """Per-request bookkeeping carried through the interceptor chain."""

    request: httpx.Request
    method: str
    path: str
    silent: bool = False
    # Set once the request has been replayed after a 401
    retried: bool = False
    # Issued by the built-in renewal callback
    is_renewal: bool = False
    sent_token: Optional[str] = None
    sends: int = 0


def _path_matches(path: str, prefixes) -> bool:
    return any(path == p or path.startswith(p.rstrip("/") + "/") for p in prefixes)


class RequestPipeline:
    """
    HTTP client that attaches the access credential to every call and keeps
    it valid.

    Request lifecycle:
        NEW -> (public path? skip auth) -> EXPIRY_CHECK -> [RENEW]
            -> ATTACH_CREDENTIAL -> SENT -> SUCCESS | AUTH_FAILURE | SERVER_FAILURE

    - Withdrawal mode blocks every non-public path outside its allow-list.
    - An expiring access credential is renewed (single-flight) before sending.
    - A 401 triggers one renewal and one replay of the same request. A second
      401, a 401 from the renewal endpoint, or a failed renewal ends the
      session and fires the unauthorized callback.
    - 5xx responses are resent while the RetryPolicy allows it.

    Every public request method returns a Result; nothing raises.
    """

    def __init__(
        self,
        storage: Optional[KeyValueStorage] = None,
        config: Optional[ApiConfig] = None,
        *,
        store: Optional[CredentialStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        renewal_callback: Optional[RenewalCallback] = None,
        on_unauthorized: Optional[UnauthorizedCallback] = None,
        notification_handler: Optional[NotificationHandler] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        proactive_refresh: bool = True,
    ):
        """
        Args:
            storage: Persistence backend for the credential pair. Ignored
                when `store` is given; one of the two is required.
            config: Pipeline configuration (defaults to ApiConfig())
            store: An existing CredentialStore to share
            transport: httpx transport (tests pass httpx.MockTransport)
            renewal_callback: Replaces the built-in POST to config.refresh_path
            on_unauthorized: Called each time a request finds the session lost
            notification_handler: Receives non-silent errors for display
            clock: Wall-clock source used for expiry decisions
            sleep: Backoff sleep used by the retry policy
            rng: Jitter source used by the retry policy
            proactive_refresh: Run the background renewal timer
        """
        if store is None:
            if storage is None:
                raise ValueError("Either storage or store must be provided")
            store = CredentialStore(storage, clock=clock)

        self.config = config or ApiConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.store = store
        self.evaluator = ExpiryEvaluator(
            store, cache_ttl=self.config.expiry_cache_ttl, clock=self._clock
        )
        self.coordinator = RefreshCoordinator(
            store, self.evaluator, timeout=self.config.effective_renewal_timeout
        )
        self.retry_policy = RetryPolicy(
            max_attempts=self.config.retry_max_attempts,
            base_delay=self.config.retry_base_delay,
            jitter_factor=self.config.retry_jitter,
            sleep=sleep,
            rng=rng,
        )
        self._renewal_callback = renewal_callback or self._renew_via_endpoint
        self.scheduler = ProactiveScheduler(
            store,
            self.evaluator,
            self.coordinator,
            self._renewal_callback,
            interval=self.config.proactive_refresh_interval,
            threshold_minutes=self.config.expiry_threshold_minutes,
        )
        if proactive_refresh:
            self.scheduler.attach()

        self._client = httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.httpx_timeout(),
            headers=self.config.headers,
            transport=transport,
        )
        self._interceptors: List[RequestInterceptor] = []
        self._withdrawal_mode = False
        self._on_unauthorized = on_unauthorized
        self._last_shared_cause: Optional[object] = None
        self._reporter = ErrorReporter(notification_handler)

        store.add_set_listener(self._on_credentials_set)

    # --- lifecycle --------------------------------------------------------

    async def initialize(self) -> Result[InitializeOutcome]:
        """
        Load stored credentials. An expired refresh credential found at
        startup is cleared and reported through the unauthorized callback.
        """
        result = await self.store.initialize()
        if result.is_err:
            self._reporter.report(result.error)
        elif result.value.refresh_was_expired:
            await self._signal_unauthenticated(UnauthorizedReason.REFRESH_EXPIRED)
        return result

    async def aclose(self) -> None:
        await self.scheduler.stop()
        # A running renewal still needs the client to send or retry
        await self.coordinator.wait_idle()
        await self._client.aclose()

    async def __aenter__(self) -> "RequestPipeline":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # --- configuration hooks ---------------------------------------------

    def set_unauthorized_callback(self, callback: Optional[UnauthorizedCallback]) -> None:
        self._on_unauthorized = callback

    def set_notification_handler(self, handler: NotificationHandler) -> None:
        self._reporter.set_handler(handler)

    def add_request_interceptor(self, interceptor: RequestInterceptor) -> None:
        """Interceptors run in registration order, after credentials are attached."""
        self._interceptors.append(interceptor)

    @property
    def withdrawal_mode(self) -> bool:
        return self._withdrawal_mode

    def set_withdrawal_mode(self, enabled: bool) -> None:
        self._withdrawal_mode = enabled
        lib_logger.info(f"Withdrawal mode {'enabled' if enabled else 'disabled'}.")

    def enable_withdrawal_mode(self) -> None:
        self.set_withdrawal_mode(True)

    def disable_withdrawal_mode(self) -> None:
        self.set_withdrawal_mode(False)

    # --- credentials ------------------------------------------------------

    async def set_credentials(
        self, credentials: Union[CredentialPair, Mapping[str, Any]]
    ) -> Result[None]:
        """Store a pair obtained from login (payload mappings are accepted)."""
        if not isinstance(credentials, CredentialPair):
            try:
                credentials = CredentialPair.from_dict(credentials)
            except ValueError as e:
                return Err(AppError(str(e), type=DATA_VALIDATION_FAILED))
        return await self.store.set(credentials)

    async def clear_credentials(self) -> Result[None]:
        return await self.store.clear()

    def get_access_token(self) -> Optional[str]:
        return self.store.access_token

    def get_refresh_token(self) -> Optional[str]:
        return self.store.refresh_token

    def has_valid_credentials(self) -> bool:
        return self.store.has_credentials() and not self.evaluator.is_refresh_expired()

    async def renew(self) -> Result[bool]:
        """Renew now, joining any renewal already in flight."""
        return await self.coordinator.renew(self._renewal_callback)

    # --- public request API ----------------------------------------------

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        data: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        silent: bool = False,
    ) -> Result[Any]:
        """
        Send a request and unwrap the response envelope.

        Returns Ok(data) for a SUCCESS envelope (or the decoded body when the
        response is not an envelope), otherwise Err with the typed error.
        With silent=True errors are logged but never shown to the user.
        """
        async def send_and_unwrap():
            response = await self._send(
                method, path, params=params, json=json, data=data,
                headers=headers, silent=silent,
            )
            return unwrap_response(response, silent=silent)

        result = await wrap_async(
            send_and_unwrap, on_error=lambda e: classify_exception(e, silent=silent)
        )
        if result.is_err:
            if silent:
                result.error.silent = True
            self._reporter.report(result.error)
        return result

    async def get(self, path: str, **kwargs) -> Result[Any]:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, json: Any = None, **kwargs) -> Result[Any]:
        return await self.request("POST", path, json=json, **kwargs)

    async def put(self, path: str, json: Any = None, **kwargs) -> Result[Any]:
        return await self.request("PUT", path, json=json, **kwargs)

    async def patch(self, path: str, json: Any = None, **kwargs) -> Result[Any]:
        return await self.request("PATCH", path, json=json, **kwargs)

    async def delete(self, path: str, **kwargs) -> Result[Any]:
        return await self.request("DELETE", path, **kwargs)

    # --- interceptor chain ------------------------------------------------

    def _is_renewal_path(self, path: str) -> bool:
        return _path_matches(path, (self.config.refresh_path,))

    def _is_public(self, path: str) -> bool:
        return self._is_renewal_path(path) or _path_matches(path, self.config.public_paths)

    def _is_withdrawal_allowed(self, path: str) -> bool:
        return _path_matches(path, self.config.withdrawal_allowed_paths)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        silent: bool = False,
        is_renewal: bool = False,
        **kwargs,
    ) -> httpx.Response:
        request = self._client.build_request(method, path, **kwargs)
        call = PendingCall(
            request=request,
            method=method.upper(),
            path=path,
            silent=silent,
            is_renewal=is_renewal,
        )
        await self._prepare(call)
        return await self._dispatch(call)

    async def _prepare(self, call: PendingCall) -> None:
        if not self._is_public(call.path):
            if self._withdrawal_mode and not self._is_withdrawal_allowed(call.path):
                lib_logger.info(f"Blocked {call.method} {call.path} during withdrawal.")
                await self._signal_unauthenticated(UnauthorizedReason.WITHDRAWAL_BLOCKED)
                raise RequestBlockedError(call.path)

            if self.store.has_credentials() and self.evaluator.is_access_expiring_soon(
                self.config.expiry_threshold_minutes
            ):
                lib_logger.debug(
                    f"Access credential expiring; renewing before {call.method} {call.path}."
                )
                renewed = await self.coordinator.renew(self._renewal_callback)
                if renewed.is_err:
                    await self._signal_unauthenticated(
                        self._reason_for(renewed.error), renewed.error
                    )
                    raise UnauthenticatedError("Token refresh failed.") from renewed.error

            if not self._attach_credential(call):
                await self._signal_unauthenticated(UnauthorizedReason.NO_CREDENTIAL)
                raise UnauthenticatedError("No access credential available.")

        for interceptor in self._interceptors:
            outcome = interceptor(call.request)
            if inspect.isawaitable(outcome):
                await outcome

    def _attach_credential(self, call: PendingCall) -> bool:
        token = self.store.access_token
        if not token:
            return False
        call.request.headers["Authorization"] = f"Bearer {token}"
        call.sent_token = token
        return True

    async def _dispatch(self, call: PendingCall) -> httpx.Response:
        key = make_retry_key(call.method, call.path)
        while True:
            call.sends += 1
            try:
                response = await self._client.send(call.request)
            except httpx.TransportError as e:
                lib_logger.warning(f"{call.method} {call.path} got no response: {e}")
                raise classify_exception(e, silent=call.silent) from e

            status = response.status_code
            lib_logger.debug(f"{call.method} {call.path} -> {status} (send #{call.sends})")

            if status == 401 and await self._recover_from_401(call):
                continue

            if self._is_renewal_path(call.path) and status in (400, 401):
                if not call.is_renewal:
                    await self._signal_unauthenticated(UnauthorizedReason.AUTH_REJECTED)
                raise http_error_from_response(response, silent=True)

            if 500 <= status < 600:
                error = http_error_from_response(response, silent=call.silent)
                if await self.retry_policy.should_retry(key, error):
                    continue
                log_failure("request", error, call.method, call.path, attempt=call.sends)
                raise error

            if status >= 400:
                raise http_error_from_response(response, silent=call.silent)

            self.retry_policy.record_success(key)
            return response

    async def _recover_from_401(self, call: PendingCall) -> bool:
        """
        Returns True when the request was re-armed with a fresh credential and
        False when the 401 should propagate as an HttpError.

        Raises:
            UnauthenticatedError: when the session is lost
        """
        if self._is_renewal_path(call.path):
            # Terminal; handled by the caller without recursing into renew()
            return False
        if self._is_public(call.path):
            return False
        if call.retried:
            lib_logger.info(f"{call.method} {call.path} rejected again after renewal.")
            await self._signal_unauthenticated(
                UnauthorizedReason.AUTH_REJECTED, ("rejected", call.sent_token)
            )
            raise UnauthenticatedError("The server rejected the renewed credential.")

        call.retried = True
        current = self.store.access_token
        if current and current != call.sent_token:
            # Another request already renewed while this one was in flight
            lib_logger.debug(
                f"Credential changed since {call.method} {call.path} was sent; replaying."
            )
            self._attach_credential(call)
            return True

        lib_logger.info(
            f"{call.method} {call.path} got 401 with {mask_credential(call.sent_token)}; renewing."
        )
        renewed = await self.coordinator.renew(self._renewal_callback)
        if renewed.is_err:
            await self._signal_unauthenticated(
                self._reason_for(renewed.error), renewed.error
            )
            raise UnauthenticatedError("Token refresh failed.") from renewed.error
        if not self._attach_credential(call):
            await self._signal_unauthenticated(UnauthorizedReason.NO_CREDENTIAL)
            raise UnauthenticatedError("No access credential available.")
        return True

    # --- session loss -----------------------------------------------------

    @staticmethod
    def _reason_for(error: AppError) -> UnauthorizedReason:
        if error.code == AUTH_TOKEN_EXPIRED:
            return UnauthorizedReason.REFRESH_EXPIRED
        return UnauthorizedReason.RENEWAL_FAILED

    def _on_credentials_set(self, pair: CredentialPair) -> None:
        self._last_shared_cause = None

    async def _signal_unauthenticated(
        self, reason: UnauthorizedReason, shared_cause: Optional[object] = None
    ) -> None:
        """
        Clear local credentials and notify the application.

        Requests that fail on one shared cause (the same failed renewal, or
        the same rejected credential) produce a single notification; every
        other rejection is reported on its own. A withdrawal-blocked request
        keeps the credentials, since the withdrawal call itself needs them.
        """
        if reason is not UnauthorizedReason.WITHDRAWAL_BLOCKED:
            cleared = await self.store.clear()
            if cleared.is_err:
                self._reporter.report(cleared.error)
        if shared_cause is not None:
            if shared_cause == self._last_shared_cause:
                return
            self._last_shared_cause = shared_cause

        lib_logger.info(f"Session unauthenticated ({reason.value}).")
        callback = self._on_unauthorized
        if callback is None:
            return
        try:
            outcome = callback(reason)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            lib_logger.error(f"Unauthorized callback failed: {e}")

    # --- built-in renewal -------------------------------------------------

    async def _renew_via_endpoint(self) -> CredentialPair:
        """POST the refresh credential to the renewal endpoint."""
        refresh_token = self.store.refresh_token
        if not refresh_token:
            raise RenewalFailedError("No refresh credential is available.")

        if self.config.refresh_transport == "cookie":
            headers = {"Cookie": f"{self.config.refresh_cookie_name}={refresh_token}"}
        else:
            headers = {self.config.refresh_header_name: refresh_token}

        response = await self._send(
            "POST", self.config.refresh_path, headers=headers,
            silent=True, is_renewal=True,
        )
        payload = unwrap_response(response, silent=True)
        return self._pair_from_renewal(payload)

    def _pair_from_renewal(self, payload: Any) -> CredentialPair:
        if not isinstance(payload, dict):
            raise RenewalFailedError("Invalid renewal response format.")
        if payload.get("refreshToken") or payload.get("refresh_token"):
            try:
                return CredentialPair.from_dict(payload)
            except ValueError as e:
                raise RenewalFailedError(f"Invalid renewal response: {e}") from e

        # Cookie deployments return only a new access credential and its lifetime
        access_token = payload.get("accessToken") or payload.get("access_token")
        expires_in = payload.get("expiresIn", payload.get("expires_in"))
        current = self.store.get()
        if not access_token or expires_in is None or current is None:
            raise RenewalFailedError("Invalid renewal response format.")
        try:
            lifetime = timedelta(seconds=float(expires_in))
        except (TypeError, ValueError) as e:
            raise RenewalFailedError(f"Invalid expiresIn value: {expires_in!r}") from e
        return CredentialPair(
            access_token=access_token,
            refresh_token=current.refresh_token,
            access_expires_at=(self._clock() + lifetime).isoformat(),
            refresh_expires_at=current.refresh_expires_at,
        )
