"""
Tests for single-flight renewal in RefreshCoordinator.
"""

import asyncio

import pytest

from token_relay.errors import (
    AUTH_TOKEN_EXPIRED,
    HttpError,
    NotFoundError,
    RenewalFailedError,
    StorageError,
)
from token_relay.credential_store import CredentialStore
from token_relay.expiry import ExpiryEvaluator
from token_relay.refresh_coordinator import RefreshCoordinator
from token_relay.result import Err, Ok

from tests.fixtures.credentials import FlakyStorage, make_pair


class RenewalStub:
    """Renewal callback that blocks until released and counts calls."""

    def __init__(self, outcome=None, error=None):
        self.calls = 0
        self.release = asyncio.Event()
        self.outcome = outcome
        self.error = error

    async def __call__(self):
        self.calls += 1
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.outcome


@pytest.fixture
def coordinator(store, clock):
    return RefreshCoordinator(store, ExpiryEvaluator(store, clock=clock))


class TestSingleFlight:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("callers", [1, 2, 10])
    async def test_concurrent_renewals_share_one_call(
        self, store, coordinator, clock, valid_pair, callers
    ):
        await store.set(valid_pair)
        renewed = make_pair(clock.now, suffix="2")
        stub = RenewalStub(outcome=renewed)

        tasks = [asyncio.create_task(coordinator.renew(stub)) for _ in range(callers)]
        await asyncio.sleep(0)
        assert coordinator.in_flight
        stub.release.set()
        results = await asyncio.gather(*tasks)

        assert stub.calls == 1
        assert coordinator.renewal_count == 1
        assert all(r.is_ok and r.value is True for r in results)
        assert store.get() == renewed

    @pytest.mark.asyncio
    async def test_inflight_is_cleared_after_success(self, store, coordinator, clock, valid_pair):
        await store.set(valid_pair)
        stub = RenewalStub(outcome=make_pair(clock.now, suffix="2"))
        stub.release.set()

        await coordinator.renew(stub)
        assert coordinator.in_flight is False

        stub.outcome = make_pair(clock.now, suffix="3")
        await coordinator.renew(stub)

        assert stub.calls == 2
        assert coordinator.renewal_count == 2
        assert store.access_token == "access-3"

    @pytest.mark.asyncio
    async def test_wait_idle_returns_after_renewal(self, store, coordinator, clock, valid_pair):
        await store.set(valid_pair)
        stub = RenewalStub(outcome=make_pair(clock.now, suffix="2"))

        renewal = asyncio.create_task(coordinator.renew(stub))
        await asyncio.sleep(0)
        idle = asyncio.create_task(coordinator.wait_idle())
        await asyncio.sleep(0)
        assert not idle.done()

        stub.release.set()
        await idle

        assert coordinator.in_flight is False
        assert store.access_token == "access-2"
        assert (await renewal).is_ok
        await coordinator.wait_idle()

    @pytest.mark.asyncio
    async def test_failure_is_shared_and_clears_credentials(
        self, store, coordinator, valid_pair
    ):
        await store.set(valid_pair)
        stub = RenewalStub(error=HttpError(400, "refresh token revoked"))

        tasks = [asyncio.create_task(coordinator.renew(stub)) for _ in range(5)]
        await asyncio.sleep(0)
        stub.release.set()
        results = await asyncio.gather(*tasks)

        assert stub.calls == 1
        errors = {id(r.error) for r in results}
        assert len(errors) == 1
        error = results[0].error
        assert isinstance(error, RenewalFailedError)
        assert error.status_code == 400
        assert isinstance(error.__cause__, HttpError)
        assert store.get() is None
        assert coordinator.in_flight is False

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_renewal(
        self, store, coordinator, clock, valid_pair
    ):
        await store.set(valid_pair)
        stub = RenewalStub(outcome=make_pair(clock.now, suffix="2"))

        impatient = asyncio.create_task(coordinator.renew(stub))
        patient = asyncio.create_task(coordinator.renew(stub))
        await asyncio.sleep(0)
        impatient.cancel()
        await asyncio.sleep(0)
        stub.release.set()
        result = await patient

        assert impatient.cancelled()
        assert result.is_ok
        assert store.access_token == "access-2"


class TestFailures:
    @pytest.mark.asyncio
    async def test_no_refresh_credential(self, coordinator):
        stub = RenewalStub()

        result = await coordinator.renew(stub)

        assert isinstance(result.error, NotFoundError)
        assert stub.calls == 0
        assert coordinator.renewal_count == 0

    @pytest.mark.asyncio
    async def test_expired_refresh_is_never_sent(self, store, coordinator, clock, valid_pair):
        await store.set(valid_pair)
        clock.advance(days=8)
        stub = RenewalStub()

        result = await coordinator.renew(stub)

        assert stub.calls == 0
        assert isinstance(result.error, RenewalFailedError)
        assert result.error.code == AUTH_TOKEN_EXPIRED
        assert store.get() is None

    @pytest.mark.asyncio
    async def test_timeout_is_renewal_failure(self, store, valid_pair):
        await store.set(valid_pair)
        coordinator = RefreshCoordinator(store, timeout=0.01)
        stub = RenewalStub()

        result = await coordinator.renew(stub)

        assert isinstance(result.error, RenewalFailedError)
        assert "timed out" in result.error.message
        assert store.get() is None
        assert coordinator.in_flight is False

    @pytest.mark.asyncio
    async def test_err_result_from_callback(self, store, coordinator, valid_pair):
        await store.set(valid_pair)

        async def rejecting():
            return Err(HttpError(401))

        result = await coordinator.renew(rejecting)

        assert isinstance(result.error, RenewalFailedError)
        assert result.error.status_code == 401
        assert store.get() is None

    @pytest.mark.asyncio
    async def test_ok_result_from_callback(self, store, coordinator, clock, valid_pair):
        await store.set(valid_pair)
        renewed = make_pair(clock.now, suffix="2")

        async def accepting():
            return Ok(renewed)

        result = await coordinator.renew(accepting)

        assert result.is_ok
        assert store.get() == renewed

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_wrapped(self, store, coordinator, valid_pair):
        await store.set(valid_pair)

        async def broken():
            raise KeyError("accessToken")

        result = await coordinator.renew(broken)

        assert isinstance(result.error, RenewalFailedError)
        assert isinstance(result.error.__cause__, KeyError)

    @pytest.mark.asyncio
    async def test_wrong_return_type(self, store, coordinator, valid_pair):
        await store.set(valid_pair)

        async def returns_dict():
            return {"accessToken": "x"}

        result = await coordinator.renew(returns_dict)

        assert isinstance(result.error, RenewalFailedError)
        assert store.get() is None

    @pytest.mark.asyncio
    async def test_storage_failure_clears_credentials(self, clock, valid_pair):
        storage = FlakyStorage()
        store = CredentialStore(storage, clock=clock)
        await store.set(valid_pair)
        coordinator = RefreshCoordinator(store)
        renewed = make_pair(clock.now, suffix="2")

        async def renew():
            storage.fail_writes = 1
            return renewed

        result = await coordinator.renew(renew)

        assert isinstance(result.error, StorageError)
        assert store.get() is None
        assert storage.snapshot() == {}

    @pytest.mark.asyncio
    async def test_failure_is_written_to_failure_log(
        self, store, coordinator, valid_pair, failure_log_dir
    ):
        await store.set(valid_pair)

        async def broken():
            raise RuntimeError("boom")

        await coordinator.renew(broken)

        content = (failure_log_dir / "failures.log").read_text()
        assert '"event": "renewal"' in content
        assert "RenewalFailedError" in content
