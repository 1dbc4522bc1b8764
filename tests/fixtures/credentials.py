"""
Credential, clock and storage doubles shared by the test modules.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from token_relay.credential_store import CredentialPair
from token_relay.storage import MemoryStorage

FIXED_NOW = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Wall clock that only moves when a test moves it."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeMonotonic:
    def __init__(self, value: float = 1000.0):
        self.value = value

    def __call__(self) -> float:
        return self.value


def make_pair(
    now: datetime,
    access_minutes: float = 60,
    refresh_days: float = 7,
    suffix: str = "1",
) -> CredentialPair:
    return CredentialPair(
        access_token=f"access-{suffix}",
        refresh_token=f"refresh-{suffix}",
        access_expires_at=(now + timedelta(minutes=access_minutes)).isoformat(),
        refresh_expires_at=(now + timedelta(days=refresh_days)).isoformat(),
    )


class FlakyStorage(MemoryStorage):
    """MemoryStorage whose next `fail_writes` batch writes raise."""

    def __init__(self, initial=None, fail_writes: int = 0, fail_reads: bool = False):
        super().__init__(initial)
        self.fail_writes = fail_writes
        self.fail_reads = fail_reads
        self.write_calls = 0

    async def get(self, key: str) -> Optional[str]:
        if self.fail_reads:
            raise OSError("disk unavailable")
        return await super().get(key)

    async def set_many(self, items) -> None:
        self.write_calls += 1
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise OSError("disk full")
        await super().set_many(items)
