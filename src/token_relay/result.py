# src/token_relay/result.py
"""
Explicit success/failure values.

Every public fallible operation in the library returns a Result instead of
raising, so callers can branch on `is_ok` without try/except. The typed error
is kept on `error` and is still an exception instance, so `unwrap()` can
re-raise it where exception flow is more convenient.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from .errors import AppError, classify_exception

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    value: Optional[T] = None
    error: Optional[AppError] = None

    @property
    def is_ok(self) -> bool:
        return self.error is None

    @property
    def is_err(self) -> bool:
        return self.error is not None

    def unwrap(self) -> T:
        """Return the value, or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value

    def unwrap_or(self, default: T) -> T:
        return default if self.error is not None else self.value


def Ok(value: Any = None) -> Result:
    return Result(value=value)


def Err(error: AppError) -> Result:
    return Result(error=error)


async def wrap_async(
    func: Callable[[], Awaitable[T]],
    on_error: Optional[Callable[[BaseException], AppError]] = None,
) -> Result[T]:
    """
    Await `func` and capture its outcome as a Result.

    Exceptions are converted with `on_error` when given, otherwise with
    `classify_exception`. Cancellation is never captured.
    """
    try:
        return Ok(await func())
    except Exception as e:
        return Err(on_error(e) if on_error else classify_exception(e))
