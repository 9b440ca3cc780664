"""Domain error taxonomy and the Result type returned by core services.

Core operations never let a DomainError escape: the `returns_result`
decorator turns it into an `Err` so HTTP handlers can map it to a status
code deterministically. Anything that is not a DomainError is unexpected
and propagates to the 500 handler.
"""

from __future__ import annotations

import functools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import ClassVar, Generic, NoReturn, ParamSpec, TypeVar, Union

T = TypeVar("T")
P = ParamSpec("P")


class DomainError(Exception):
    """Base class for business-rule and boundary failures."""

    code: ClassVar[str] = "domain_error"
    status_code: ClassVar[int] = 500
    retryable: ClassVar[bool] = False

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(DomainError):
    code = "validation_error"
    status_code = 400


class InsufficientCreditsError(DomainError):
    code = "insufficient_credits"
    status_code = 402

    def __init__(self, current: int, required: int) -> None:
        super().__init__(
            "Not enough credits. Top up your account to continue.",
            detail=f"balance={current} required={required}",
        )
        self.current = current
        self.required = required


class NotFoundError(DomainError):
    code = "not_found"
    status_code = 404


class ForbiddenError(DomainError):
    code = "forbidden"
    status_code = 403


class AuthenticationError(DomainError):
    code = "unauthenticated"
    status_code = 401


class StatusTransitionError(DomainError):
    code = "invalid_status_transition"
    status_code = 409


class ProviderSubmissionError(DomainError):
    code = "provider_submission_failed"
    status_code = 502
    retryable = True


class ProviderPollError(DomainError):
    code = "provider_poll_failed"
    status_code = 502
    retryable = True


class PaymentError(DomainError):
    code = "payment_error"
    status_code = 401


class StorageError(DomainError):
    code = "storage_error"
    status_code = 502
    retryable = True


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True, slots=True)
class Err:
    error: DomainError

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self) -> NoReturn:
        raise self.error


Result = Union[Ok[T], Err]


def returns_result(
    fn: Callable[P, Awaitable[T]],
) -> Callable[P, Awaitable[Ok[T] | Err]]:
    """Wrap an async service method so DomainErrors come back as `Err`."""

    @functools.wraps(fn)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> Ok[T] | Err:
        try:
            return Ok(await fn(*args, **kwargs))
        except DomainError as exc:
            return Err(exc)

    return wrapper
