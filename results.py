"""Result types returned by the point service.

Business rejections are returned as ``Err(PointFailure(...))`` instead of
being raised, so every caller has to look at the outcome before using the
value.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, NoReturn, TypeVar, Union

T = TypeVar("T")


class FailureKind(str, Enum):
    INVALID_AMOUNT = "INVALID_AMOUNT"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    BALANCE_LIMIT_EXCEEDED = "BALANCE_LIMIT_EXCEEDED"
    NO_HISTORY_FOUND = "NO_HISTORY_FOUND"
    STORAGE_FAILURE = "STORAGE_FAILURE"
    LOCK_TIMEOUT = "LOCK_TIMEOUT"


@dataclass(frozen=True)
class PointFailure:
    kind: FailureKind
    message: str


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Success variant."""

    value: T

    @property
    def is_ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    """Failure variant."""

    failure: PointFailure

    @property
    def is_ok(self) -> bool:
        return False

    @property
    def kind(self) -> FailureKind:
        return self.failure.kind

    def unwrap(self) -> NoReturn:
        raise RuntimeError(f"Called unwrap on Err: {self.failure.kind.value}: {self.failure.message}")


PointResult = Union[Ok[T], Err]


def failure(kind: FailureKind, message: str) -> Err:
    """Shorthand for ``Err(PointFailure(kind, message))``."""
    return Err(PointFailure(kind, message))
