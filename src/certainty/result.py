"""
Result type — railway-style outcomes for the I/O boundary.

Synchronization talks to the network and the filesystem; either can fail
halfway through a cycle. Instead of letting those exceptions escape, the sync
layer returns a Result[T] that is either Success(value) or
Failure(FailureDescription). Callers decide what a failure means for them
(RemoteFetch turns it into SyncError, the scheduler just logs it).

    result = await sync.refresh()
    result.either(
        on_success=lambda files: log.info("sync.ok", downloaded=len(files)),
        on_failure=lambda err: log.error("sync.failed", error=err.message),
    )
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, unique
from typing import Generic, TypeVar

T = TypeVar("T")
R = TypeVar("R")


@unique
class ErrorCode(Enum):
    """Failure categories used on the failure track."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    """Remote data did not have the expected shape."""

    FILESYSTEM_ERROR = "FILESYSTEM_ERROR"
    """Reading, renaming or writing a local file failed."""

    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    """The remote source answered with an error or could not be reached."""

    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    """The remote source did not answer in time."""


@dataclass(frozen=True, slots=True)
class FailureDescription:
    """Immutable failure descriptor: code, message, optional cause and timestamp."""

    code: ErrorCode
    message: str
    exception: BaseException | None = field(default=None, repr=False)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class Result(Generic[T]):
    """Either Success(value) or Failure(error)."""

    def is_success(self) -> bool:
        return isinstance(self, Success)

    def is_failure(self) -> bool:
        return isinstance(self, Failure)

    def value(self) -> T:
        """Extract the success value. Raises ValueError on a Failure."""
        match self:
            case Success(v):
                return v
            case Failure(err):
                raise ValueError(f"Cannot get value from a Failure: {err.message}")
        raise TypeError("unreachable")  # pragma: no cover

    def error(self) -> FailureDescription:
        """Extract the failure description. Raises ValueError on a Success."""
        match self:
            case Failure(err):
                return err
            case Success(v):
                raise ValueError(f"Cannot get error from a Success: {v}")
        raise TypeError("unreachable")  # pragma: no cover

    def either(
        self,
        on_success: Callable[[T], R],
        on_failure: Callable[[FailureDescription], R],
    ) -> R:
        match self:
            case Success(v):
                return on_success(v)
            case Failure(err):
                return on_failure(err)
        raise TypeError("unreachable")  # pragma: no cover

    @staticmethod
    def success(value: T) -> Result[T]:
        return Success(value)

    @staticmethod
    def failure(
        code: ErrorCode,
        message: str,
        exception: BaseException | None = None,
    ) -> Result[T]:
        return Failure(FailureDescription(code=code, message=message, exception=exception))


@dataclass(frozen=True, slots=True)
class Success(Result[T]):
    """The success track."""

    _value: T

    def __repr__(self) -> str:
        return f"Success({self._value!r})"


@dataclass(frozen=True, slots=True)
class Failure(Result[T]):
    """The failure track."""

    _error: FailureDescription

    def __repr__(self) -> str:
        return f"Failure({self._error.code.value}: {self._error.message!r})"
