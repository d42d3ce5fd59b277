"""
Result monad — the backbone of configuration ingestion and rotation.

A Result[T] is either Success(value: T) or Failure(error: FailureDescription).
Policy parsing is a chain of stages (decode → schema → hostnames → pins →
policy); each returns Result and the first failure short-circuits the rest,
which is what makes ingestion all-or-nothing:

    decode ──Success──▶ schema ──Success──▶ hosts ──Success──▶ Policy
      │ Failure            │ Failure          │ Failure
      └────────────────────┴──────────────────┴──────────────▶ ConfigError
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pinguard.railway.failure import ErrorCode, FailureDescription

T = TypeVar("T")
U = TypeVar("U")
A = TypeVar("A")
B = TypeVar("B")
R = TypeVar("R")


class Result(Generic[T]):
    """
    Success(value) or Failure(FailureDescription).

        >>> Result.success(3).map(lambda n: n + 1).value()
        4
        >>> bool(Result.failure(ErrorCode.INVALID_PIN, "not base64"))
        False
    """

    # ─────────────────────── Track inspection ───────────────────────

    def is_success(self) -> bool:
        return isinstance(self, Success)

    def is_failure(self) -> bool:
        return isinstance(self, Failure)

    def value(self) -> T:
        """The success value; ValueError when called on the failure track."""
        if isinstance(self, Success):
            return self._value
        raise ValueError(f"Result is a Failure, no value available: {self.error().message}")

    def error(self) -> FailureDescription:
        """The failure description; ValueError when called on the success track."""
        if isinstance(self, Failure):
            return self._error
        raise ValueError(f"Result is a Success({self.value()!r}), no error available")

    # ─────────────────────── Chaining ───────────────────────

    def map(self, mapper: Callable[[T], U]) -> Result[U]:
        match self:
            case Success(v):
                return Success(mapper(v))
        return self  # type: ignore[return-value]

    def flat_map(self, mapper: Callable[[T], Result[U]]) -> Result[U]:
        """Run the next Result-returning stage only on the success track."""
        match self:
            case Success(v):
                return mapper(v)
        return self  # type: ignore[return-value]

    def ensure(
        self,
        predicate: Callable[[T], bool],
        code: ErrorCode,
        message: str | Callable[[T], str],
    ) -> Result[T]:
        """
        Move to the failure track unless `predicate` holds for the value.

        `message` may be a callable so the error can name the offending value:

            Result.success(pin_set).ensure(
                lambda ps: len(ps) >= ps.min_pins,
                ErrorCode.INSUFFICIENT_PINS,
                lambda ps: f"{ps.host} has {len(ps)} pin(s)",
            )
        """

        def _check(v: T) -> Result[T]:
            if predicate(v):
                return self
            return Result.failure(code, message(v) if callable(message) else message)

        return self.flat_map(_check)

    def peek(self, action: Callable[[T], Any]) -> Result[T]:
        """Side effect (logging, adopting a policy) on the success value."""
        if isinstance(self, Success):
            action(self._value)
        return self

    def peek_failure(self, action: Callable[[FailureDescription], Any]) -> Result[T]:
        """Side effect (logging, telemetry) on the failure."""
        if isinstance(self, Failure):
            action(self._error)
        return self

    # ─────────────────────── Construction ───────────────────────

    @staticmethod
    def success(value: T) -> Result[T]:
        return Success(value)

    @staticmethod
    def failure_from(error: FailureDescription) -> Result[T]:
        return Failure(error)

    @staticmethod
    def failure(
        code: ErrorCode,
        message: str,
        exception: BaseException | None = None,
    ) -> Result[T]:
        """
        Result.failure(ErrorCode.WILDCARD_HOSTNAME, "*.example.com is not an exact host")
        """
        return Failure(FailureDescription(code=code, message=message, exception=exception))

    @staticmethod
    def from_computation(
        computation: Callable[[], T],
        error_code: ErrorCode,
        error_message: str,
    ) -> Result[T]:
        """
        Run code that may raise; an exception lands on the failure track.

            Result.from_computation(
                lambda: json.loads(raw),
                ErrorCode.MALFORMED_DOCUMENT,
                "Policy document is not valid JSON",
            )
        """
        try:
            return Result.success(computation())
        except Exception as e:
            return Result.failure(error_code, f"{error_message}: {e}", e)

    @staticmethod
    def combine(
        ra: Result[A],
        rb: Result[B],
        combiner: Callable[[A, B], R],
    ) -> Result[R]:
        """Succeeds only when both inputs do; the first failure wins."""
        return ra.flat_map(lambda a: rb.map(lambda b: combiner(a, b)))

    @staticmethod
    def all_of(results: Iterable[Result[T]]) -> Result[list[T]]:
        """
        Result of list from an iterable of Results, stopping at the first Failure.

        A generator is consumed lazily, so no stage after the failing one runs.
        """
        collected: list[T] = []
        for result in results:
            if isinstance(result, Failure):
                return result  # type: ignore[return-value]
            collected.append(result.value())
        return Success(collected)

    # ─────────────────────── Dunder methods ───────────────────────

    def __bool__(self) -> bool:
        return self.is_success()

    def __repr__(self) -> str:
        if isinstance(self, Success):
            return f"Success({self._value!r})"
        error = self.error()
        return f"Failure({error.code.value}: {error.message!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Result):
            return NotImplemented
        match (self, other):
            case (Success(a), Success(b)):
                return a == b
            case (Failure(a), Failure(b)):
                return (a.code, a.message) == (b.code, b.message)
        return False

    __hash__ = None  # type: ignore[assignment]


@dataclass(frozen=True, slots=True, eq=False)
class Success(Result[T]):
    _value: T

    def __init__(self, value: T) -> None:
        if value is None:
            raise TypeError("Success value must not be None")
        object.__setattr__(self, "_value", value)


Success.__match_args__ = ("_value",)


@dataclass(frozen=True, slots=True, eq=False)
class Failure(Result[T]):
    _error: FailureDescription

    def __init__(self, error: FailureDescription) -> None:
        if error is None:
            raise TypeError("Failure error must not be None")
        object.__setattr__(self, "_error", error)


Failure.__match_args__ = ("_error",)
