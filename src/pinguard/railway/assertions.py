"""
pytest helpers for Result values.

    def test_wildcard_host_rejected():
        ResultAssertions.assert_failure(parse_policy(raw), ErrorCode.WILDCARD_HOSTNAME)
"""

from __future__ import annotations

from typing import Any, TypeVar

from pinguard.railway.failure import ErrorCode, FailureDescription
from pinguard.railway.result import Result

T = TypeVar("T")


def _describe(result: Result[Any]) -> str:
    if result.is_success():
        return f"Success({result.value()!r})"
    return f"Failure({result.error().code.value}: {result.error().message!r})"


class ResultAssertions:
    @staticmethod
    def assert_success(result: Result[T], message: str = "") -> T:
        """Fail the test unless `result` succeeded; return its value."""
        assert result.is_success(), f"expected Success, got {_describe(result)} {message}".rstrip()
        return result.value()

    @staticmethod
    def assert_failure(
        result: Result[T],
        expected_code: ErrorCode | None = None,
        message: str = "",
    ) -> FailureDescription:
        """Fail the test unless `result` failed (with `expected_code`, if given)."""
        assert result.is_failure(), f"expected Failure, got {_describe(result)} {message}".rstrip()
        error = result.error()
        if expected_code is not None:
            assert error.code is expected_code, (
                f"expected {expected_code.value}, got {_describe(result)} {message}".rstrip()
            )
        return error

    @staticmethod
    def assert_failure_message_contains(result: Result[T], substring: str) -> None:
        error = ResultAssertions.assert_failure(result)
        assert substring.lower() in error.message.lower(), f"{substring!r} not in {error.message!r}"

    @staticmethod
    def assert_success_value(result: Result[T], expected_value: Any) -> None:
        assert ResultAssertions.assert_success(result) == expected_value
