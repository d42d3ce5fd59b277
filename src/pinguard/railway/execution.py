"""
Execution contexts — separate WHAT (a Result-returning refresh) from HOW it runs.

The scheduler and the /refresh endpoint run the same pure refresh pipeline;
the context adds timing and outcome logging, and turns an exception that
escapes an adapter into a Failure so a background job never dies silently.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Protocol, TypeVar, runtime_checkable

import structlog

from pinguard.railway.failure import ErrorCode, FailureDescription
from pinguard.railway.result import Failure, Result

T = TypeVar("T")
log = structlog.get_logger()


@runtime_checkable
class ExecutionContext(Protocol):
    """Anything with execute(computation) -> Result satisfies this protocol."""

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]: ...


class NoOpExecutionContext:
    """Passthrough context — runs the computation as-is. Used in tests."""

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        return computation()


class LoggingExecutionContext:
    """
    Logs start, duration and outcome of a computation.

        ctx = LoggingExecutionContext(operation="PolicyRefresh")
        result = ctx.execute(refresh_fn)
    """

    def __init__(
        self,
        inner: ExecutionContext | None = None,
        operation: str = "unknown",
    ) -> None:
        self._inner = inner or NoOpExecutionContext()
        self._operation = operation

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        log.debug("execution.started", operation=self._operation)
        start = time.monotonic()

        try:
            result = self._inner.execute(computation)
        except Exception as e:
            log.error(
                "execution.crashed",
                operation=self._operation,
                elapsed_seconds=round(time.monotonic() - start, 3),
                error=str(e),
            )
            return Failure(
                FailureDescription(ErrorCode.TECHNICAL_ERROR, f"Execution failed: {e}", e)
            )

        log.info(
            "execution.completed",
            operation=self._operation,
            elapsed_seconds=round(time.monotonic() - start, 3),
            state="SUCCESS" if result.is_success() else "FAILURE",
        )
        return result
