"""
Railway-Oriented Programming primitives used across pinguard.

    from pinguard.railway import ErrorCode, Result

    def check_percentage(p: int) -> Result[int]:
        if not 0 <= p <= 100:
            return Result.failure(ErrorCode.OUT_OF_RANGE, f"percentage {p} outside 0..100")
        return Result.success(p)
"""

from pinguard.railway.assertions import ResultAssertions
from pinguard.railway.execution import (
    ExecutionContext,
    LoggingExecutionContext,
    NoOpExecutionContext,
)
from pinguard.railway.failure import ConfigError, ErrorCode, FailureDescription
from pinguard.railway.result import Failure, Result, Success

__all__ = [
    "Result",
    "Success",
    "Failure",
    "ErrorCode",
    "FailureDescription",
    "ConfigError",
    "ExecutionContext",
    "NoOpExecutionContext",
    "LoggingExecutionContext",
    "ResultAssertions",
]
