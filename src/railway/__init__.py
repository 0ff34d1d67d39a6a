"""
Railway-Oriented Programming (ROP) primitives.

Explicit, composable error handling — no exceptions in business logic.

    from railway import Result, ErrorCode

    def require_batch(batch_id: str) -> Result[str]:
        if not batch_id:
            return Result.failure(ErrorCode.VALIDATION_ERROR, "Batch id is required")
        return Result.success(batch_id)
"""

from railway.assertions import ResultAssertions
from railway.execution import (
    ExecutionContext,
    LoggingExecutionContext,
    NoOpExecutionContext,
)
from railway.failure import ErrorCode, FailureDescription
from railway.result import Failure, Result, Success

__all__ = [
    "Result",
    "Success",
    "Failure",
    "ErrorCode",
    "FailureDescription",
    "ExecutionContext",
    "NoOpExecutionContext",
    "LoggingExecutionContext",
    "ResultAssertions",
]
