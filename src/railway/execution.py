"""
Execution contexts — separate WHAT (pure logic) from HOW (side effects).

A pipeline describes WHAT should happen and returns Result[T]; an execution
context describes HOW it runs (logging, timing, exception capture). The
worker pool runs every job inside a LoggingExecutionContext so that an
unexpected exception in one job becomes a Failure instead of tearing down
the thread that runs it.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Protocol, TypeVar, runtime_checkable

from railway.failure import ErrorCode, FailureDescription
from railway.result import Failure, Result

T = TypeVar("T")
logger = logging.getLogger("railway.execution")


@runtime_checkable
class ExecutionContext(Protocol):
    """Any class implementing execute(computation) satisfies this protocol."""

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]: ...


class NoOpExecutionContext:
    """Passthrough execution context — runs computation without any wrapper."""

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        return computation()


class LoggingExecutionContext:
    """
    Execution context that logs entry, exit, duration, and result state.

    Exceptions escaping the computation are converted to a TECHNICAL_ERROR
    Failure carrying the original exception.

        ctx = LoggingExecutionContext(operation="IssueCredential", job_id=str(job_id))
    """

    def __init__(
        self,
        inner: ExecutionContext | None = None,
        operation: str = "unknown",
        log_level: int = logging.INFO,
        **context: Any,
    ) -> None:
        self._inner = inner or NoOpExecutionContext()
        self._operation = operation
        self._log_level = log_level
        self._context = " ".join(f"{k}={v}" for k, v in sorted(context.items()))

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        logger.log(self._log_level, "[%s] Starting execution %s", self._operation, self._context)
        start = time.monotonic()

        try:
            result = self._inner.execute(computation)
        except Exception as e:
            elapsed = time.monotonic() - start
            logger.error(
                "[%s] Execution failed after %.3fs %s: %s",
                self._operation,
                elapsed,
                self._context,
                e,
            )
            return Failure(
                FailureDescription(
                    ErrorCode.TECHNICAL_ERROR,
                    f"Execution failed: {e}",
                    e,
                )
            )

        elapsed = time.monotonic() - start
        state = "SUCCESS" if result.is_success() else "FAILURE"
        logger.log(
            self._log_level,
            "[%s] Completed in %.3fs %s — %s",
            self._operation,
            elapsed,
            self._context,
            state,
        )
        return result
