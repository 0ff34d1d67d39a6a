"""
Tests for the railway primitives — Result, ErrorCode, execution contexts.

Covers the operators the pipeline relies on (map, flat_map, ensure, peek,
get_or_else, from_computation, from_optional), the HTTP/retry classification
carried by ErrorCode, and LoggingExecutionContext turning exceptions into
failures.
"""

from __future__ import annotations

import logging

import pytest

from railway import (
    ErrorCode,
    Failure,
    FailureDescription,
    LoggingExecutionContext,
    NoOpExecutionContext,
    Result,
    ResultAssertions,
    Success,
)

# ═══════════════════════════════════════════════════════════════
# 1. Creation & Introspection
# ═══════════════════════════════════════════════════════════════


class TestCreation:
    def test_success_wraps_value(self):
        result = Result.success(42)
        assert result.is_success()
        assert not result.is_failure()
        assert result.value() == 42

    def test_success_rejects_none(self):
        with pytest.raises(TypeError, match="must not be None"):
            Success(None)

    def test_failure_with_code_and_message(self):
        result = Result.failure(ErrorCode.NOT_FOUND, "Batch B1 not found")
        assert result.is_failure()
        assert result.error().code is ErrorCode.NOT_FOUND
        assert result.error().message == "Batch B1 not found"

    def test_failure_is_falsy(self):
        assert not Result.failure(ErrorCode.VALIDATION_ERROR, "bad")
        assert Result.success("x")

    def test_value_on_failure_raises(self):
        with pytest.raises(ValueError, match="Cannot get value from a Failure"):
            Result.failure(ErrorCode.NOT_FOUND, "missing").value()

    def test_error_on_success_raises(self):
        with pytest.raises(ValueError, match="Cannot get error from a Success"):
            Result.success(1).error()

    def test_pattern_matching(self):
        match Result.failure(ErrorCode.CONFLICT_ERROR, "taken"):
            case Failure(err):
                assert err.code is ErrorCode.CONFLICT_ERROR
            case _:
                pytest.fail("expected Failure")


# ═══════════════════════════════════════════════════════════════
# 2. Transformations
# ═══════════════════════════════════════════════════════════════


class TestTransformations:
    def test_map_transforms_success(self):
        assert Result.success(2).map(lambda v: v * 3).value() == 6

    def test_map_short_circuits_failure(self):
        called: list[int] = []
        result = Result.failure(ErrorCode.DATABASE_ERROR, "down").map(called.append)
        assert result.is_failure()
        assert called == []

    def test_flat_map_chains(self):
        result = Result.success("B1").flat_map(lambda b: Result.success(f"{b}-ok"))
        assert result.value() == "B1-ok"

    def test_flat_map_propagates_inner_failure(self):
        result = Result.success("B1").flat_map(
            lambda _: Result.failure(ErrorCode.NOT_FOUND, "gone")
        )
        ResultAssertions.assert_failure(result, ErrorCode.NOT_FOUND)

    def test_ensure_passes(self):
        assert Result.success(5).ensure(lambda v: v > 1, ErrorCode.VALIDATION_ERROR, "x").value() == 5

    def test_ensure_fails_with_code_and_message(self):
        result = Result.success(0).ensure(
            lambda v: v > 1, ErrorCode.VALIDATION_ERROR, "must be positive"
        )
        error = ResultAssertions.assert_failure(result, ErrorCode.VALIDATION_ERROR)
        assert error.message == "must be positive"

    def test_ensure_accepts_failure_description(self):
        desc = FailureDescription(ErrorCode.CONFLICT_ERROR, "already revoked")
        result = Result.success(True).ensure(lambda v: not v, desc)
        assert result.error() is desc

    def test_map_failure_rewrites_error(self):
        result = Result.failure(ErrorCode.EXTERNAL_SERVICE_ERROR, "boom").map_failure(
            lambda e: FailureDescription(ErrorCode.TIMEOUT_ERROR, e.message)
        )
        ResultAssertions.assert_failure(result, ErrorCode.TIMEOUT_ERROR)

    def test_either(self):
        ok = Result.success(1).either(lambda v: f"ok {v}", lambda e: "ko")
        ko = Result.failure(ErrorCode.NOT_FOUND, "x").either(lambda v: "ok", lambda e: e.message)
        assert ok == "ok 1"
        assert ko == "x"


# ═══════════════════════════════════════════════════════════════
# 3. Side effects & recovery
# ═══════════════════════════════════════════════════════════════


class TestSideEffectsAndRecovery:
    def test_peek_runs_on_success_only(self):
        seen: list[int] = []
        Result.success(7).peek(seen.append)
        Result.failure(ErrorCode.NOT_FOUND, "x").peek(seen.append)
        assert seen == [7]

    def test_peek_failure_runs_on_failure_only(self):
        seen: list[str] = []
        Result.success(7).peek_failure(lambda e: seen.append(e.message))
        Result.failure(ErrorCode.NOT_FOUND, "x").peek_failure(lambda e: seen.append(e.message))
        assert seen == ["x"]

    def test_get_or_else(self):
        assert Result.failure(ErrorCode.NOT_FOUND, "x").get_or_else(3) == 3
        assert Result.success(1).get_or_else(3) == 1


# ═══════════════════════════════════════════════════════════════
# 4. Static factories
# ═══════════════════════════════════════════════════════════════


class TestFactories:
    def test_from_computation_success(self):
        assert Result.from_computation(lambda: 10, ErrorCode.DATABASE_ERROR, "x").value() == 10

    def test_from_computation_captures_exception(self):
        def boom() -> int:
            raise ConnectionError("refused")

        result = Result.from_computation(boom, ErrorCode.DATABASE_ERROR, "Query failed")
        error = ResultAssertions.assert_failure(result, ErrorCode.DATABASE_ERROR)
        assert isinstance(error.exception, ConnectionError)
        assert error.describe() == "Query failed: refused"

    def test_from_optional(self):
        assert Result.from_optional("v", "missing").value() == "v"
        ResultAssertions.assert_failure(Result.from_optional(None, "missing"), ErrorCode.NOT_FOUND)

    def test_from_optional_custom_code(self):
        result = Result.from_optional(None, "no", ErrorCode.CONFIGURATION_ERROR)
        ResultAssertions.assert_failure(result, ErrorCode.CONFIGURATION_ERROR)


# ═══════════════════════════════════════════════════════════════
# 5. Error codes
# ═══════════════════════════════════════════════════════════════


class TestErrorCode:
    @pytest.mark.parametrize(
        ("code", "status"),
        [
            (ErrorCode.VALIDATION_ERROR, 400),
            (ErrorCode.SIGNATURE_ERROR, 401),
            (ErrorCode.NOT_FOUND, 404),
            (ErrorCode.CONFLICT_ERROR, 409),
            (ErrorCode.BUSINESS_RULE_ERROR, 422),
            (ErrorCode.DATABASE_ERROR, 500),
            (ErrorCode.EXTERNAL_SERVICE_ERROR, 502),
            (ErrorCode.SERVICE_UNAVAILABLE_ERROR, 503),
            (ErrorCode.TIMEOUT_ERROR, 504),
        ],
    )
    def test_http_status(self, code: ErrorCode, status: int):
        assert code.status == status

    def test_every_code_has_a_status(self):
        for code in ErrorCode:
            assert 400 <= code.status < 600

    def test_client_errors_are_not_retryable(self):
        for code in ErrorCode:
            if code.status < 500:
                assert not code.retryable, code

    def test_transient_server_errors_are_retryable(self):
        assert ErrorCode.TIMEOUT_ERROR.retryable
        assert ErrorCode.EXTERNAL_SERVICE_ERROR.retryable
        assert ErrorCode.DATABASE_ERROR.retryable

    def test_configuration_error_is_not_retryable(self):
        assert not ErrorCode.CONFIGURATION_ERROR.retryable

    def test_description_exposes_retryable(self):
        assert FailureDescription(ErrorCode.TIMEOUT_ERROR, "slow").retryable
        assert not FailureDescription(ErrorCode.VALIDATION_ERROR, "bad").retryable

    def test_full_stack_trace_includes_exception(self):
        try:
            raise RuntimeError("deep failure")
        except RuntimeError as e:
            desc = FailureDescription(ErrorCode.TECHNICAL_ERROR, "wrapped", e)
        trace = desc.full_stack_trace()
        assert trace.startswith("wrapped")
        assert "deep failure" in trace


# ═══════════════════════════════════════════════════════════════
# 6. Execution contexts
# ═══════════════════════════════════════════════════════════════


class TestExecutionContexts:
    def test_noop_passthrough(self):
        assert NoOpExecutionContext().execute(lambda: Result.success(42)).value() == 42

    def test_logging_context_logs_success(self, caplog):
        ctx = LoggingExecutionContext(operation="IssueCredential", job_id="j-1")
        with caplog.at_level(logging.INFO, logger="railway.execution"):
            result = ctx.execute(lambda: Result.success("ok"))
        assert result.value() == "ok"
        assert "IssueCredential" in caplog.text
        assert "job_id=j-1" in caplog.text
        assert "SUCCESS" in caplog.text

    def test_logging_context_logs_failure(self, caplog):
        ctx = LoggingExecutionContext(operation="IssueCredential")
        with caplog.at_level(logging.INFO, logger="railway.execution"):
            result = ctx.execute(lambda: Result.failure(ErrorCode.NOT_FOUND, "missing"))
        assert result.is_failure()
        assert "FAILURE" in caplog.text

    def test_logging_context_turns_exception_into_technical_error(self, caplog):
        def exploding() -> Result[int]:
            raise RuntimeError("exploded")

        ctx = LoggingExecutionContext(operation="Boom")
        with caplog.at_level(logging.ERROR, logger="railway.execution"):
            result = ctx.execute(exploding)
        error = ResultAssertions.assert_failure(result, ErrorCode.TECHNICAL_ERROR)
        assert "exploded" in error.message
        assert isinstance(error.exception, RuntimeError)


class TestResultAssertions:
    def test_assert_success_returns_value(self):
        assert ResultAssertions.assert_success(Result.success(3)) == 3

    def test_assert_success_raises_on_failure(self):
        with pytest.raises(AssertionError, match="Expected Success"):
            ResultAssertions.assert_success(Result.failure(ErrorCode.NOT_FOUND, "x"))

    def test_assert_failure_checks_code(self):
        with pytest.raises(AssertionError, match="Expected error code"):
            ResultAssertions.assert_failure(
                Result.failure(ErrorCode.NOT_FOUND, "x"), ErrorCode.CONFLICT_ERROR
            )

    def test_assert_failure_message_contains(self):
        ResultAssertions.assert_failure_message_contains(
            Result.failure(ErrorCode.NOT_FOUND, "Batch B1 not found"), "b1 NOT"
        )
