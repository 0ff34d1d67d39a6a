"""
Failure description — structured error information for the failure track.

Every failure carries an ErrorCode. The code decides two things downstream:
  - which HTTP status an API boundary answers with (status)
  - whether a background job should be attempted again (retryable)
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, unique
from typing import Optional


@unique
class ErrorCode(Enum):
    """
    Structured error codes for the failure track.

    Client errors (4xx) describe a request that will never succeed as sent;
    server errors (5xx) describe conditions that may clear on their own.
    """

    # --- Client-side errors (4xx HTTP range) ---
    VALIDATION_ERROR = "VALIDATION_ERROR"
    """Invalid input format, missing fields, rejected payload (→ 400)."""

    SIGNATURE_ERROR = "SIGNATURE_ERROR"
    """Missing or mismatching signature on an inbound message (→ 401)."""

    NOT_FOUND = "NOT_FOUND"
    """Resource doesn't exist (→ 404)."""

    CONFLICT_ERROR = "CONFLICT_ERROR"
    """Resource state forbids the transition, e.g. already claimed (→ 409)."""

    BUSINESS_RULE_ERROR = "BUSINESS_RULE_ERROR"
    """Domain invariant violated (→ 422)."""

    # --- Server-side errors (5xx HTTP range) ---
    TECHNICAL_ERROR = "TECHNICAL_ERROR"
    """Infrastructure issues (→ 500)."""

    DATABASE_ERROR = "DATABASE_ERROR"
    """Database connectivity or query failures (→ 500)."""

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    """System misconfiguration (→ 500)."""

    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    """External API call failures (→ 502)."""

    SERVICE_UNAVAILABLE_ERROR = "SERVICE_UNAVAILABLE_ERROR"
    """Provider overloaded or in maintenance (→ 503)."""

    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    """Operation exceeded time limit (→ 504)."""

    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    """Unexpected/unclassified failures (→ 500)."""

    @property
    def status(self) -> int:
        """HTTP status code for this error."""
        return _STATUS[self]

    @property
    def retryable(self) -> bool:
        """True when the same operation may succeed if attempted again."""
        return self in _RETRYABLE


_STATUS: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.SIGNATURE_ERROR: 401,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT_ERROR: 409,
    ErrorCode.BUSINESS_RULE_ERROR: 422,
    ErrorCode.TECHNICAL_ERROR: 500,
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.CONFIGURATION_ERROR: 500,
    ErrorCode.EXTERNAL_SERVICE_ERROR: 502,
    ErrorCode.SERVICE_UNAVAILABLE_ERROR: 503,
    ErrorCode.TIMEOUT_ERROR: 504,
    ErrorCode.UNKNOWN_ERROR: 500,
}

_RETRYABLE = frozenset(
    {
        ErrorCode.TECHNICAL_ERROR,
        ErrorCode.DATABASE_ERROR,
        ErrorCode.EXTERNAL_SERVICE_ERROR,
        ErrorCode.SERVICE_UNAVAILABLE_ERROR,
        ErrorCode.TIMEOUT_ERROR,
        ErrorCode.UNKNOWN_ERROR,
    }
)


@dataclass(frozen=True, slots=True)
class FailureDescription:
    """
    Immutable failure descriptor carrying error code, message, optional exception, and timestamp.

    >>> desc = FailureDescription(ErrorCode.VALIDATION_ERROR, "Batch id is required")
    >>> desc.code
    <ErrorCode.VALIDATION_ERROR: 'VALIDATION_ERROR'>
    >>> desc.retryable
    False
    """

    code: ErrorCode
    message: str
    exception: Optional[BaseException] = field(default=None, repr=False)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def retryable(self) -> bool:
        return self.code.retryable

    def describe(self) -> str:
        """One-line diagnostic: message plus the underlying exception, if any."""
        if self.exception is None:
            return self.message
        return f"{self.message}: {self.exception}"

    def full_stack_trace(self) -> str:
        """Full stack trace string including the message and exception chain."""
        if self.exception is None:
            return self.message
        tb = "".join(
            traceback.format_exception(
                type(self.exception), self.exception, self.exception.__traceback__
            )
        )
        return f"{self.message}\n{tb}"
