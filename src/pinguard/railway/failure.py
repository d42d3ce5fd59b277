"""
Failure description — structured error information for the failure track.

Every rejected policy document, rotation step, or fetch attempt travels
down the failure track as a FailureDescription carrying an ErrorCode.
Nothing here raises: callers inspect `code` to decide whether to alert,
retry the fetch, or keep serving the last good policy.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, unique


@unique
class ErrorCode(Enum):
    """
    Error codes for configuration ingestion, rotation, and policy fetching.

    Document errors (the blob is discarded wholesale):
      MALFORMED_DOCUMENT, SCHEMA_VIOLATION, OUT_OF_RANGE, INVALID_HOSTNAME,
      WILDCARD_HOSTNAME, INVALID_PIN, INSUFFICIENT_PINS, INVALID_VERSION,
      UNSUPPORTED_ROLLOUT_METHOD
    Rotation / store errors: PIN_NOT_FOUND, NOT_FOUND
    Transport errors (reported by the policy source): FETCH_FAILED, TIMEOUT
    """

    MALFORMED_DOCUMENT = "MALFORMED_DOCUMENT"
    """Blob is not decodable JSON, or not a JSON object."""

    SCHEMA_VIOLATION = "SCHEMA_VIOLATION"
    """Missing required field or wrong field type."""

    OUT_OF_RANGE = "OUT_OF_RANGE"
    """Numeric field outside its allowed range (rollout percentage 0..100)."""

    INVALID_HOSTNAME = "INVALID_HOSTNAME"
    """Hostname is not a well-formed exact DNS name."""

    WILDCARD_HOSTNAME = "WILDCARD_HOSTNAME"
    """Hostname uses a wildcard label — never accepted."""

    INVALID_PIN = "INVALID_PIN"
    """Pin is not strict Base64 of exactly 32 bytes."""

    INSUFFICIENT_PINS = "INSUFFICIENT_PINS"
    """Pin set would drop below its minimum cardinality."""

    PIN_NOT_FOUND = "PIN_NOT_FOUND"
    """Rotation referenced a pin that is not part of the set."""

    INVALID_VERSION = "INVALID_VERSION"
    """Version string is not a parseable semantic version."""

    UNSUPPORTED_ROLLOUT_METHOD = "UNSUPPORTED_ROLLOUT_METHOD"
    """Rollout strategy method other than "percentage"."""

    NOT_FOUND = "NOT_FOUND"
    """Requested state does not exist (e.g. no last-known-good policy)."""

    FETCH_FAILED = "FETCH_FAILED"
    """Policy source could not deliver a document."""

    TIMEOUT = "TIMEOUT"
    """Policy source exceeded its time budget."""

    TECHNICAL_ERROR = "TECHNICAL_ERROR"
    """Unexpected exception escaped a stage."""


@dataclass(frozen=True, slots=True)
class FailureDescription:
    """
    Immutable failure descriptor: error code, message, optional exception, timestamp.

    >>> desc = FailureDescription(ErrorCode.INVALID_PIN, "pin is not 32 bytes")
    >>> desc.code
    <ErrorCode.INVALID_PIN: 'INVALID_PIN'>
    """

    code: ErrorCode
    message: str
    exception: BaseException | None = field(default=None, repr=False)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def full_stack_trace(self) -> str:
        """Message followed by the formatted exception chain, when there is one."""
        if self.exception is None:
            return self.message
        tb = "".join(
            traceback.format_exception(type(self.exception), self.exception, self.exception.__traceback__)
        )
        return f"{self.message}\n{tb}"

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


# A configuration failure is simply a failure description with one of the
# document/rotation codes above.
ConfigError = FailureDescription
