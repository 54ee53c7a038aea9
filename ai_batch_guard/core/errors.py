"""
Error taxonomy for batch orchestration.

Admission errors are reported back to callers as structured results,
per-item generation errors are classified as retryable or fatal, and
infrastructure errors make admission fail closed.
"""

from enum import Enum
from typing import Optional


class ErrorCode(Enum):
    """Stable machine-readable error codes."""
    RATE_LIMITED = "RATE_LIMITED"
    DAILY_BATCH_LIMIT = "DAILY_BATCH_LIMIT"
    DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"
    IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    EMPTY_BATCH = "EMPTY_BATCH"
    BATCH_SIZE_EXCEEDED = "BATCH_SIZE_EXCEEDED"
    INVALID_ITEM = "INVALID_ITEM"
    DUPLICATE_SCENE = "DUPLICATE_SCENE"
    GENERATION_FAILED = "GENERATION_FAILED"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    LEDGER_STATE = "LEDGER_STATE"
    CONFIGURATION = "CONFIGURATION"


class BatchGuardError(Exception):
    """Base class for all errors raised by this package."""

    code = ErrorCode.GENERATION_FAILED
    retryable = False

    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class RetryableError(BatchGuardError):
    """Transient upstream failure: rate limited, 5xx, timeout, connection reset."""

    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class FatalError(BatchGuardError):
    """Upstream failure that will not succeed on retry (validation, permission)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StoreUnavailableError(BatchGuardError):
    """A backing store could not be read or written.

    Admission treats this as "cannot confirm" and rejects the submission.
    """

    code = ErrorCode.STORE_UNAVAILABLE
    retryable = True


class CircuitOpenError(BatchGuardError):
    """Raised instead of calling upstream while the circuit is open."""

    code = ErrorCode.CIRCUIT_OPEN


class JobNotFoundError(BatchGuardError):
    """No job state exists for the requested batch."""

    code = ErrorCode.JOB_NOT_FOUND

    def __init__(self, batch_id: str):
        super().__init__(f"Job not found: {batch_id}")
        self.batch_id = batch_id


class LedgerStateError(BatchGuardError):
    """A job ledger update would violate a ledger invariant."""

    code = ErrorCode.LEDGER_STATE


class ConfigurationError(BatchGuardError):
    """The orchestrator was wired without a required collaborator."""

    code = ErrorCode.CONFIGURATION
