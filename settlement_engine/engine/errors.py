"""
Error taxonomy for settlement operations.

Validation and state errors are raised synchronously to the caller and
rendered inline by the console. Provider errors are raised by provider
adapters and caught by the dispatcher, which records them on the payout row
instead of propagating them.
"""

from typing import Optional


class SettlementError(Exception):
    """Base exception for settlement operations."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SettlementError):
    """Missing or invalid operator-supplied field."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(SettlementError):
    status_code = 404


class DuplicateBatchError(SettlementError):
    """A batch already exists for the requested settlement date."""

    status_code = 409


class NoPaymentsError(SettlementError):
    """
    No eligible payments for the date.

    Soft: the batch builder still creates the (empty) batch and returns this
    as a warning rather than raising it.
    """


class MaxAttemptsExceeded(SettlementError):
    """The payout has used all automated attempts; only manual entry remains."""

    status_code = 409


class AlreadyCompletedError(SettlementError):
    """Completed payouts are terminal and reject further mutation."""

    status_code = 409


class InvalidStateError(SettlementError):
    """The requested transition is not allowed from the row's current status."""

    status_code = 409


class ProviderError(SettlementError):
    """Base exception for payment provider errors."""

    status_code = 502

    def __init__(self, message: str, result_code: Optional[str] = None):
        super().__init__(message)
        self.result_code = result_code


class ProviderTimeoutError(ProviderError):
    """The provider did not answer within the configured timeout."""

    status_code = 504


class ProviderRejectedError(ProviderError):
    """The provider refused the payout request."""
