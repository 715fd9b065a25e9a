"""Enumerations for the settlement domain model."""

from enum import Enum


class BatchStatus(str, Enum):
    """Lifecycle states for a settlement batch."""

    OPEN = "open"
    PROCESSED = "processed"
    RECONCILIATION = "reconciliation"
    COMPLETED = "completed"


class PayoutStatus(str, Enum):
    """Lifecycle states for an individual payout transaction."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    RECONCILIATION = "reconciliation"


class CategoryStatus(str, Enum):
    """Per-category payout status shown on a batch (insurance, administrative, commissions)."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    MANUAL = "manual"
    PARTIALLY_FAILED = "partially_failed"


class PayoutCategory(str, Enum):
    INSURANCE = "insurance"
    ADMINISTRATIVE = "administrative"
    COMMISSIONS = "commissions"


class BeneficiaryType(str, Enum):
    AGENT = "agent"
    SUPER_AGENT = "super_agent"


class PayoutProvider(str, Enum):
    """Channel a payout was (or will be) settled through."""

    MPESA = "mpesa"
    BANK = "bank"
    MANUAL = "manual"


class PortionType(str, Enum):
    """How a plan portion is expressed."""

    FIXED = "fixed"
    PERCENT = "percent"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    ALLOCATED = "allocated"


class AuditAction(str, Enum):
    """Every kind of event written to the audit trail."""

    BATCH_GENERATED = "batch_generated"
    BATCH_STATUS_CHANGED = "batch_status_changed"
    BATCH_FORCE_CLOSED = "batch_force_closed"
    PAYOUT_DISPATCHED = "payout_dispatched"
    PAYOUT_STATUS_CHANGED = "payout_status_changed"
    PAYOUT_RETRY_REQUESTED = "payout_retry_requested"
    DISPATCH_SKIPPED = "dispatch_skipped"
    DISPATCH_RESULT_DISCARDED = "dispatch_result_discarded"
    LATE_CALLBACK_RECORDED = "late_callback_recorded"
    MANUAL_PAYOUT_RECORDED = "manual_payout_recorded"
    CATEGORY_MANUAL_RECORDED = "category_manual_recorded"
