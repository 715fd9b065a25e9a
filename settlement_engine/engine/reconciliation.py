"""
Manual reconciliation and batch force-close.

Operators resolve payouts the automated path could not complete by recording
evidence of a transfer made outside the provider (for example an M-Pesa
transaction sent from the business phone). Manual entries do not count
against the automated attempt cap.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.audit.logger import log_event, to_json
from settlement_engine.engine import ledger
from settlement_engine.engine.batch_state import (
    RESOLVED_CATEGORY_STATES,
    count_by_status,
    load_batch,
    read_payout_status,
    refresh_batch_status,
    write_payout_status,
)
from settlement_engine.engine.errors import AlreadyCompletedError, InvalidStateError, ValidationError
from settlement_engine.models.enums import (
    AuditAction,
    BatchStatus,
    CategoryStatus,
    PayoutCategory,
    PayoutProvider,
    PayoutStatus,
)
from settlement_engine.models.settlement import PayoutTransaction, SettlementBatch

logger = logging.getLogger("settlement_engine.reconciliation")

BATCH_LEVEL_CATEGORIES = {PayoutCategory.INSURANCE.value, PayoutCategory.ADMINISTRATIVE.value}


@dataclass
class ManualEntry:
    """Operator-supplied evidence of a manual transfer."""

    transaction_ref: Optional[str] = None
    transaction_date: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None


def _today() -> date:
    # Operators enter dates in the server's local calendar.
    return date.today()


def validate_transaction(entry: ManualEntry, require_phone: bool = True) -> date:
    """
    Check the required fields of a manual entry.

    Returns:
        The parsed transaction date.

    Raises:
        ValidationError: Naming the first missing or invalid field.
    """
    if not (entry.transaction_ref or "").strip():
        raise ValidationError("Transaction reference is required", field="transactionRef")
    if not (entry.transaction_date or "").strip():
        raise ValidationError("Transaction date is required", field="transactionDate")
    if require_phone and not (entry.phone or "").strip():
        raise ValidationError("Phone number is required", field="phone")

    raw = entry.transaction_date.strip()
    try:
        # Accept plain dates and full ISO timestamps ("2025-01-31T00:00:00.000Z").
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00")).date() if "T" in raw else date.fromisoformat(raw)
    except ValueError:
        raise ValidationError("Transaction date must be a valid ISO date", field="transactionDate")

    if parsed > _today():
        raise ValidationError("Transaction date cannot be in the future", field="transactionDate")
    return parsed


async def record_manual(
    session: AsyncSession,
    batch_id: str,
    payout_id: str,
    entry: ManualEntry,
) -> PayoutTransaction:
    """
    Close a failed payout with operator-supplied transaction evidence.

    Raises:
        ValidationError: A required field is missing or invalid.
        NotFoundError: Unknown batch or payout.
        AlreadyCompletedError: The payout is already completed.
        InvalidStateError: The payout is not in failed status.
    """
    transaction_date = validate_transaction(entry)

    await load_batch(session, batch_id)
    payout = await ledger.get_payout(session, payout_id, batch_id=batch_id)
    if payout.status == PayoutStatus.COMPLETED.value:
        raise AlreadyCompletedError(f"Payout {payout_id} is already completed")
    if payout.status != PayoutStatus.FAILED.value:
        raise InvalidStateError(
            f"Manual entry is only allowed for failed payouts (payout {payout_id} is {payout.status})"
        )

    payout = await ledger.update_status(session, payout_id, PayoutStatus.COMPLETED.value, {
        "provider": PayoutProvider.MANUAL.value,
        "manual_transaction_ref": entry.transaction_ref.strip(),
        "manual_transaction_details": {
            "transaction_date": transaction_date.isoformat(),
            "phone": entry.phone.strip(),
            "notes": (entry.notes or "").strip() or None,
            "recorded_at": datetime.now(timezone.utc).isoformat(),
        },
    })
    await log_event(session, AuditAction.MANUAL_PAYOUT_RECORDED, batch_id=batch_id, payout_id=payout_id, details={
        "transaction_ref": payout.manual_transaction_ref,
        "transaction_date": transaction_date.isoformat(),
        "attempts": payout.attempts,
    })
    await refresh_batch_status(session, batch_id)
    await session.commit()

    logger.info("Payout %s manually reconciled (ref=%s)", payout_id, payout.manual_transaction_ref)
    return payout


async def record_category_manual(
    session: AsyncSession,
    batch_id: str,
    category: str,
    entry: ManualEntry,
) -> SettlementBatch:
    """
    Record manual evidence for a batch-level transfer (insurance or administrative).

    Raises:
        ValidationError: Bad category or missing/invalid field.
        AlreadyCompletedError: The category is already resolved.
    """
    if category not in BATCH_LEVEL_CATEGORIES:
        raise ValidationError(f"Unknown payout category: {category}", field="category")
    transaction_date = validate_transaction(entry, require_phone=False)

    batch = await load_batch(session, batch_id)
    status = read_payout_status(batch)
    if status[category] in RESOLVED_CATEGORY_STATES:
        raise AlreadyCompletedError(f"{category.capitalize()} payout for this batch is already {status[category]}")

    evidence = to_json({
        "transaction_ref": entry.transaction_ref.strip(),
        "transaction_date": transaction_date.isoformat(),
        "notes": (entry.notes or "").strip() or None,
        "recorded_at": datetime.now(timezone.utc).isoformat(),
    })
    if category == PayoutCategory.INSURANCE.value:
        batch.insurance_payout_details = evidence
    else:
        batch.administrative_payout_details = evidence

    status[category] = CategoryStatus.MANUAL.value
    write_payout_status(batch, status)
    await log_event(session, AuditAction.CATEGORY_MANUAL_RECORDED, batch_id=batch_id, details={
        "category": category,
        "transaction_ref": entry.transaction_ref.strip(),
    })

    batch = await refresh_batch_status(session, batch_id)
    await session.commit()
    return batch


async def process_batch(session: AsyncSession, batch_id: str, notes: Optional[str] = None) -> SettlementBatch:
    """
    Force-close a batch ("Mark Processed").

    Allowed with payouts still pending or failed; unresolved categories are
    downgraded to reflect partial completion instead of blocking closure.

    Raises:
        InvalidStateError: The batch is not open.
    """
    batch = await load_batch(session, batch_id)
    if batch.status != BatchStatus.OPEN.value:
        raise InvalidStateError(f"Batch {batch_id} is already {batch.status}")

    counts = await count_by_status(session, batch_id)
    completed = counts.get(PayoutStatus.COMPLETED.value, 0)
    outstanding = sum(v for k, v in counts.items() if k not in ("leased", PayoutStatus.COMPLETED.value))

    status = read_payout_status(batch)
    if outstanding:
        status[PayoutCategory.COMMISSIONS.value] = (
            CategoryStatus.PARTIALLY_FAILED.value if completed else CategoryStatus.FAILED.value
        )
    for category in BATCH_LEVEL_CATEGORIES:
        if status[category] not in RESOLVED_CATEGORY_STATES:
            status[category] = CategoryStatus.FAILED.value
    write_payout_status(batch, status)

    batch.status = BatchStatus.PROCESSED.value
    batch.processed_at = datetime.now(timezone.utc)
    batch.notes = notes
    await log_event(session, AuditAction.BATCH_FORCE_CLOSED, batch_id=batch_id, details={
        "notes": notes,
        "completed_payouts": completed,
        "outstanding_payouts": outstanding,
        "payout_status": status,
    })
    if outstanding:
        logger.warning("Batch %s force-closed with %d outstanding payouts", batch_id[:8], outstanding)

    await session.commit()
    return batch
