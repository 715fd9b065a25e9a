"""
Batch-level payout status bookkeeping.

The batch keeps a per-category snapshot (insurance, administrative,
commissions). Insurance and administrative are batch-level allocations and
only change through manual entry or force-close. The commissions category is
derived from the ledger after every dispatch, retry or manual entry.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.audit.logger import log_event
from settlement_engine.engine.errors import NotFoundError
from settlement_engine.models.enums import AuditAction, BatchStatus, CategoryStatus, PayoutCategory, PayoutStatus
from settlement_engine.models.settlement import PayoutTransaction, SettlementBatch

logger = logging.getLogger("settlement_engine.batch_state")

RESOLVED_CATEGORY_STATES = {CategoryStatus.COMPLETED.value, CategoryStatus.MANUAL.value}


def read_payout_status(batch: SettlementBatch) -> dict[str, str]:
    """Return the batch's category snapshot, defaulting missing keys to pending."""
    stored = {}
    if batch.payout_status:
        try:
            stored = json.loads(batch.payout_status)
        except (json.JSONDecodeError, TypeError):
            stored = {}
    return {c.value: stored.get(c.value, CategoryStatus.PENDING.value) for c in PayoutCategory}


def write_payout_status(batch: SettlementBatch, status: dict[str, str]) -> None:
    batch.payout_status = json.dumps({c.value: status[c.value] for c in PayoutCategory})


async def load_batch(session: AsyncSession, batch_id: str) -> SettlementBatch:
    result = await session.execute(
        select(SettlementBatch)
        .where(SettlementBatch.id == batch_id)
        .execution_options(populate_existing=True)
    )
    batch = result.scalar_one_or_none()
    if batch is None:
        raise NotFoundError(f"Settlement batch not found: {batch_id}")
    return batch


async def count_by_status(session: AsyncSession, batch_id: str) -> dict[str, int]:
    """Row counts per status for a batch, plus ``leased`` pending rows."""
    result = await session.execute(
        select(PayoutTransaction.status, func.count())
        .where(PayoutTransaction.batch_id == batch_id)
        .group_by(PayoutTransaction.status)
    )
    counts = {status: count for status, count in result.all()}

    leased = await session.scalar(
        select(func.count())
        .select_from(PayoutTransaction)
        .where(
            PayoutTransaction.batch_id == batch_id,
            PayoutTransaction.status == PayoutStatus.PENDING.value,
            PayoutTransaction.lease_token.is_not(None),
        )
    )
    counts["leased"] = leased or 0
    return counts


def commission_category_status(counts: dict[str, int]) -> str:
    pending = counts.get(PayoutStatus.PENDING.value, 0)
    completed = counts.get(PayoutStatus.COMPLETED.value, 0)
    failed = counts.get(PayoutStatus.FAILED.value, 0) + counts.get(PayoutStatus.RECONCILIATION.value, 0)
    total = pending + completed + failed

    if total == completed:
        return CategoryStatus.COMPLETED.value
    if counts.get("leased", 0) > 0:
        return CategoryStatus.IN_PROGRESS.value
    if failed and completed:
        return CategoryStatus.PARTIALLY_FAILED.value
    if failed:
        return CategoryStatus.FAILED.value
    if completed:
        return CategoryStatus.IN_PROGRESS.value
    return CategoryStatus.PENDING.value


async def refresh_batch_status(
    session: AsyncSession,
    batch_id: str,
    commissions_override: Optional[str] = None,
) -> SettlementBatch:
    """
    Recompute the commissions category and advance the batch lifecycle.

    An open batch becomes processed once every payout row is completed. A
    processed batch becomes completed once, in addition, insurance and
    administrative are resolved.
    """
    batch = await load_batch(session, batch_id)
    counts = await count_by_status(session, batch_id)
    status = read_payout_status(batch)

    status[PayoutCategory.COMMISSIONS.value] = commissions_override or commission_category_status(counts)
    write_payout_status(batch, status)

    total = sum(v for k, v in counts.items() if k != "leased")
    all_completed = counts.get(PayoutStatus.COMPLETED.value, 0) == total

    previous = batch.status
    if all_completed and batch.status == BatchStatus.OPEN.value and total > 0:
        batch.status = BatchStatus.PROCESSED.value
        batch.processed_at = datetime.now(timezone.utc)
    if (
        all_completed
        and batch.status == BatchStatus.PROCESSED.value
        and status[PayoutCategory.INSURANCE.value] in RESOLVED_CATEGORY_STATES
        and status[PayoutCategory.ADMINISTRATIVE.value] in RESOLVED_CATEGORY_STATES
    ):
        batch.status = BatchStatus.COMPLETED.value

    if batch.status != previous:
        logger.info("Batch %s moved %s -> %s", batch_id[:8], previous, batch.status)
        await log_event(session, AuditAction.BATCH_STATUS_CHANGED, batch_id=batch_id, details={
            "from": previous,
            "to": batch.status,
        })

    await session.flush()
    return batch
