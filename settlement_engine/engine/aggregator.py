"""
Settlement status aggregator.

Read-only summaries over the payout ledger for polling clients. Nothing here
writes to the database, so the console can poll as often as it likes.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.engine.batch_state import count_by_status, load_batch, read_payout_status
from settlement_engine.models.enums import BeneficiaryType, PayoutStatus
from settlement_engine.models.settlement import Agent, PayoutTransaction, SettlementBatch, SuperAgent


@dataclass
class StatusSummary:
    batch_id: str
    batch_status: str
    total: int
    pending: int
    completed: int
    failed: int
    in_progress: int
    completion_percentage: int
    payout_status: dict[str, str]


@dataclass
class PayoutView:
    """A payout row joined with its beneficiary's display data."""

    payout: PayoutTransaction
    beneficiary_name: Optional[str]
    beneficiary_phone: Optional[str]


def completion_percentage(completed: int, total: int) -> int:
    """
    round(completed / total * 100), half away from zero; 0 for an empty batch.

    Never reports 100 while a row is still outstanding (199 of 200 is 99).
    """
    if total <= 0:
        return 0
    pct = int((Decimal(completed) * 100 / Decimal(total)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if completed < total:
        return min(pct, 99)
    return pct


async def get_status(session: AsyncSession, batch_id: str) -> StatusSummary:
    """Counts per status, category snapshot and completion percentage for a batch."""
    batch = await load_batch(session, batch_id)
    counts = await count_by_status(session, batch_id)

    pending = counts.get(PayoutStatus.PENDING.value, 0)
    completed = counts.get(PayoutStatus.COMPLETED.value, 0)
    failed = counts.get(PayoutStatus.FAILED.value, 0) + counts.get(PayoutStatus.RECONCILIATION.value, 0)
    total = pending + completed + failed

    return StatusSummary(
        batch_id=batch.id,
        batch_status=batch.status,
        total=total,
        pending=pending,
        completed=completed,
        failed=failed,
        in_progress=counts.get("leased", 0),
        completion_percentage=completion_percentage(completed, total),
        payout_status=read_payout_status(batch),
    )


async def get_details(
    session: AsyncSession,
    batch_id: str,
    status: Optional[str] = None,
) -> list[PayoutView]:
    """Payout rows for a batch joined with beneficiary name and phone."""
    await load_batch(session, batch_id)

    stmt = (
        select(
            PayoutTransaction,
            func.coalesce(Agent.full_name, SuperAgent.full_name),
            func.coalesce(Agent.phone, SuperAgent.phone),
        )
        .outerjoin(Agent, and_(
            PayoutTransaction.beneficiary_type == BeneficiaryType.AGENT.value,
            Agent.id == PayoutTransaction.beneficiary_id,
        ))
        .outerjoin(SuperAgent, and_(
            PayoutTransaction.beneficiary_type == BeneficiaryType.SUPER_AGENT.value,
            SuperAgent.id == PayoutTransaction.beneficiary_id,
        ))
        .where(PayoutTransaction.batch_id == batch_id)
    )
    if status:
        stmt = stmt.where(PayoutTransaction.status == status)
    stmt = stmt.order_by(PayoutTransaction.beneficiary_type, PayoutTransaction.beneficiary_id)

    result = await session.execute(stmt.execution_options(populate_existing=True))
    return [PayoutView(payout=p, beneficiary_name=name, beneficiary_phone=phone) for p, name, phone in result.all()]


async def get_batch(session: AsyncSession, batch_id: str) -> tuple[SettlementBatch, int]:
    """A batch and its live completion percentage."""
    summary = await get_status(session, batch_id)
    batch = await load_batch(session, batch_id)
    return batch, summary.completion_percentage


async def list_batches(
    session: AsyncSession,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[tuple[SettlementBatch, int]], int]:
    """
    Page through batches, newest settlement date first.

    Returns:
        ([(batch, completion_percentage), ...], total matching batches)
    """
    base = select(SettlementBatch)
    count_stmt = select(func.count()).select_from(SettlementBatch)
    if status:
        base = base.where(SettlementBatch.status == status)
        count_stmt = count_stmt.where(SettlementBatch.status == status)

    total = await session.scalar(count_stmt) or 0
    result = await session.execute(
        base.order_by(SettlementBatch.settlement_date.desc())
        .offset((max(page, 1) - 1) * limit)
        .limit(limit)
    )
    batches = list(result.scalars().all())
    if not batches:
        return [], total

    # One grouped query for all completion percentages on the page.
    rows = await session.execute(
        select(PayoutTransaction.batch_id, PayoutTransaction.status, func.count())
        .where(PayoutTransaction.batch_id.in_([b.id for b in batches]))
        .group_by(PayoutTransaction.batch_id, PayoutTransaction.status)
    )
    totals: dict[str, int] = {}
    completed: dict[str, int] = {}
    for batch_id, row_status, count in rows.all():
        totals[batch_id] = totals.get(batch_id, 0) + count
        if row_status == PayoutStatus.COMPLETED.value:
            completed[batch_id] = count

    return [
        (b, completion_percentage(completed.get(b.id, 0), totals.get(b.id, 0)))
        for b in batches
    ], total
