"""
Settlement batch builder.

Aggregates one day's allocated payments into a settlement batch:

  1. Collect allocated payments for the date not claimed by another batch
  2. Split each payment by its plan's portions (agent commission,
     super-agent commission, admin share, insurance share)
  3. Create one pending payout row per beneficiary with a non-zero commission
  4. Claim the payments for the batch

Totals are fixed at generation time. Commission rows are built from the same
quantized per-payment amounts as the totals, so the sum of the rows equals
total_agent_commissions + total_super_agent_commissions exactly.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.audit.logger import log_event
from settlement_engine.engine import ledger
from settlement_engine.engine.batch_state import load_batch, write_payout_status
from settlement_engine.engine.errors import DuplicateBatchError, NoPaymentsError, ValidationError
from settlement_engine.models.enums import (
    AuditAction,
    BatchStatus,
    BeneficiaryType,
    CategoryStatus,
    PaymentStatus,
    PayoutCategory,
    PortionType,
)
from settlement_engine.models.settlement import (
    Agent,
    InsurancePlan,
    Payment,
    PayoutTransaction,
    SettlementBatch,
    SuperAgent,
)

logger = logging.getLogger("settlement_engine.batch_builder")

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def _money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class PaymentSplit:
    """How one payment is divided."""

    agent_commission: Decimal = ZERO
    super_agent_commission: Decimal = ZERO
    admin: Decimal = ZERO
    insurance: Decimal = ZERO


@dataclass
class BatchBuildResult:
    batch: SettlementBatch
    payout_count: int = 0
    warning: Optional[NoPaymentsError] = None


@dataclass
class _Beneficiary:
    amount: Decimal = ZERO
    sources: set = field(default_factory=set)


def compute_portion(amount: Decimal, portion_type: Optional[str], value, remaining: Decimal) -> Decimal:
    """
    Resolve one plan portion against a payment.

    Percent portions are computed against the payment amount; fixed portions
    are taken as-is. Either way the result is capped at what remains of the
    payment, so later portions never go negative.
    """
    value = Decimal(str(value or 0))
    if value <= 0 or remaining <= 0:
        return ZERO
    if portion_type == PortionType.PERCENT.value:
        portion = _money(amount * value / Decimal(100))
    else:
        portion = _money(value)
    return min(portion, remaining)


def split_payment(
    amount: Decimal,
    plan: InsurancePlan,
    has_agent: bool = True,
    has_super_agent: bool = True,
) -> PaymentSplit:
    """
    Split a payment by its plan's portions.

    Order: agent commission, super-agent commission, admin share, insurance
    share. Commission portions with nobody to pay are folded into the admin
    share; whatever is left unallocated goes to insurance, so the four parts
    always sum to the payment amount.
    """
    amount = _money(amount)
    remaining = amount
    split = PaymentSplit()

    agent_part = compute_portion(amount, plan.agent_commission_type, plan.agent_commission_value, remaining)
    remaining -= agent_part
    super_part = compute_portion(
        amount, plan.super_agent_commission_type, plan.super_agent_commission_value, remaining
    )
    remaining -= super_part

    orphaned = ZERO
    if has_agent:
        split.agent_commission = agent_part
    else:
        orphaned += agent_part
    if has_agent and has_super_agent:
        split.super_agent_commission = super_part
    else:
        orphaned += super_part

    admin_part = compute_portion(amount, plan.admin_share_type, plan.admin_share_value, remaining)
    remaining -= admin_part
    insurance_part = compute_portion(amount, plan.insurance_share_type, plan.insurance_share_value, remaining)
    remaining -= insurance_part

    split.admin = admin_part + orphaned
    split.insurance = insurance_part + remaining
    return split


async def _eligible_payments(session: AsyncSession, settlement_date: date) -> list[Payment]:
    start = datetime.combine(settlement_date, time.min)
    end = start + timedelta(days=1)
    result = await session.execute(
        select(Payment)
        .where(
            Payment.status == PaymentStatus.ALLOCATED.value,
            Payment.settlement_batch_id.is_(None),
            Payment.allocated_at >= start,
            Payment.allocated_at < end,
        )
        .order_by(Payment.allocated_at, Payment.id)
    )
    return list(result.scalars().all())


async def generate(session: AsyncSession, settlement_date: date) -> BatchBuildResult:
    """
    Generate the settlement batch for ``settlement_date``.

    Raises:
        ValidationError: The date is in the future.
        DuplicateBatchError: A batch already exists for the date.

    Returns:
        BatchBuildResult. When nothing was eligible the empty batch is still
        created and ``warning`` carries a NoPaymentsError.
    """
    if settlement_date > date.today():
        # Payments for that day are still arriving; a batch now would claim the date.
        raise ValidationError("Cannot generate settlement for future dates", field="date")

    existing = await session.scalar(
        select(SettlementBatch.id).where(SettlementBatch.settlement_date == settlement_date)
    )
    if existing:
        raise DuplicateBatchError(f"Settlement batch already exists for {settlement_date.isoformat()}")

    payments = await _eligible_payments(session, settlement_date)

    plans = {p.id: p for p in (await session.execute(select(InsurancePlan))).scalars().all()}
    agent_ids = {p.agent_id for p in payments if p.agent_id}
    agents = {}
    if agent_ids:
        rows = await session.execute(select(Agent).where(Agent.id.in_(agent_ids)))
        agents = {a.id: a for a in rows.scalars().all()}

    totals = defaultdict(lambda: ZERO)
    agent_payouts: dict[str, _Beneficiary] = defaultdict(_Beneficiary)
    super_payouts: dict[str, _Beneficiary] = defaultdict(_Beneficiary)

    for payment in payments:
        plan = plans.get(payment.plan_id)
        amount = _money(payment.amount)
        totals["payments"] += amount
        if plan is None:
            # No plan to split by: the whole payment is unallocated premium.
            logger.warning("Payment %s references unknown plan %s", payment.id, payment.plan_id)
            totals["insurance"] += amount
            continue

        agent = agents.get(payment.agent_id) if payment.agent_id else None
        split = split_payment(
            amount,
            plan,
            has_agent=agent is not None,
            has_super_agent=bool(agent and agent.super_agent_id),
        )
        totals["agent"] += split.agent_commission
        totals["super_agent"] += split.super_agent_commission
        totals["admin"] += split.admin
        totals["insurance"] += split.insurance

        if agent is not None and split.agent_commission > 0:
            entry = agent_payouts[agent.id]
            entry.amount += split.agent_commission
            entry.sources.add(payment.id)
        if agent is not None and agent.super_agent_id and split.super_agent_commission > 0:
            entry = super_payouts[agent.super_agent_id]
            entry.amount += split.super_agent_commission
            entry.sources.add(agent.id)

    batch = SettlementBatch(
        settlement_date=settlement_date,
        status=BatchStatus.OPEN.value,
        total_payments=totals["payments"],
        total_insurance=totals["insurance"],
        total_admin=totals["admin"],
        total_agent_commissions=totals["agent"],
        total_super_agent_commissions=totals["super_agent"],
        payment_count=len(payments),
    )
    write_payout_status(batch, {
        PayoutCategory.INSURANCE.value: _initial_category_status(totals["insurance"]),
        PayoutCategory.ADMINISTRATIVE.value: _initial_category_status(totals["admin"]),
        PayoutCategory.COMMISSIONS.value: _initial_category_status(totals["agent"] + totals["super_agent"]),
    })
    session.add(batch)
    try:
        await session.flush()
    except IntegrityError:
        # Lost a race with a concurrent generate for the same date.
        await session.rollback()
        raise DuplicateBatchError(f"Settlement batch already exists for {settlement_date.isoformat()}")

    rows = [
        ledger.PayoutRow(aid, BeneficiaryType.AGENT.value, b.amount, len(b.sources))
        for aid, b in sorted(agent_payouts.items())
    ] + [
        ledger.PayoutRow(sid, BeneficiaryType.SUPER_AGENT.value, b.amount, len(b.sources))
        for sid, b in sorted(super_payouts.items())
    ]
    await ledger.create_rows(session, batch.id, rows)

    for payment in payments:
        payment.settlement_batch_id = batch.id

    warning = None
    if not payments:
        warning = NoPaymentsError(f"No allocated payments found for {settlement_date.isoformat()}")

    await log_event(session, AuditAction.BATCH_GENERATED, batch_id=batch.id, details={
        "settlement_date": settlement_date.isoformat(),
        "payment_count": len(payments),
        "payout_rows": len(rows),
        "total_payments": totals["payments"],
        "total_commissions": totals["agent"] + totals["super_agent"],
        "warning": str(warning) if warning else None,
    })

    logger.info(
        "Batch %s for %s: payments=%d total=%s payouts=%d",
        batch.id[:8],
        settlement_date.isoformat(),
        len(payments),
        totals["payments"],
        len(rows),
    )

    await session.commit()
    return BatchBuildResult(batch=batch, payout_count=len(rows), warning=warning)


def _initial_category_status(total: Decimal) -> str:
    return CategoryStatus.PENDING.value if total > 0 else CategoryStatus.COMPLETED.value


async def get_commission_breakdown(session: AsyncSession, batch_id: str) -> dict[str, list[dict]]:
    """Per-beneficiary commission breakdown for a batch, built from its payout rows."""
    await load_batch(session, batch_id)

    agent_rows = await session.execute(
        select(PayoutTransaction, Agent.full_name, Agent.phone)
        .outerjoin(Agent, Agent.id == PayoutTransaction.beneficiary_id)
        .where(
            PayoutTransaction.batch_id == batch_id,
            PayoutTransaction.beneficiary_type == BeneficiaryType.AGENT.value,
        )
        .order_by(PayoutTransaction.amount.desc())
    )
    super_rows = await session.execute(
        select(PayoutTransaction, SuperAgent.full_name, SuperAgent.phone)
        .outerjoin(SuperAgent, SuperAgent.id == PayoutTransaction.beneficiary_id)
        .where(
            PayoutTransaction.batch_id == batch_id,
            PayoutTransaction.beneficiary_type == BeneficiaryType.SUPER_AGENT.value,
        )
        .order_by(PayoutTransaction.amount.desc())
    )

    return {
        "agents": [
            {
                "id": p.beneficiary_id,
                "full_name": name,
                "phone": phone,
                "payments": p.source_count,
                "commission": p.amount,
            }
            for p, name, phone in agent_rows.all()
        ],
        "super_agents": [
            {
                "id": p.beneficiary_id,
                "full_name": name,
                "phone": phone,
                "agents": p.source_count,
                "commission": p.amount,
            }
            for p, name, phone in super_rows.all()
        ],
    }
