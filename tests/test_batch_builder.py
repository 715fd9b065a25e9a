"""Tests for settlement batch generation and payment splitting."""

from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from settlement_engine.audit.logger import from_json
from settlement_engine.engine import batch_builder, ledger
from settlement_engine.engine.batch_builder import compute_portion, split_payment
from settlement_engine.engine.batch_state import read_payout_status
from settlement_engine.engine.errors import DuplicateBatchError, NoPaymentsError, ValidationError
from settlement_engine.models.settlement import (
    AuditLog,
    InsurancePlan,
    Payment,
    PayoutTransaction,
    SettlementBatch,
)

SETTLEMENT_DATE = date(2025, 1, 15)


def _plan(**overrides) -> InsurancePlan:
    values = dict(
        id="P", name="Plan",
        agent_commission_type="fixed", agent_commission_value=Decimal("5.00"),
        super_agent_commission_type="fixed", super_agent_commission_value=Decimal("2.00"),
        insurance_share_type="percent", insurance_share_value=Decimal("80"),
        admin_share_type="fixed", admin_share_value=Decimal("3.00"),
    )
    values.update(overrides)
    return InsurancePlan(**values)


# ─── Splitting ────────────────────────────────────────────────────────


class TestComputePortion:
    def test_percent_of_amount(self):
        assert compute_portion(Decimal("333.33"), "percent", Decimal("10"), Decimal("333.33")) == Decimal("33.33")

    def test_percent_rounds_half_up(self):
        # 3.5% of 333.33 = 11.66655
        assert compute_portion(Decimal("333.33"), "percent", Decimal("3.5"), Decimal("300")) == Decimal("11.67")

    def test_fixed_value(self):
        assert compute_portion(Decimal("50"), "fixed", Decimal("5"), Decimal("50")) == Decimal("5.00")

    def test_capped_at_remaining(self):
        assert compute_portion(Decimal("50"), "fixed", Decimal("80"), Decimal("12.50")) == Decimal("12.50")

    def test_zero_or_missing_value(self):
        assert compute_portion(Decimal("50"), "fixed", None, Decimal("50")) == Decimal("0.00")
        assert compute_portion(Decimal("50"), "percent", Decimal("0"), Decimal("50")) == Decimal("0.00")


class TestSplitPayment:
    def test_basic_split(self):
        split = split_payment(Decimal("50.00"), _plan())
        assert split.agent_commission == Decimal("5.00")
        assert split.super_agent_commission == Decimal("2.00")
        assert split.admin == Decimal("3.00")
        assert split.insurance == Decimal("40.00")

    def test_parts_always_sum_to_amount(self):
        plan = _plan(
            agent_commission_type="percent", agent_commission_value=Decimal("10"),
            super_agent_commission_type="percent", super_agent_commission_value=Decimal("3.5"),
            insurance_share_type="percent", insurance_share_value=Decimal("75"),
            admin_share_type="percent", admin_share_value=Decimal("7.25"),
        )
        for amount in ("333.33", "0.01", "1", "99.99", "1234.57"):
            split = split_payment(Decimal(amount), plan)
            total = split.agent_commission + split.super_agent_commission + split.admin + split.insurance
            assert total == Decimal(amount)

    def test_unallocated_remainder_goes_to_insurance(self):
        split = split_payment(Decimal("100.00"), _plan(insurance_share_value=Decimal("50")))
        assert split.insurance == Decimal("90.00")

    def test_no_super_agent_folds_commission_into_admin(self):
        split = split_payment(Decimal("50.00"), _plan(), has_agent=True, has_super_agent=False)
        assert split.agent_commission == Decimal("5.00")
        assert split.super_agent_commission == Decimal("0.00")
        assert split.admin == Decimal("5.00")

    def test_no_agent_folds_both_commissions_into_admin(self):
        split = split_payment(Decimal("50.00"), _plan(), has_agent=False, has_super_agent=False)
        assert split.agent_commission == Decimal("0.00")
        assert split.super_agent_commission == Decimal("0.00")
        assert split.admin == Decimal("10.00")
        assert split.insurance == Decimal("40.00")

    def test_fixed_portions_larger_than_payment(self):
        split = split_payment(Decimal("4.00"), _plan())
        assert split.agent_commission == Decimal("4.00")
        assert split.super_agent_commission == Decimal("0.00")
        assert split.admin == Decimal("0.00")
        assert split.insurance == Decimal("0.00")


# ─── Generation ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_generate_totals(seeded_session):
    result = await batch_builder.generate(seeded_session, SETTLEMENT_DATE)
    batch = result.batch

    assert result.warning is None
    assert result.payout_count == 4
    assert batch.status == "open"
    assert batch.payment_count == 5
    assert batch.total_payments == Decimal("816.66")
    assert batch.total_agent_commissions == Decimal("76.66")
    assert batch.total_super_agent_commissions == Decimal("15.67")
    assert batch.total_admin == Decimal("76.01")
    assert batch.total_insurance == Decimal("648.32")
    assert (
        batch.total_agent_commissions + batch.total_super_agent_commissions
        + batch.total_admin + batch.total_insurance
    ) == batch.total_payments


@pytest.mark.asyncio
async def test_commission_rows_sum_to_totals(seeded_session):
    """The ledger rows add up to the batch's commission totals exactly."""
    batch = (await batch_builder.generate(seeded_session, SETTLEMENT_DATE)).batch
    rows = await ledger.get(seeded_session, batch.id)

    assert sum(p.amount for p in rows) == batch.total_agent_commissions + batch.total_super_agent_commissions
    assert all(p.status == "pending" and p.attempts == 0 for p in rows)

    by_beneficiary = {(p.beneficiary_type, p.beneficiary_id): p for p in rows}
    assert by_beneficiary[("agent", "AG-1")].amount == Decimal("10.00")
    assert by_beneficiary[("agent", "AG-1")].source_count == 2
    assert by_beneficiary[("agent", "AG-2")].amount == Decimal("33.33")
    assert by_beneficiary[("agent", "AG-3")].amount == Decimal("33.33")
    assert by_beneficiary[("super_agent", "SA-1")].amount == Decimal("15.67")
    assert by_beneficiary[("super_agent", "SA-1")].source_count == 2  # AG-1 and AG-2
    assert ("agent", "AG-4") not in by_beneficiary


@pytest.mark.asyncio
async def test_generate_claims_only_eligible_payments(seeded_session):
    batch = (await batch_builder.generate(seeded_session, SETTLEMENT_DATE)).batch

    claimed = (await seeded_session.execute(
        select(Payment.id).where(Payment.settlement_batch_id == batch.id)
    )).scalars().all()
    assert sorted(claimed) == ["P-01", "P-02", "P-03", "P-04", "P-05"]


@pytest.mark.asyncio
async def test_initial_payout_status(seeded_session):
    batch = (await batch_builder.generate(seeded_session, SETTLEMENT_DATE)).batch
    assert read_payout_status(batch) == {
        "insurance": "pending",
        "administrative": "pending",
        "commissions": "pending",
    }


@pytest.mark.asyncio
async def test_duplicate_date_rejected(seeded_session):
    """Generating the same date twice fails and leaves the first batch untouched."""
    first = (await batch_builder.generate(seeded_session, SETTLEMENT_DATE)).batch
    rows_before = await seeded_session.scalar(select(func.count()).select_from(PayoutTransaction))

    with pytest.raises(DuplicateBatchError):
        await batch_builder.generate(seeded_session, SETTLEMENT_DATE)

    rows_after = await seeded_session.scalar(select(func.count()).select_from(PayoutTransaction))
    assert rows_after == rows_before
    assert (await ledger.get(seeded_session, first.id))


@pytest.mark.asyncio
async def test_future_date_rejected(seeded_session):
    with pytest.raises(ValidationError) as exc_info:
        await batch_builder.generate(seeded_session, date.today() + timedelta(days=1))
    assert exc_info.value.field == "date"

    assert await seeded_session.scalar(select(func.count()).select_from(SettlementBatch)) == 0
    assert await seeded_session.scalar(select(func.count()).select_from(PayoutTransaction)) == 0


@pytest.mark.asyncio
async def test_today_is_allowed(seeded_session):
    result = await batch_builder.generate(seeded_session, date.today())
    assert result.batch.settlement_date == date.today()


@pytest.mark.asyncio
async def test_no_payments_is_a_warning(seeded_session):
    empty_day = SETTLEMENT_DATE - timedelta(days=30)
    result = await batch_builder.generate(seeded_session, empty_day)

    assert isinstance(result.warning, NoPaymentsError)
    assert result.batch.payment_count == 0
    assert result.batch.total_payments == Decimal("0")
    assert result.payout_count == 0
    assert result.batch.status == "open"


@pytest.mark.asyncio
async def test_unknown_plan_settles_to_insurance(seeded_session):
    seeded_session.add(Payment(
        id="P-ORPHAN",
        plan_id="PLAN-RETIRED",
        agent_id="AG-1",
        amount=Decimal("75.00"),
        status="allocated",
        allocated_at=(await seeded_session.get(Payment, "P-01")).allocated_at,
    ))
    await seeded_session.commit()

    batch = (await batch_builder.generate(seeded_session, SETTLEMENT_DATE)).batch
    assert batch.payment_count == 6
    assert batch.total_insurance == Decimal("723.32")
    assert batch.total_agent_commissions == Decimal("76.66")


@pytest.mark.asyncio
async def test_generation_is_audited(seeded_session):
    batch = (await batch_builder.generate(seeded_session, SETTLEMENT_DATE)).batch
    log = (await seeded_session.execute(
        select(AuditLog).where(AuditLog.batch_id == batch.id, AuditLog.action == "batch_generated")
    )).scalar_one()
    details = from_json(log.details)
    assert details["payment_count"] == 5
    assert details["payout_rows"] == 4


@pytest.mark.asyncio
async def test_commission_breakdown(seeded_session):
    batch = (await batch_builder.generate(seeded_session, SETTLEMENT_DATE)).batch
    breakdown = await batch_builder.get_commission_breakdown(seeded_session, batch.id)

    agents = {a["id"]: a for a in breakdown["agents"]}
    assert set(agents) == {"AG-1", "AG-2", "AG-3"}
    assert agents["AG-1"]["full_name"] == "John Kamau"
    assert agents["AG-1"]["payments"] == 2
    assert agents["AG-1"]["commission"] == Decimal("10.00")

    [sa] = breakdown["super_agents"]
    assert sa["id"] == "SA-1"
    assert sa["agents"] == 2
    assert sa["commission"] == Decimal("15.67")
