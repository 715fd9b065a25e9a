"""Tests for the settlement status aggregator."""

from datetime import date, timedelta

import pytest

from settlement_engine.engine import aggregator, batch_builder, ledger, reconciliation
from settlement_engine.engine.aggregator import completion_percentage
from settlement_engine.engine.errors import NotFoundError
from settlement_engine.engine.reconciliation import ManualEntry


@pytest.mark.parametrize("completed,total,expected", [
    (0, 0, 0),
    (0, 3, 0),
    (1, 3, 33),
    (2, 3, 67),
    (1, 8, 13),   # 12.5 rounds half up
    (3, 8, 38),   # 37.5 rounds half up
    (199, 200, 99),  # 99.5 would round to 100 with a row outstanding
    (3, 3, 100),
])
def test_completion_percentage(completed, total, expected):
    assert completion_percentage(completed, total) == expected


@pytest.mark.asyncio
async def test_fresh_batch_status(db_session, scenario_batch):
    summary = await aggregator.get_status(db_session, scenario_batch.id)
    assert summary.total == 3
    assert summary.pending == 3
    assert summary.completed == 0
    assert summary.failed == 0
    assert summary.in_progress == 0
    assert summary.completion_percentage == 0
    assert summary.batch_status == "open"
    assert summary.payout_status["commissions"] == "pending"


@pytest.mark.asyncio
async def test_example_scenario(db_session, scenario_batch, make_dispatcher):
    """
    Rows of 100, 200 and 150 with two provider failures report 33%; one
    successful retry plus one manual entry brings the batch to 100%.
    """
    dispatcher = make_dispatcher({"A": ["fail", "ok"], "B": ["reject"]})
    await dispatcher.dispatch_commissions(db_session, scenario_batch.id)

    summary = await aggregator.get_status(db_session, scenario_batch.id)
    assert (summary.total, summary.completed, summary.failed) == (3, 1, 2)
    assert summary.completion_percentage == 33

    failed = {p.beneficiary_id: p for p in await ledger.get(db_session, scenario_batch.id, status="failed")}
    assert set(failed) == {"A", "B"}

    await dispatcher.retry(db_session, scenario_batch.id, failed["A"].id)
    summary = await aggregator.get_status(db_session, scenario_batch.id)
    assert summary.completion_percentage == 67

    await reconciliation.record_manual(db_session, scenario_batch.id, failed["B"].id, ManualEntry(
        transaction_ref="QK12ABC345",
        transaction_date="2025-01-16",
        phone="0700000002",
    ))
    summary = await aggregator.get_status(db_session, scenario_batch.id)
    assert (summary.total, summary.completed, summary.failed, summary.pending) == (3, 3, 0, 0)
    assert summary.completion_percentage == 100
    assert summary.payout_status["commissions"] == "completed"


@pytest.mark.asyncio
async def test_hundred_percent_only_when_all_completed(db_session, scenario_batch, make_dispatcher):
    await make_dispatcher({"C": ["drop"]}, timeout_seconds=0.05).dispatch_commissions(db_session, scenario_batch.id)
    summary = await aggregator.get_status(db_session, scenario_batch.id)
    assert summary.completed == 2
    assert summary.completion_percentage == 67


@pytest.mark.asyncio
async def test_status_is_read_only(db_session, scenario_batch):
    before = (await ledger.get(db_session, scenario_batch.id))[0].updated_at
    for _ in range(3):
        await aggregator.get_status(db_session, scenario_batch.id)
    assert not db_session.dirty and not db_session.new
    assert (await ledger.get(db_session, scenario_batch.id))[0].updated_at == before


@pytest.mark.asyncio
async def test_leased_rows_count_as_in_progress(db_session, scenario_batch):
    rows = await ledger.get(db_session, scenario_batch.id)
    await ledger.acquire_lease(db_session, rows[0].id, ttl_seconds=60)
    summary = await aggregator.get_status(db_session, scenario_batch.id)
    assert summary.in_progress == 1
    assert summary.pending == 3


@pytest.mark.asyncio
async def test_unknown_batch(db_session):
    with pytest.raises(NotFoundError):
        await aggregator.get_status(db_session, "missing")


@pytest.mark.asyncio
async def test_details_join_beneficiaries(seeded_session):
    batch = (await batch_builder.generate(seeded_session, date(2025, 1, 15))).batch
    views = await aggregator.get_details(seeded_session, batch.id)

    by_id = {v.payout.beneficiary_id: v for v in views}
    assert by_id["AG-1"].beneficiary_name == "John Kamau"
    assert by_id["AG-1"].beneficiary_phone == "0722000001"
    assert by_id["SA-1"].beneficiary_name == "Grace Wanjiku"
    assert by_id["SA-1"].payout.beneficiary_type == "super_agent"


@pytest.mark.asyncio
async def test_details_status_filter(db_session, scenario_batch, make_dispatcher):
    await make_dispatcher({"B": ["fail"]}).dispatch_commissions(db_session, scenario_batch.id)
    views = await aggregator.get_details(db_session, scenario_batch.id, status="failed")
    assert [v.payout.beneficiary_id for v in views] == ["B"]


@pytest.mark.asyncio
async def test_list_batches(seeded_session, make_dispatcher):
    day = date(2025, 1, 15)
    first = (await batch_builder.generate(seeded_session, day)).batch
    await batch_builder.generate(seeded_session, day - timedelta(days=1))
    await batch_builder.generate(seeded_session, day + timedelta(days=1))
    await make_dispatcher().dispatch_commissions(seeded_session, first.id)

    rows, total = await aggregator.list_batches(seeded_session)
    assert total == 3
    assert [b.settlement_date for b, _ in rows] == [day + timedelta(days=1), day, day - timedelta(days=1)]
    assert dict((b.id, pct) for b, pct in rows)[first.id] == 100

    rows, total = await aggregator.list_batches(seeded_session, page=2, limit=2)
    assert total == 3
    assert len(rows) == 1

    rows, total = await aggregator.list_batches(seeded_session, status="processed")
    assert total == 1
    assert rows[0][0].id == first.id
