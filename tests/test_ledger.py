"""Tests for the payout ledger: transitions, attempt cap and dispatch leases."""

import pytest
from sqlalchemy import select

from settlement_engine.audit.logger import from_json, to_json
from settlement_engine.engine import ledger
from settlement_engine.engine.errors import (
    AlreadyCompletedError,
    InvalidStateError,
    MaxAttemptsExceeded,
    NotFoundError,
)
from settlement_engine.models.settlement import AuditLog


async def _row(session, batch, beneficiary_id):
    rows = await ledger.get(session, batch.id)
    return next(p for p in rows if p.beneficiary_id == beneficiary_id)


@pytest.mark.asyncio
async def test_rows_created_pending(db_session, scenario_batch):
    rows = await ledger.get(db_session, scenario_batch.id)
    assert sorted((p.beneficiary_id, str(p.amount)) for p in rows) == [
        ("A", "100.00"), ("B", "200.00"), ("C", "150.00"),
    ]
    assert {p.status for p in rows} == {"pending"}
    assert {p.provider for p in rows} == {"mpesa"}


@pytest.mark.asyncio
async def test_status_filter(db_session, scenario_batch):
    a = await _row(db_session, scenario_batch, "A")
    await ledger.update_status(db_session, a.id, "failed", {"error": {"error": "timeout"}})
    failed = await ledger.get(db_session, scenario_batch.id, status="failed")
    assert [p.id for p in failed] == [a.id]


@pytest.mark.asyncio
async def test_get_payout_checks_batch(db_session, scenario_batch):
    a = await _row(db_session, scenario_batch, "A")
    with pytest.raises(NotFoundError):
        await ledger.get_payout(db_session, a.id, batch_id="other-batch")
    with pytest.raises(NotFoundError):
        await ledger.get_payout(db_session, "missing")


class TestTransitions:
    @pytest.mark.asyncio
    async def test_pending_to_completed(self, db_session, scenario_batch):
        a = await _row(db_session, scenario_batch, "A")
        payout = await ledger.update_status(db_session, a.id, "completed", {"provider_txn_id": "SBX123"})
        assert payout.status == "completed"
        assert payout.provider_txn_id == "SBX123"

    @pytest.mark.asyncio
    async def test_failure_records_error_details(self, db_session, scenario_batch):
        a = await _row(db_session, scenario_batch, "A")
        payout = await ledger.update_status(db_session, a.id, "failed", {
            "error": {"error": "rejected", "attempt": 1, "result_code": "2001"},
        })
        assert payout.status == "failed"
        assert '"result_code": "2001"' in payout.error_details

    @pytest.mark.asyncio
    async def test_completed_is_terminal(self, db_session, scenario_batch):
        a = await _row(db_session, scenario_batch, "A")
        await ledger.update_status(db_session, a.id, "completed")
        for target in ("pending", "failed", "completed"):
            with pytest.raises(AlreadyCompletedError):
                await ledger.update_status(db_session, a.id, target)

    @pytest.mark.asyncio
    async def test_failed_needs_manual_evidence_to_complete(self, db_session, scenario_batch):
        a = await _row(db_session, scenario_batch, "A")
        await ledger.update_status(db_session, a.id, "failed")
        with pytest.raises(InvalidStateError):
            await ledger.update_status(db_session, a.id, "completed", {"provider_txn_id": "LATE"})

        payout = await ledger.update_status(db_session, a.id, "completed", {
            "provider": "manual",
            "manual_transaction_ref": "QK12ABC",
        })
        assert payout.status == "completed"
        assert payout.provider == "manual"

    @pytest.mark.asyncio
    async def test_failed_back_to_pending(self, db_session, scenario_batch):
        a = await _row(db_session, scenario_batch, "A")
        await ledger.update_status(db_session, a.id, "failed")
        payout = await ledger.update_status(db_session, a.id, "pending")
        assert payout.status == "pending"

    @pytest.mark.asyncio
    async def test_pending_to_pending_not_allowed(self, db_session, scenario_batch):
        a = await _row(db_session, scenario_batch, "A")
        with pytest.raises(InvalidStateError):
            await ledger.update_status(db_session, a.id, "pending")

    @pytest.mark.asyncio
    async def test_transitions_are_audited(self, db_session, scenario_batch):
        a = await _row(db_session, scenario_batch, "A")
        await ledger.update_status(db_session, a.id, "failed")
        actions = (await db_session.execute(
            select(AuditLog.action).where(AuditLog.payout_id == a.id)
        )).scalars().all()
        assert actions == ["payout_status_changed"]


class TestAttempts:
    @pytest.mark.asyncio
    async def test_increment_until_cap(self, db_session, scenario_batch):
        a = await _row(db_session, scenario_batch, "A")
        for expected in range(1, 6):
            payout = await ledger.increment_attempt(db_session, a.id, max_attempts=5)
            assert payout.attempts == expected
            assert payout.last_attempt_at is not None

        with pytest.raises(MaxAttemptsExceeded):
            await ledger.increment_attempt(db_session, a.id, max_attempts=5)
        assert (await ledger.get_payout(db_session, a.id)).attempts == 5

    @pytest.mark.asyncio
    async def test_completed_rows_take_no_attempts(self, db_session, scenario_batch):
        a = await _row(db_session, scenario_batch, "A")
        await ledger.update_status(db_session, a.id, "completed")
        with pytest.raises(AlreadyCompletedError):
            await ledger.increment_attempt(db_session, a.id)


class TestLease:
    @pytest.mark.asyncio
    async def test_second_lease_refused(self, db_session, scenario_batch):
        a = await _row(db_session, scenario_batch, "A")
        token = await ledger.acquire_lease(db_session, a.id, ttl_seconds=60)
        assert token is not None
        assert await ledger.acquire_lease(db_session, a.id, ttl_seconds=60) is None

    @pytest.mark.asyncio
    async def test_released_lease_can_be_taken(self, db_session, scenario_batch):
        a = await _row(db_session, scenario_batch, "A")
        token = await ledger.acquire_lease(db_session, a.id, ttl_seconds=60)
        await ledger.release_lease(db_session, a.id, token)
        assert await ledger.acquire_lease(db_session, a.id, ttl_seconds=60) is not None

    @pytest.mark.asyncio
    async def test_release_with_wrong_token_is_ignored(self, db_session, scenario_batch):
        a = await _row(db_session, scenario_batch, "A")
        await ledger.acquire_lease(db_session, a.id, ttl_seconds=60)
        await ledger.release_lease(db_session, a.id, "not-the-token")
        assert await ledger.acquire_lease(db_session, a.id, ttl_seconds=60) is None

    @pytest.mark.asyncio
    async def test_expired_lease_can_be_taken(self, db_session, scenario_batch):
        a = await _row(db_session, scenario_batch, "A")
        first = await ledger.acquire_lease(db_session, a.id, ttl_seconds=-1)
        second = await ledger.acquire_lease(db_session, a.id, ttl_seconds=60)
        assert first is not None and second is not None
        assert first != second

    @pytest.mark.asyncio
    async def test_only_pending_rows_are_leased(self, db_session, scenario_batch):
        a = await _row(db_session, scenario_batch, "A")
        await ledger.update_status(db_session, a.id, "failed")
        assert await ledger.acquire_lease(db_session, a.id, ttl_seconds=60) is None

    @pytest.mark.asyncio
    async def test_lease_visible_to_other_sessions(self, db_session, session_factory, scenario_batch):
        a = await _row(db_session, scenario_batch, "A")
        await ledger.acquire_lease(db_session, a.id, ttl_seconds=60)
        await db_session.commit()

        async with session_factory() as other:
            assert await ledger.acquire_lease(other, a.id, ttl_seconds=60) is None


class TestErrorDetails:
    @pytest.mark.asyncio
    async def test_late_callbacks_kept_when_failure_recorded(self, db_session, scenario_batch):
        a = await _row(db_session, scenario_batch, "A")
        a.error_details = to_json({"late_callbacks": [{"success": True, "transaction_id": "SLATE7"}]})
        await db_session.commit()

        payout = await ledger.update_status(db_session, a.id, "failed", {
            "error": {"error": "timeout", "attempt": 1},
        })
        details = from_json(payout.error_details)
        assert details["error"] == "timeout"
        assert details["late_callbacks"] == [{"success": True, "transaction_id": "SLATE7"}]
