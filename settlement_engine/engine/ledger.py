"""
Payout ledger: the single source of truth for payout transactions.

Every status read by the aggregator and every mutation by the dispatcher or
the manual reconciliation handler goes through this module. It enforces:

  - the attempt cap (MaxAttemptsExceeded once attempts reach the cap)
  - the status transition table below
  - completed rows are terminal (AlreadyCompletedError)
  - one dispatch per row at a time, via a lease taken with an atomic
    compare-and-set UPDATE
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.audit.logger import from_json, log_event, to_json
from settlement_engine.config import settings
from settlement_engine.engine.errors import (
    AlreadyCompletedError,
    InvalidStateError,
    MaxAttemptsExceeded,
    NotFoundError,
)
from settlement_engine.models.enums import AuditAction, BeneficiaryType, PayoutProvider, PayoutStatus
from settlement_engine.models.settlement import Agent, PayoutTransaction, SuperAgent

logger = logging.getLogger("settlement_engine.ledger")

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PayoutStatus.PENDING.value: {PayoutStatus.COMPLETED.value, PayoutStatus.FAILED.value},
    PayoutStatus.FAILED.value: {PayoutStatus.PENDING.value, PayoutStatus.COMPLETED.value},
}


@dataclass
class PayoutRow:
    """A payout row to be created for a batch."""

    beneficiary_id: str
    beneficiary_type: str
    amount: Decimal
    source_count: int = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _merge_error(existing: Optional[str], error: Optional[dict[str, Any]]) -> Optional[str]:
    # Late callbacks recorded while a dispatch still held the lease survive its error.
    if error is None:
        return None
    prior = from_json(existing)
    late = prior.get("late_callbacks") if isinstance(prior, dict) else None
    if late:
        error = {**error, "late_callbacks": late}
    return to_json(error)


async def create_rows(
    session: AsyncSession,
    batch_id: str,
    rows: Iterable[PayoutRow],
) -> list[PayoutTransaction]:
    """Create pending payout rows for a batch."""
    created = []
    for row in rows:
        payout = PayoutTransaction(
            batch_id=batch_id,
            beneficiary_id=row.beneficiary_id,
            beneficiary_type=row.beneficiary_type,
            amount=row.amount,
            source_count=row.source_count,
            status=PayoutStatus.PENDING.value,
            provider=PayoutProvider.MPESA.value,
            attempts=0,
        )
        session.add(payout)
        created.append(payout)
    await session.flush()
    return created


async def get(
    session: AsyncSession,
    batch_id: str,
    status: Optional[str] = None,
) -> list[PayoutTransaction]:
    """List a batch's payout rows, optionally filtered by status."""
    stmt = select(PayoutTransaction).where(PayoutTransaction.batch_id == batch_id)
    if status:
        stmt = stmt.where(PayoutTransaction.status == status)
    stmt = stmt.order_by(PayoutTransaction.beneficiary_type, PayoutTransaction.beneficiary_id)
    result = await session.execute(stmt.execution_options(populate_existing=True))
    return list(result.scalars().all())


async def get_payout(
    session: AsyncSession,
    payout_id: str,
    batch_id: Optional[str] = None,
) -> PayoutTransaction:
    """Load one payout row, optionally checking it belongs to ``batch_id``."""
    result = await session.execute(
        select(PayoutTransaction)
        .where(PayoutTransaction.id == payout_id)
        .execution_options(populate_existing=True)
    )
    payout = result.scalar_one_or_none()
    if payout is None or (batch_id is not None and payout.batch_id != batch_id):
        raise NotFoundError(f"Payout not found: {payout_id}")
    return payout


async def find_by_conversation(
    session: AsyncSession,
    originator_conversation_id: str,
) -> Optional[PayoutTransaction]:
    result = await session.execute(
        select(PayoutTransaction)
        .where(PayoutTransaction.conversation_id == originator_conversation_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_beneficiary(
    session: AsyncSession,
    beneficiary_type: str,
    beneficiary_id: str,
) -> tuple[Optional[str], Optional[str]]:
    """Return (full_name, phone) for an agent or super-agent beneficiary."""
    model = SuperAgent if beneficiary_type == BeneficiaryType.SUPER_AGENT.value else Agent
    row = (await session.execute(
        select(model.full_name, model.phone).where(model.id == beneficiary_id)
    )).first()
    if row is None:
        return None, None
    return row.full_name, row.phone


async def update_status(
    session: AsyncSession,
    payout_id: str,
    status: str,
    details: Optional[dict[str, Any]] = None,
) -> PayoutTransaction:
    """
    Transition a payout to ``status``.

    ``details`` may carry ``error`` (stored as error_details), ``provider``,
    ``provider_txn_id``, ``manual_transaction_ref`` and
    ``manual_transaction_details``. A failed row may only be completed with
    manual evidence (``manual_transaction_ref``).

    Raises:
        AlreadyCompletedError: The row is already completed.
        InvalidStateError: The transition is not in the transition table.
    """
    details = details or {}
    payout = await get_payout(session, payout_id)
    current = payout.status

    if current == PayoutStatus.COMPLETED.value:
        raise AlreadyCompletedError(f"Payout {payout_id} is already completed")
    if status not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidStateError(f"Payout {payout_id} cannot move from {current} to {status}")
    if (
        current == PayoutStatus.FAILED.value
        and status == PayoutStatus.COMPLETED.value
        and not details.get("manual_transaction_ref")
    ):
        raise InvalidStateError(
            f"Payout {payout_id} failed; it can only be completed through manual reconciliation"
        )

    payout.status = status
    if "error" in details:
        payout.error_details = _merge_error(payout.error_details, details["error"])
    if details.get("provider"):
        payout.provider = details["provider"]
    if details.get("provider_txn_id"):
        payout.provider_txn_id = details["provider_txn_id"]
    if details.get("manual_transaction_ref"):
        payout.manual_transaction_ref = details["manual_transaction_ref"]
    if details.get("manual_transaction_details") is not None:
        payout.manual_transaction_details = to_json(details["manual_transaction_details"])

    await log_event(session, AuditAction.PAYOUT_STATUS_CHANGED, batch_id=payout.batch_id, payout_id=payout.id, details={
        "from": current,
        "to": status,
        "attempts": payout.attempts,
        **{k: v for k, v in details.items() if k != "manual_transaction_details"},
    })
    await session.flush()
    return payout


async def increment_attempt(
    session: AsyncSession,
    payout_id: str,
    max_attempts: Optional[int] = None,
) -> PayoutTransaction:
    """
    Count one more automated attempt against the row.

    Raises:
        AlreadyCompletedError: The row is already completed.
        MaxAttemptsExceeded: The row has already used every attempt.
    """
    cap = max_attempts if max_attempts is not None else settings.max_payout_attempts
    payout = await get_payout(session, payout_id)
    if payout.status == PayoutStatus.COMPLETED.value:
        raise AlreadyCompletedError(f"Payout {payout_id} is already completed")
    if payout.attempts >= cap:
        raise MaxAttemptsExceeded(
            f"Payout {payout_id} has reached the maximum of {cap} attempts; record it manually"
        )

    payout.attempts += 1
    payout.last_attempt_at = _utcnow()
    await session.flush()
    return payout


async def acquire_lease(
    session: AsyncSession,
    payout_id: str,
    ttl_seconds: float,
) -> Optional[str]:
    """
    Take the dispatch lease on a pending row.

    Returns the lease token, or None when another dispatch holds an
    unexpired lease or the row is not pending.
    """
    token = uuid.uuid4().hex
    now = _utcnow()
    result = await session.execute(
        update(PayoutTransaction)
        .where(
            PayoutTransaction.id == payout_id,
            PayoutTransaction.status == PayoutStatus.PENDING.value,
            or_(
                PayoutTransaction.lease_token.is_(None),
                PayoutTransaction.lease_expires_at < now,
            ),
        )
        .values(lease_token=token, lease_expires_at=now + timedelta(seconds=ttl_seconds))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info("Lease not acquired for payout %s", payout_id)
        return None
    return token


async def release_lease(session: AsyncSession, payout_id: str, token: str) -> None:
    """Drop the lease if ``token`` still owns it."""
    await session.execute(
        update(PayoutTransaction)
        .where(PayoutTransaction.id == payout_id, PayoutTransaction.lease_token == token)
        .values(lease_token=None, lease_expires_at=None)
        .execution_options(synchronize_session=False)
    )
