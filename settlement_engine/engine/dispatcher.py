"""
Payout dispatcher: sends commission payouts to the payment provider.

For each payout row:

  1. Take the row's dispatch lease (rows already being dispatched are skipped)
  2. Count the attempt against the 5-attempt cap; a pending row with no
     attempts left is failed instead, leaving it to manual reconciliation
  3. Submit to the provider with a bounded timeout
  4. Wait for the provider's result callback, up to the same timeout
  5. Record the outcome on the row (completed, or failed with error_details)

Waiting for callbacks happens concurrently across rows; all database writes
go through the one session sequentially. Provider failures are recorded on
the row and never raised: callers observe them through the status
aggregator. Retries are never scheduled automatically; every retry is an
explicit operator call.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.audit.logger import log_event, to_json, from_json
from settlement_engine.config import settings
from settlement_engine.engine import ledger
from settlement_engine.engine.batch_state import load_batch, refresh_batch_status
from settlement_engine.engine.errors import (
    AlreadyCompletedError,
    InvalidStateError,
    MaxAttemptsExceeded,
    NotFoundError,
    ProviderError,
    ProviderRejectedError,
    ProviderTimeoutError,
)
from settlement_engine.models.enums import AuditAction, PayoutStatus
from settlement_engine.models.settlement import PayoutTransaction
from settlement_engine.providers.base import PayoutProvider, PayoutRequest, ProviderCallback

logger = logging.getLogger("settlement_engine.dispatcher")


@dataclass
class DispatchSummary:
    """What happened to each requested payout id."""

    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def dispatched(self) -> int:
        return len(self.completed) + len(self.failed)


@dataclass
class _Outcome:
    success: bool
    provider_txn_id: Optional[str] = None
    error: Optional[dict[str, Any]] = None


@dataclass
class _InFlight:
    payout_id: str
    batch_id: str
    attempt: int
    lease_token: str
    originator_conversation_id: str
    future: Optional[asyncio.Future] = None
    outcome: Optional[_Outcome] = None


def _error(kind: str, attempt: int, message: str = "", **extra: Any) -> dict[str, Any]:
    error = {"error": kind, "attempt": attempt}
    if message:
        error["message"] = message
    error.update({k: v for k, v in extra.items() if v is not None})
    return error


class PayoutDispatcher:
    """
    Dispatches payout rows to a provider and collects their callbacks.

    One instance serves the whole application: it owns the table of
    dispatches waiting for a callback, keyed by originator conversation id.
    """

    def __init__(
        self,
        provider: PayoutProvider,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        timeout_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ):
        self.provider = provider
        self._session_factory = session_factory
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.provider_timeout_seconds
        self.max_attempts = max_attempts if max_attempts is not None else settings.max_payout_attempts
        self._waiters: dict[str, asyncio.Future] = {}

    @property
    def lease_ttl(self) -> float:
        # Submission and callback wait are each bounded by the timeout.
        return self.timeout_seconds * 2 + settings.lease_grace_seconds

    # ─── Dispatch ─────────────────────────────────────────────────────

    async def pending_commission_ids(self, session: AsyncSession, batch_id: str) -> list[str]:
        await load_batch(session, batch_id)
        rows = await ledger.get(session, batch_id, status=PayoutStatus.PENDING.value)
        return [p.id for p in rows]

    async def dispatch_commissions(self, session: AsyncSession, batch_id: str) -> DispatchSummary:
        """Dispatch every pending commission row of a batch."""
        payout_ids = await self.pending_commission_ids(session, batch_id)
        logger.info("Batch %s: dispatching %d pending commission payouts", batch_id[:8], len(payout_ids))
        return await self.dispatch(session, payout_ids)

    async def dispatch(self, session: AsyncSession, payout_ids: list[str]) -> DispatchSummary:
        """
        Dispatch the given payout rows and wait for their outcomes.

        Returns:
            DispatchSummary of completed, failed and skipped payout ids.
        """
        summary = DispatchSummary()
        in_flight: list[_InFlight] = []
        batch_ids: set[str] = set()

        for payout_id in payout_ids:
            flight = await self._submit(session, payout_id, summary)
            if flight is not None:
                in_flight.append(flight)
                batch_ids.add(flight.batch_id)

        # Make attempts and leases visible to pollers while we wait.
        for batch_id in batch_ids:
            await refresh_batch_status(session, batch_id)
        await session.commit()

        outcomes = await asyncio.gather(*(self._await_outcome(f) for f in in_flight))

        for flight, outcome in zip(in_flight, outcomes):
            await self._apply(session, flight, outcome, summary)

        for batch_id in batch_ids:
            await refresh_batch_status(session, batch_id)
        await session.commit()

        logger.info(
            "Dispatch summary: completed=%d, failed=%d, skipped=%d",
            len(summary.completed),
            len(summary.failed),
            len(summary.skipped),
        )
        return summary

    async def run_in_background(self, payout_ids: list[str]) -> None:
        """Dispatch with a session of our own; used after the HTTP response is sent."""
        if self._session_factory is None:
            raise RuntimeError("PayoutDispatcher needs a session_factory to run in the background")
        async with self._session_factory() as session:
            try:
                await self.dispatch(session, payout_ids)
            except Exception:
                logger.exception("Background dispatch failed for payouts %s", payout_ids)
                await session.rollback()

    async def _submit(
        self,
        session: AsyncSession,
        payout_id: str,
        summary: DispatchSummary,
    ) -> Optional[_InFlight]:
        payout = await ledger.get_payout(session, payout_id)

        token = await ledger.acquire_lease(session, payout_id, self.lease_ttl)
        if token is None:
            summary.skipped.append(payout_id)
            await log_event(
                session, AuditAction.DISPATCH_SKIPPED, batch_id=payout.batch_id, payout_id=payout_id,
                details={"reason": "leased_or_not_pending", "status": payout.status},
            )
            return None

        try:
            payout = await ledger.increment_attempt(session, payout_id, self.max_attempts)
        except AlreadyCompletedError as e:
            await ledger.release_lease(session, payout_id, token)
            summary.skipped.append(payout_id)
            await log_event(
                session, AuditAction.DISPATCH_SKIPPED, batch_id=payout.batch_id, payout_id=payout_id,
                details={"reason": type(e).__name__, "message": str(e)},
            )
            return None
        except MaxAttemptsExceeded as e:
            # Attempts used up by interrupted dispatches: fail the row so it reaches manual reconciliation.
            logger.warning("Payout %s is pending with no attempts left; marking it failed", payout_id)
            return _InFlight(
                payout_id=payout.id,
                batch_id=payout.batch_id,
                attempt=payout.attempts,
                lease_token=token,
                originator_conversation_id=payout.conversation_id or "",
                outcome=_Outcome(False, error=_error("max_attempts", payout.attempts, str(e))),
            )

        attempt = payout.attempts
        originator = f"STL-{payout.id}-{attempt}"
        payout.conversation_id = originator
        flight = _InFlight(
            payout_id=payout.id,
            batch_id=payout.batch_id,
            attempt=attempt,
            lease_token=token,
            originator_conversation_id=originator,
        )

        _, phone = await ledger.get_beneficiary(session, payout.beneficiary_type, payout.beneficiary_id)
        if not phone:
            flight.outcome = _Outcome(False, error=_error(
                "rejected", attempt, "Beneficiary has no phone number on file",
            ))
            return flight

        request = PayoutRequest(
            originator_conversation_id=originator,
            payout_id=payout.id,
            beneficiary_id=payout.beneficiary_id,
            phone=phone,
            amount=payout.amount,
            currency=settings.currency,
            remarks=f"Commission payout {payout.batch_id[:8]}",
            metadata={"batch_id": payout.batch_id, "beneficiary_type": payout.beneficiary_type},
        )

        # Register before submitting: a fast provider may call back first.
        flight.future = asyncio.get_running_loop().create_future()
        self._waiters[originator] = flight.future

        try:
            ack = await asyncio.wait_for(
                self.provider.submit(request, self.handle_callback),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, ProviderTimeoutError) as e:
            self._waiters.pop(originator, None)
            flight.outcome = _Outcome(False, error=_error("timeout", attempt, str(e) or "Provider did not respond"))
            return flight
        except ProviderRejectedError as e:
            self._waiters.pop(originator, None)
            flight.outcome = _Outcome(False, error=_error("rejected", attempt, str(e), result_code=e.result_code))
            return flight
        except ProviderError as e:
            self._waiters.pop(originator, None)
            flight.outcome = _Outcome(False, error=_error("provider_error", attempt, str(e)))
            return flight
        except Exception as e:
            self._waiters.pop(originator, None)
            logger.exception("Unexpected provider error for payout %s", payout.id)
            flight.outcome = _Outcome(False, error=_error("unexpected", attempt, str(e)))
            return flight

        await log_event(session, AuditAction.PAYOUT_DISPATCHED, batch_id=payout.batch_id, payout_id=payout.id, details={
            "attempt": attempt,
            "provider": ack.provider,
            "originator_conversation_id": originator,
            "conversation_id": ack.conversation_id,
            "amount": payout.amount,
        })
        return flight

    async def _await_outcome(self, flight: _InFlight) -> _Outcome:
        if flight.outcome is not None:
            return flight.outcome
        try:
            callback: ProviderCallback = await asyncio.wait_for(flight.future, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            return _Outcome(False, error=_error("timeout", flight.attempt, "No provider callback received"))
        finally:
            self._waiters.pop(flight.originator_conversation_id, None)

        if callback.success:
            return _Outcome(True, provider_txn_id=callback.transaction_id or callback.conversation_id)
        return _Outcome(False, error=_error(
            "rejected",
            flight.attempt,
            callback.description,
            result_code=callback.result_code,
        ))

    async def _apply(
        self,
        session: AsyncSession,
        flight: _InFlight,
        outcome: _Outcome,
        summary: DispatchSummary,
    ) -> None:
        try:
            if outcome.success:
                await ledger.update_status(session, flight.payout_id, PayoutStatus.COMPLETED.value, {
                    "provider_txn_id": outcome.provider_txn_id,
                })
                summary.completed.append(flight.payout_id)
            else:
                await ledger.update_status(session, flight.payout_id, PayoutStatus.FAILED.value, {
                    "error": outcome.error,
                })
                summary.failed.append(flight.payout_id)
                logger.warning(
                    "Payout %s attempt %d failed: %s",
                    flight.payout_id,
                    flight.attempt,
                    outcome.error.get("error") if outcome.error else "unknown",
                )
        except (AlreadyCompletedError, InvalidStateError) as e:
            # Someone else resolved the row while our lease was expiring.
            summary.skipped.append(flight.payout_id)
            await log_event(
                session, AuditAction.DISPATCH_RESULT_DISCARDED, batch_id=flight.batch_id, payout_id=flight.payout_id,
                details={"reason": str(e), "success": outcome.success},
            )
        finally:
            await ledger.release_lease(session, flight.payout_id, flight.lease_token)

    # ─── Retry ────────────────────────────────────────────────────────

    async def prepare_retry(self, session: AsyncSession, batch_id: str, payout_id: str) -> PayoutTransaction:
        """
        Validate a retry and move the row back to pending.

        Raises:
            NotFoundError: Unknown batch or payout.
            AlreadyCompletedError: The payout is already completed.
            MaxAttemptsExceeded: The payout has used all its attempts.
            InvalidStateError: The payout is not in failed status.
        """
        await load_batch(session, batch_id)
        payout = await ledger.get_payout(session, payout_id, batch_id=batch_id)

        if payout.status == PayoutStatus.COMPLETED.value:
            raise AlreadyCompletedError(f"Payout {payout_id} is already completed")
        if payout.attempts >= self.max_attempts:
            raise MaxAttemptsExceeded(
                f"Payout {payout_id} has reached the maximum of {self.max_attempts} attempts; record it manually"
            )
        if payout.status != PayoutStatus.FAILED.value:
            raise InvalidStateError(f"Only failed payouts can be retried (payout {payout_id} is {payout.status})")

        payout = await ledger.update_status(session, payout_id, PayoutStatus.PENDING.value)
        await log_event(session, AuditAction.PAYOUT_RETRY_REQUESTED, batch_id=batch_id, payout_id=payout_id, details={
            "attempts_so_far": payout.attempts,
        })
        await refresh_batch_status(session, batch_id)
        await session.commit()
        return payout

    async def retry(self, session: AsyncSession, batch_id: str, payout_id: str) -> PayoutTransaction:
        """Retry a failed payout and wait for the outcome."""
        await self.prepare_retry(session, batch_id, payout_id)
        await self.dispatch(session, [payout_id])
        return await ledger.get_payout(session, payout_id)

    # ─── Callbacks ────────────────────────────────────────────────────

    def resolve_callback(self, callback: ProviderCallback) -> bool:
        """Hand a callback to the dispatch waiting for it. False if nobody is waiting."""
        future = self._waiters.get(callback.originator_conversation_id)
        if future is None or future.done():
            return False
        future.set_result(callback)
        return True

    async def handle_callback(self, callback: ProviderCallback) -> None:
        """Callback hook given to providers that deliver results in-process."""
        if self.resolve_callback(callback):
            return
        if self._session_factory is None:
            logger.warning("Late callback %s dropped: no session factory", callback.originator_conversation_id)
            return
        async with self._session_factory() as session:
            try:
                await self.record_late_callback(session, callback)
            except (AlreadyCompletedError, NotFoundError) as e:
                logger.warning("Late callback %s rejected: %s", callback.originator_conversation_id, e)

    async def record_late_callback(self, session: AsyncSession, callback: ProviderCallback) -> PayoutTransaction:
        """
        Record a callback that arrived after its dispatch stopped waiting.

        The row's status is left alone: a late success on a failed row is
        evidence for the operator, who resolves it with a manual entry.

        Raises:
            NotFoundError: No payout has this conversation id.
            AlreadyCompletedError: The payout is already completed.
        """
        payout = await ledger.find_by_conversation(session, callback.originator_conversation_id)
        if payout is None:
            raise NotFoundError(f"No payout for conversation {callback.originator_conversation_id}")
        if payout.status == PayoutStatus.COMPLETED.value:
            raise AlreadyCompletedError(f"Payout {payout.id} is already completed; late callback rejected")

        entry = {
            "success": callback.success,
            "result_code": callback.result_code,
            "description": callback.description,
            "transaction_id": callback.transaction_id,
        }
        error_details = from_json(payout.error_details) or {}
        error_details.setdefault("late_callbacks", []).append(entry)
        payout.error_details = to_json(error_details)

        await log_event(
            session, AuditAction.LATE_CALLBACK_RECORDED, batch_id=payout.batch_id, payout_id=payout.id, details=entry,
        )
        logger.warning(
            "Late callback for payout %s (status=%s, success=%s)",
            payout.id,
            payout.status,
            callback.success,
        )
        await session.commit()
        return payout
