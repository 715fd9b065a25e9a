"""
Settlement endpoints consumed by the operations console.

POST /settlements/generate                            Build the batch for a date.
GET  /settlements                                     List batches (paged, status filter).
GET  /settlements/{id}                                Batch detail.
GET  /settlements/{id}/commission-breakdown           Per-beneficiary commissions.
POST /settlements/{id}/payouts/commissions            Dispatch pending commission rows.
GET  /settlements/{id}/payout-status                  Polled status summary.
GET  /settlements/{id}/payouts/details                Payout rows with beneficiaries.
GET  /settlements/{id}/payouts/failed                 Failed rows with retry eligibility.
POST /settlements/{id}/payouts/{payout_id}/retry      Retry one failed payout.
POST /settlements/{id}/payouts/{payout_id}/manual     Record a manual transfer.
GET  /settlements/{id}/payouts/{payout_id}/trace      Payout plus audit trail.
POST /settlements/{id}/process                        Force-close ("Mark Processed").
GET  /settlements/{id}/export                         PDF report.
POST /settlements/payouts/callback[/mpesa]            Provider result webhooks.
"""

import logging
from datetime import date
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.api.deps import get_dispatcher
from settlement_engine.audit.logger import audit_trail, from_json
from settlement_engine.database import get_session
from settlement_engine.engine import aggregator, batch_builder, ledger, reconciliation
from settlement_engine.engine.aggregator import PayoutView
from settlement_engine.engine.batch_state import load_batch, read_payout_status
from settlement_engine.engine.dispatcher import PayoutDispatcher
from settlement_engine.engine.errors import AlreadyCompletedError, NotFoundError, ValidationError
from settlement_engine.models.enums import PayoutCategory, PayoutStatus
from settlement_engine.models.settlement import SettlementBatch
from settlement_engine.providers import ProviderCallback, parse_result_callback
from settlement_engine.reports.settlement_pdf import render_settlement_pdf

logger = logging.getLogger("settlement_engine.api")

router = APIRouter(prefix="/settlements", tags=["settlements"])


# ─── Request / response models ───────────────────────────────────────


class GenerateRequest(BaseModel):
    date: Optional[str] = None


class ManualEntryRequest(BaseModel):
    transaction_ref: Optional[str] = Field(None, alias="transactionRef")
    transaction_date: Optional[str] = Field(None, alias="transactionDate")
    phone: Optional[str] = None
    notes: Optional[str] = None

    model_config = {"populate_by_name": True}

    def to_entry(self) -> reconciliation.ManualEntry:
        return reconciliation.ManualEntry(
            transaction_ref=self.transaction_ref,
            transaction_date=self.transaction_date,
            phone=self.phone,
            notes=self.notes,
        )


class ProcessRequest(BaseModel):
    notes: Optional[str] = None


class CallbackRequest(BaseModel):
    originator_conversation_id: str
    success: bool
    conversation_id: Optional[str] = None
    result_code: Optional[str] = None
    description: str = ""
    transaction_id: Optional[str] = None


class BatchTotals(BaseModel):
    total_payments: float
    total_insurance: float
    total_admin: float
    total_agent_commissions: float
    total_super_agent_commissions: float
    payment_count: int


class BatchDetail(BaseModel):
    id: str
    settlement_date: str
    status: str
    totals: BatchTotals
    payout_status: dict[str, str]
    completion_percentage: int
    insurance_payout_details: Optional[dict] = None
    administrative_payout_details: Optional[dict] = None
    notes: Optional[str]
    processed_at: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]

    model_config = {"from_attributes": True}


class BatchPage(BaseModel):
    batches: list[BatchDetail]
    total: int
    page: int
    limit: int


class BatchList(BaseModel):
    data: BatchPage


class GenerateResponse(BaseModel):
    data: BatchDetail
    message: str
    warning: Optional[str] = None


class PayoutDetail(BaseModel):
    id: str
    batch_id: str
    beneficiary_id: str
    beneficiary_type: str
    beneficiary_name: Optional[str] = None
    beneficiary_phone: Optional[str] = None
    amount: float
    source_count: int
    status: str
    provider: str
    provider_txn_id: Optional[str]
    conversation_id: Optional[str]
    attempts: int
    last_attempt_at: Optional[str]
    error_details: Optional[dict] = None
    manual_transaction_ref: Optional[str]
    manual_transaction_details: Optional[dict] = None
    created_at: Optional[str]
    updated_at: Optional[str]

    model_config = {"from_attributes": True}


class Beneficiary(BaseModel):
    full_name: Optional[str] = None
    phone: Optional[str] = None


class PayoutDetailList(BaseModel):
    payouts: list[PayoutDetail]


class FailedPayout(PayoutDetail):
    beneficiary: Beneficiary
    can_retry: bool
    attempts_remaining: int


class PayoutResponse(BaseModel):
    data: PayoutDetail
    message: str


class DispatchQueued(BaseModel):
    batch_id: str
    queued: list[str]
    count: int
    message: str


class StatusResponse(BaseModel):
    batch_id: str
    batch_status: str
    total: int
    pending: int
    completed: int
    failed: int
    in_progress: int
    completion_percentage: int
    payout_status: dict[str, str]


class BreakdownAgent(BaseModel):
    id: str
    full_name: Optional[str]
    phone: Optional[str]
    payments: int
    commission: float


class BreakdownSuperAgent(BaseModel):
    id: str
    full_name: Optional[str]
    phone: Optional[str]
    agents: int
    commission: float


class CommissionBreakdown(BaseModel):
    agents: list[BreakdownAgent]
    super_agents: list[BreakdownSuperAgent]


class CommissionBreakdownResponse(BaseModel):
    breakdown: CommissionBreakdown


class AuditEntry(BaseModel):
    id: int
    action: str
    details: Optional[dict] = None
    timestamp: Optional[str]


class PayoutTrace(BaseModel):
    payout: PayoutDetail
    audit_trail: list[AuditEntry]


class CallbackAck(BaseModel):
    originator_conversation_id: str
    late: bool


# ─── Helpers ─────────────────────────────────────────────────────────


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _as_dict(raw: Optional[str]) -> Optional[dict]:
    value = from_json(raw)
    return value if isinstance(value, dict) else None


def _batch_to_detail(batch: SettlementBatch, pct: int) -> BatchDetail:
    return BatchDetail(
        id=batch.id,
        settlement_date=batch.settlement_date.isoformat(),
        status=batch.status,
        totals=BatchTotals(
            total_payments=float(batch.total_payments or 0),
            total_insurance=float(batch.total_insurance or 0),
            total_admin=float(batch.total_admin or 0),
            total_agent_commissions=float(batch.total_agent_commissions or 0),
            total_super_agent_commissions=float(batch.total_super_agent_commissions or 0),
            payment_count=batch.payment_count,
        ),
        payout_status=read_payout_status(batch),
        completion_percentage=pct,
        insurance_payout_details=_as_dict(batch.insurance_payout_details),
        administrative_payout_details=_as_dict(batch.administrative_payout_details),
        notes=batch.notes,
        processed_at=_iso(batch.processed_at),
        created_at=_iso(batch.created_at),
        updated_at=_iso(batch.updated_at),
    )


def _payout_fields(view: PayoutView) -> dict[str, Any]:
    p = view.payout
    return dict(
        id=p.id,
        batch_id=p.batch_id,
        beneficiary_id=p.beneficiary_id,
        beneficiary_type=p.beneficiary_type,
        beneficiary_name=view.beneficiary_name,
        beneficiary_phone=view.beneficiary_phone,
        amount=float(p.amount),
        source_count=p.source_count,
        status=p.status,
        provider=p.provider,
        provider_txn_id=p.provider_txn_id,
        conversation_id=p.conversation_id,
        attempts=p.attempts,
        last_attempt_at=_iso(p.last_attempt_at),
        error_details=_as_dict(p.error_details),
        manual_transaction_ref=p.manual_transaction_ref,
        manual_transaction_details=_as_dict(p.manual_transaction_details),
        created_at=_iso(p.created_at),
        updated_at=_iso(p.updated_at),
    )


async def _payout_view(session: AsyncSession, payout_id: str, batch_id: str) -> PayoutView:
    payout = await ledger.get_payout(session, payout_id, batch_id=batch_id)
    name, phone = await ledger.get_beneficiary(session, payout.beneficiary_type, payout.beneficiary_id)
    return PayoutView(payout=payout, beneficiary_name=name, beneficiary_phone=phone)


def _parse_settlement_date(raw: Optional[str]) -> date:
    if not raw or not raw.strip():
        raise ValidationError("Settlement date is required", field="date")
    try:
        return date.fromisoformat(raw.strip()[:10])
    except ValueError:
        raise ValidationError("Settlement date must be a valid ISO date", field="date")


# ─── Batches ─────────────────────────────────────────────────────────


@router.post("/generate", response_model=GenerateResponse, status_code=201)
async def generate_batch(body: GenerateRequest, session: AsyncSession = Depends(get_session)):
    """
    Generate the settlement batch for a date.

    A date with no allocated payments still yields an (empty) batch; the
    response then carries a warning instead of failing.
    """
    settlement_date = _parse_settlement_date(body.date)
    result = await batch_builder.generate(session, settlement_date)
    batch, pct = await aggregator.get_batch(session, result.batch.id)
    return GenerateResponse(
        data=_batch_to_detail(batch, pct),
        message=f"Settlement batch generated for {settlement_date.isoformat()} with {result.payout_count} payouts",
        warning=result.warning.message if result.warning else None,
    )


@router.get("", response_model=BatchList)
async def list_batches(
    status: Optional[str] = Query(None, description="Filter by batch status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    offset: Optional[int] = Query(None, ge=0, description="Row offset; overrides page"),
    session: AsyncSession = Depends(get_session),
):
    """List batches, newest settlement date first."""
    if offset is not None:
        page = offset // limit + 1
    rows, total = await aggregator.list_batches(session, status=status, page=page, limit=limit)
    return BatchList(data=BatchPage(
        batches=[_batch_to_detail(b, pct) for b, pct in rows],
        total=total,
        page=page,
        limit=limit,
    ))


@router.get("/{batch_id}", response_model=BatchDetail)
async def get_batch(batch_id: str, session: AsyncSession = Depends(get_session)):
    batch, pct = await aggregator.get_batch(session, batch_id)
    return _batch_to_detail(batch, pct)


@router.get("/{batch_id}/commission-breakdown", response_model=CommissionBreakdownResponse)
async def get_commission_breakdown(batch_id: str, session: AsyncSession = Depends(get_session)):
    breakdown = await batch_builder.get_commission_breakdown(session, batch_id)
    return CommissionBreakdownResponse(breakdown=CommissionBreakdown(
        agents=[BreakdownAgent(**{**a, "commission": float(a["commission"])}) for a in breakdown["agents"]],
        super_agents=[
            BreakdownSuperAgent(**{**s, "commission": float(s["commission"])}) for s in breakdown["super_agents"]
        ],
    ))


@router.post("/{batch_id}/process", response_model=BatchDetail)
async def process_batch(
    batch_id: str,
    body: Optional[ProcessRequest] = None,
    session: AsyncSession = Depends(get_session),
):
    """Force-close a batch, downgrading whatever is still unresolved."""
    await reconciliation.process_batch(session, batch_id, notes=body.notes if body else None)
    batch, pct = await aggregator.get_batch(session, batch_id)
    return _batch_to_detail(batch, pct)


@router.get("/{batch_id}/export")
async def export_batch(batch_id: str, session: AsyncSession = Depends(get_session)):
    """Download the batch report as a PDF."""
    status = await aggregator.get_status(session, batch_id)
    payouts = await aggregator.get_details(session, batch_id)
    batch = await load_batch(session, batch_id)
    pdf = render_settlement_pdf(batch, status, payouts)
    filename = f"settlement-{batch.settlement_date.isoformat()}.pdf"
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ─── Status ──────────────────────────────────────────────────────────


@router.get("/{batch_id}/payout-status", response_model=StatusResponse)
@router.get("/{batch_id}/status", response_model=StatusResponse)
async def get_payout_status(batch_id: str, session: AsyncSession = Depends(get_session)):
    """Polled by the console while a dispatch is running. Never writes."""
    summary = await aggregator.get_status(session, batch_id)
    return StatusResponse(**summary.__dict__)


@router.get("/{batch_id}/payouts/details", response_model=PayoutDetailList)
async def get_payout_details(
    batch_id: str,
    status: Optional[str] = Query(None, description="Filter by payout status"),
    session: AsyncSession = Depends(get_session),
):
    views = await aggregator.get_details(session, batch_id, status=status)
    return PayoutDetailList(payouts=[PayoutDetail(**_payout_fields(v)) for v in views])


@router.get("/{batch_id}/payouts/failed", response_model=list[FailedPayout])
async def get_failed_payouts(
    batch_id: str,
    session: AsyncSession = Depends(get_session),
    dispatcher: PayoutDispatcher = Depends(get_dispatcher),
):
    """Failed rows, flagged with whether an automated retry is still possible."""
    views = await aggregator.get_details(session, batch_id, status=PayoutStatus.FAILED.value)
    return [
        FailedPayout(
            **_payout_fields(v),
            beneficiary=Beneficiary(full_name=v.beneficiary_name, phone=v.beneficiary_phone),
            can_retry=v.payout.attempts < dispatcher.max_attempts,
            attempts_remaining=max(dispatcher.max_attempts - v.payout.attempts, 0),
        )
        for v in views
    ]


# ─── Dispatch ────────────────────────────────────────────────────────


@router.post("/{batch_id}/payouts/commissions", response_model=DispatchQueued, status_code=202)
async def dispatch_commissions(
    batch_id: str,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    dispatcher: PayoutDispatcher = Depends(get_dispatcher),
):
    """
    Start paying every pending commission row of the batch.

    Returns immediately with the queued ids; outcomes are observed by
    polling payout-status.
    """
    payout_ids = await dispatcher.pending_commission_ids(session, batch_id)
    if payout_ids:
        background_tasks.add_task(dispatcher.run_in_background, payout_ids)
    logger.info("Batch %s: queued %d commission payouts", batch_id[:8], len(payout_ids))
    return DispatchQueued(
        batch_id=batch_id,
        queued=payout_ids,
        count=len(payout_ids),
        message=f"{len(payout_ids)} commission payouts queued" if payout_ids else "No pending commission payouts",
    )


@router.post("/{batch_id}/payouts/{payout_id}/retry", response_model=PayoutResponse, status_code=202)
async def retry_payout(
    batch_id: str,
    payout_id: str,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    dispatcher: PayoutDispatcher = Depends(get_dispatcher),
):
    """Move a failed payout back to pending and dispatch it again."""
    await dispatcher.prepare_retry(session, batch_id, payout_id)
    background_tasks.add_task(dispatcher.run_in_background, [payout_id])
    view = await _payout_view(session, payout_id, batch_id)
    return PayoutResponse(data=PayoutDetail(**_payout_fields(view)), message="Retry queued")


# ─── Manual reconciliation ───────────────────────────────────────────


@router.post("/{batch_id}/payouts/insurance/manual", response_model=BatchDetail)
async def record_insurance_manual(
    batch_id: str,
    body: ManualEntryRequest,
    session: AsyncSession = Depends(get_session),
):
    await reconciliation.record_category_manual(session, batch_id, PayoutCategory.INSURANCE.value, body.to_entry())
    batch, pct = await aggregator.get_batch(session, batch_id)
    return _batch_to_detail(batch, pct)


@router.post("/{batch_id}/payouts/administrative/manual", response_model=BatchDetail)
async def record_administrative_manual(
    batch_id: str,
    body: ManualEntryRequest,
    session: AsyncSession = Depends(get_session),
):
    await reconciliation.record_category_manual(
        session, batch_id, PayoutCategory.ADMINISTRATIVE.value, body.to_entry()
    )
    batch, pct = await aggregator.get_batch(session, batch_id)
    return _batch_to_detail(batch, pct)


@router.post("/{batch_id}/payouts/{payout_id}/manual", response_model=PayoutResponse)
async def record_manual_payout(
    batch_id: str,
    payout_id: str,
    body: ManualEntryRequest,
    session: AsyncSession = Depends(get_session),
):
    """Close a failed payout with evidence of a transfer made outside the provider."""
    await reconciliation.record_manual(session, batch_id, payout_id, body.to_entry())
    view = await _payout_view(session, payout_id, batch_id)
    return PayoutResponse(data=PayoutDetail(**_payout_fields(view)), message="Manual payout recorded")


@router.get("/{batch_id}/payouts/{payout_id}/trace", response_model=PayoutTrace)
async def get_payout_trace(batch_id: str, payout_id: str, session: AsyncSession = Depends(get_session)):
    """
    Full audit trail for a payout.

    Every dispatch attempt, callback, retry and manual entry, oldest first.
    """
    view = await _payout_view(session, payout_id, batch_id)
    trail = await audit_trail(session, payout_id=payout_id)
    return PayoutTrace(
        payout=PayoutDetail(**_payout_fields(view)),
        audit_trail=[
            AuditEntry(
                id=log.id,
                action=log.action,
                details=_as_dict(log.details),
                timestamp=_iso(log.timestamp),
            )
            for log in trail
        ],
    )


# ─── Provider callbacks ──────────────────────────────────────────────


@router.post("/payouts/callback", response_model=CallbackAck)
async def payout_callback(
    body: CallbackRequest,
    session: AsyncSession = Depends(get_session),
    dispatcher: PayoutDispatcher = Depends(get_dispatcher),
):
    """
    Provider result in normalised form.

    Resolves the waiting dispatch when there is one; otherwise the result is
    recorded on the row as a late callback (404 for unknown ids, 409 when the
    row is already completed).
    """
    callback = ProviderCallback(**body.model_dump(), raw=body.model_dump())
    if dispatcher.resolve_callback(callback):
        return CallbackAck(originator_conversation_id=callback.originator_conversation_id, late=False)
    await dispatcher.record_late_callback(session, callback)
    return CallbackAck(originator_conversation_id=callback.originator_conversation_id, late=True)


@router.post("/payouts/callback/mpesa")
async def mpesa_result_callback(
    body: dict,
    session: AsyncSession = Depends(get_session),
    dispatcher: PayoutDispatcher = Depends(get_dispatcher),
):
    """Daraja B2C ResultURL / QueueTimeOutURL webhook. Always acknowledged once parsed."""
    try:
        callback = parse_result_callback(body)
    except ValueError as e:
        raise ValidationError(str(e), field="Result")

    logger.info(
        "[B2C callback] %s result=%s %s",
        callback.originator_conversation_id,
        callback.result_code,
        callback.description,
    )
    if not dispatcher.resolve_callback(callback):
        try:
            await dispatcher.record_late_callback(session, callback)
        except (AlreadyCompletedError, NotFoundError) as e:
            # Daraja retries anything it does not see accepted.
            logger.warning("[B2C callback] %s ignored: %s", callback.originator_conversation_id, e)
    return {"ResultCode": 0, "ResultDesc": "Accepted"}
