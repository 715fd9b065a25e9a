"""Shared test fixtures."""

from datetime import date, datetime, time, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from settlement_engine.engine import batch_builder
from settlement_engine.engine.dispatcher import PayoutDispatcher
from settlement_engine.engine.errors import ProviderRejectedError, ProviderTimeoutError
from settlement_engine.models.settlement import Agent, Base, InsurancePlan, Payment, SuperAgent
from settlement_engine.providers.base import PayoutProvider, PayoutRequest, ProviderCallback, SubmissionAck

SETTLEMENT_DATE = date(2025, 1, 15)


class ScriptedProvider(PayoutProvider):
    """
    Provider whose answers are scripted per beneficiary, one step per attempt.

    Steps: "ok" (success callback), "fail" (failure callback), "reject"
    (ProviderRejectedError on submit), "timeout" (ProviderTimeoutError on
    submit), "drop" (accepted, never calls back). Unscripted attempts succeed.
    """

    def __init__(self, script: dict[str, list[str]] | None = None):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.requests: list[PayoutRequest] = []
        self.closed = False

    @property
    def name(self) -> str:
        return "scripted"

    async def submit(self, request, on_callback) -> SubmissionAck:
        self.requests.append(request)
        steps = self.script.get(request.beneficiary_id)
        step = steps.pop(0) if steps else "ok"

        if step == "reject":
            raise ProviderRejectedError("Scripted rejection", result_code="2001")
        if step == "timeout":
            raise ProviderTimeoutError("Scripted timeout")
        if step in ("ok", "fail"):
            await on_callback(ProviderCallback(
                originator_conversation_id=request.originator_conversation_id,
                conversation_id=f"AG_{request.payout_id}",
                success=step == "ok",
                result_code="0" if step == "ok" else "2040",
                description="Processed" if step == "ok" else "Scripted failure",
                transaction_id=f"TX{request.payout_id}{len(self.requests)}" if step == "ok" else None,
            ))
        return SubmissionAck(
            originator_conversation_id=request.originator_conversation_id,
            conversation_id=f"AG_{request.payout_id}",
            provider=self.name,
        )

    async def aclose(self) -> None:
        self.closed = True


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """A fresh file-backed database per test, so several sessions can share it."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'settlements.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


def _payment(pid: str, plan_id: str, agent_id: str | None, amount: str, day: date = SETTLEMENT_DATE, **kw) -> Payment:
    return Payment(
        id=pid,
        plan_id=plan_id,
        agent_id=agent_id,
        amount=Decimal(amount),
        status=kw.pop("status", "allocated"),
        allocated_at=kw.pop("allocated_at", datetime.combine(day, time(10, 0))),
        **kw,
    )


@pytest_asyncio.fixture
async def seeded_session(db_session: AsyncSession):
    """
    Database session pre-loaded with a small agent network and payments.

    SA-1 supervises AG-1 and AG-2; AG-3 is independent; AG-4 has no phone.
    """
    db_session.add_all([
        SuperAgent(id="SA-1", full_name="Grace Wanjiku", phone="0712000001"),
        Agent(id="AG-1", full_name="John Kamau", phone="0722000001", super_agent_id="SA-1"),
        Agent(id="AG-2", full_name="Mary Njeri", phone="0722000002", super_agent_id="SA-1"),
        Agent(id="AG-3", full_name="Esther Chebet", phone="0722000003", super_agent_id=None),
        Agent(id="AG-4", full_name="Daniel Kiprop", phone=None, super_agent_id="SA-1"),
        InsurancePlan(
            id="PLAN-BASIC", name="Basic", premium=Decimal("50.00"),
            agent_commission_type="fixed", agent_commission_value=Decimal("5.00"),
            super_agent_commission_type="fixed", super_agent_commission_value=Decimal("2.00"),
            insurance_share_type="percent", insurance_share_value=Decimal("80"),
            admin_share_type="fixed", admin_share_value=Decimal("3.00"),
        ),
        InsurancePlan(
            id="PLAN-FAMILY", name="Family", premium=Decimal("333.33"),
            agent_commission_type="percent", agent_commission_value=Decimal("10"),
            super_agent_commission_type="percent", super_agent_commission_value=Decimal("3.5"),
            insurance_share_type="percent", insurance_share_value=Decimal("75"),
            admin_share_type="percent", admin_share_value=Decimal("7.25"),
        ),
    ])
    await db_session.flush()
    db_session.add_all([
        _payment("P-01", "PLAN-BASIC", "AG-1", "50.00"),
        _payment("P-02", "PLAN-BASIC", "AG-1", "50.00"),
        _payment("P-03", "PLAN-FAMILY", "AG-2", "333.33"),
        _payment("P-04", "PLAN-FAMILY", "AG-3", "333.33"),
        _payment("P-05", "PLAN-BASIC", None, "50.00"),
        # Next day, and not yet allocated: neither is in the batch
        _payment("P-06", "PLAN-BASIC", "AG-1", "50.00", day=SETTLEMENT_DATE + timedelta(days=1)),
        _payment("P-07", "PLAN-BASIC", "AG-1", "50.00", status="pending", allocated_at=None),
    ])
    await db_session.commit()

    yield db_session


@pytest_asyncio.fixture
async def scenario_batch(db_session: AsyncSession):
    """
    A batch with three agent commission rows of 100, 200 and 150.

    Agents A, B and C have no super agent; the plan pays a fixed 50 commission
    per payment, so A has 2 payments, B 4 and C 3.
    """
    db_session.add_all([
        Agent(id="A", full_name="Agent A", phone="0700000001"),
        Agent(id="B", full_name="Agent B", phone="0700000002"),
        Agent(id="C", full_name="Agent C", phone="0700000003"),
        InsurancePlan(
            id="PLAN-50", name="Fifty", premium=Decimal("500.00"),
            agent_commission_type="fixed", agent_commission_value=Decimal("50.00"),
            super_agent_commission_type="fixed", super_agent_commission_value=Decimal("0"),
            insurance_share_type="percent", insurance_share_value=Decimal("90"),
            admin_share_type="fixed", admin_share_value=Decimal("0"),
        ),
    ])
    await db_session.flush()
    n = 0
    for agent_id, count in (("A", 2), ("B", 4), ("C", 3)):
        for _ in range(count):
            n += 1
            db_session.add(_payment(f"S-{n:02d}", "PLAN-50", agent_id, "500.00"))
    await db_session.commit()

    result = await batch_builder.generate(db_session, SETTLEMENT_DATE)
    return result.batch


@pytest.fixture
def make_dispatcher(session_factory):
    """Build a dispatcher over a ScriptedProvider with a short timeout."""

    def _make(script: dict[str, list[str]] | None = None, timeout_seconds: float = 0.2, **kw) -> PayoutDispatcher:
        return PayoutDispatcher(
            ScriptedProvider(script),
            session_factory=session_factory,
            timeout_seconds=timeout_seconds,
            **kw,
        )

    return _make
