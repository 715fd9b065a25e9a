"""SQLAlchemy models for the settlement payout orchestrator."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


Money = Numeric(14, 2, asdecimal=True)


class SuperAgent(Base):
    """A super-agent supervising a network of agents."""

    __tablename__ = "super_agents"

    id = Column(String(50), primary_key=True)
    full_name = Column(String(200), nullable=False)
    phone = Column(String(20), nullable=True)

    agents = relationship("Agent", back_populates="super_agent", lazy="raise")


class Agent(Base):
    """A field agent who registers members and collects premiums."""

    __tablename__ = "agents"

    id = Column(String(50), primary_key=True)
    full_name = Column(String(200), nullable=False)
    phone = Column(String(20), nullable=True)
    super_agent_id = Column(String(50), ForeignKey("super_agents.id"), nullable=True, index=True)

    super_agent = relationship("SuperAgent", back_populates="agents")


class InsurancePlan(Base):
    """
    An insurance plan and how each premium payment is split.

    Every portion is a (type, value) pair: "fixed" is an amount in the base
    currency, "percent" is a percentage of the payment amount.
    """

    __tablename__ = "insurance_plans"

    id = Column(String(50), primary_key=True)
    name = Column(String(200), nullable=False)
    premium = Column(Money, nullable=False, default=0)

    agent_commission_type = Column(String(10), nullable=False, default="fixed")
    agent_commission_value = Column(Money, nullable=False, default=0)
    super_agent_commission_type = Column(String(10), nullable=False, default="fixed")
    super_agent_commission_value = Column(Money, nullable=False, default=0)
    insurance_share_type = Column(String(10), nullable=False, default="percent")
    insurance_share_value = Column(Money, nullable=False, default=0)
    admin_share_type = Column(String(10), nullable=False, default="fixed")
    admin_share_value = Column(Money, nullable=False, default=0)


class Payment(Base):
    """A member premium payment. Only allocated payments are settled."""

    __tablename__ = "payments"

    id = Column(String(50), primary_key=True, default=_new_id)
    member_id = Column(String(50), nullable=True)
    plan_id = Column(String(50), ForeignKey("insurance_plans.id"), nullable=False)
    agent_id = Column(String(50), ForeignKey("agents.id"), nullable=True, index=True)
    amount = Column(Money, nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    allocated_at = Column(DateTime(timezone=True), nullable=True, index=True)
    settlement_batch_id = Column(String(36), ForeignKey("settlement_batches.id"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class SettlementBatch(Base):
    """
    A day's settlement unit.

    Totals are computed once at generation and never recomputed from live
    payout state, so reports stay stable while individual payouts fail and
    get retried.
    """

    __tablename__ = "settlement_batches"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    settlement_date = Column(Date, nullable=False, unique=True)
    status = Column(String(20), nullable=False, default="open")

    total_payments = Column(Money, nullable=False, default=0)
    total_insurance = Column(Money, nullable=False, default=0)
    total_admin = Column(Money, nullable=False, default=0)
    total_agent_commissions = Column(Money, nullable=False, default=0)
    total_super_agent_commissions = Column(Money, nullable=False, default=0)
    payment_count = Column(Integer, nullable=False, default=0)

    payout_status = Column(Text, nullable=True)  # JSON: {"insurance": "pending", ...}
    insurance_payout_details = Column(Text, nullable=True)  # JSON manual evidence
    administrative_payout_details = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    payouts = relationship("PayoutTransaction", back_populates="batch", lazy="raise")


class PayoutTransaction(Base):
    """
    One beneficiary's commission payout within a batch.

    Rows are never deleted. Attempts and error_details form the running
    record of every dispatch; lease_token/lease_expires_at guard against two
    dispatches of the same row running at once.
    """

    __tablename__ = "payout_transactions"
    __table_args__ = (
        UniqueConstraint("batch_id", "beneficiary_type", "beneficiary_id", name="uq_batch_beneficiary"),
    )

    id = Column(String(12), primary_key=True, default=_new_id)
    batch_id = Column(String(36), ForeignKey("settlement_batches.id"), nullable=False, index=True)
    beneficiary_id = Column(String(50), nullable=False, index=True)
    beneficiary_type = Column(String(20), nullable=False)  # agent, super_agent
    amount = Column(Money, nullable=False)
    source_count = Column(Integer, nullable=False, default=0)

    status = Column(String(20), nullable=False, default="pending")
    provider = Column(String(20), nullable=False, default="mpesa")
    provider_txn_id = Column(String(100), nullable=True)
    conversation_id = Column(String(100), nullable=True, index=True)

    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    error_details = Column(Text, nullable=True)  # JSON

    manual_transaction_ref = Column(String(100), nullable=True)
    manual_transaction_details = Column(Text, nullable=True)  # JSON

    lease_token = Column(String(32), nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    batch = relationship("SettlementBatch", back_populates="payouts")
    audit_logs = relationship("AuditLog", back_populates="payout", lazy="raise")


class AuditLog(Base):
    """
    Immutable audit trail entry.

    Every ledger mutation, dispatch, callback, retry, manual entry and
    force-close gets an entry. These are append-only and never modified.
    """

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(String(36), ForeignKey("settlement_batches.id"), nullable=True, index=True)
    payout_id = Column(String(12), ForeignKey("payout_transactions.id"), nullable=True, index=True)
    action = Column(String(50), nullable=False)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=_utcnow)

    payout = relationship("PayoutTransaction", back_populates="audit_logs")
