from settlement_engine.models.enums import (
    AuditAction,
    BatchStatus,
    BeneficiaryType,
    CategoryStatus,
    PaymentStatus,
    PayoutCategory,
    PayoutProvider,
    PayoutStatus,
    PortionType,
)
from settlement_engine.models.settlement import (
    Agent,
    AuditLog,
    Base,
    InsurancePlan,
    Payment,
    PayoutTransaction,
    SettlementBatch,
    SuperAgent,
)

__all__ = [
    "Base",
    "Agent",
    "SuperAgent",
    "InsurancePlan",
    "Payment",
    "SettlementBatch",
    "PayoutTransaction",
    "AuditLog",
    "AuditAction",
    "BatchStatus",
    "BeneficiaryType",
    "CategoryStatus",
    "PaymentStatus",
    "PayoutCategory",
    "PayoutProvider",
    "PayoutStatus",
    "PortionType",
]
