from settlement_engine.config import settings
from settlement_engine.providers.base import (
    PayoutProvider,
    PayoutRequest,
    ProviderCallback,
    SubmissionAck,
)
from settlement_engine.providers.mock_provider import MockMpesaProvider
from settlement_engine.providers.mpesa import MpesaB2CProvider, parse_result_callback


def build_provider(kind: str | None = None) -> PayoutProvider:
    """Provider selected by the ``payout_provider`` setting ("mock" or "mpesa")."""
    kind = (kind or settings.payout_provider).lower()
    if kind == "mpesa":
        return MpesaB2CProvider()
    if kind == "mock":
        return MockMpesaProvider()
    raise ValueError(f"Unknown payout provider: {kind}")


__all__ = [
    "PayoutProvider",
    "PayoutRequest",
    "ProviderCallback",
    "SubmissionAck",
    "MockMpesaProvider",
    "MpesaB2CProvider",
    "build_provider",
    "parse_result_callback",
]
