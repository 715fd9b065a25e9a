"""
Abstract payout provider interface.

Mobile-money payouts are asynchronous: the provider acknowledges a request
right away and reports the outcome later through a result callback. A
provider therefore only *submits*; results come back as ProviderCallback
objects, either through the HTTP webhook or, for the mock provider, through
the ``on_callback`` hook passed to ``submit``.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional


@dataclass
class PayoutRequest:
    """Request to disburse one payout."""

    originator_conversation_id: str  # our correlation id, echoed back in the callback
    payout_id: str
    beneficiary_id: str
    phone: str
    amount: Decimal
    currency: str = "KES"
    remarks: str = "Commission payout"
    occasion: str = "Commission"
    metadata: dict = field(default_factory=dict)


@dataclass
class SubmissionAck:
    """Synchronous acknowledgement of an accepted request."""

    originator_conversation_id: str
    conversation_id: str
    provider: str
    message: str = ""


@dataclass
class ProviderCallback:
    """Final outcome of a payout request, as reported by the provider."""

    originator_conversation_id: str
    success: bool
    conversation_id: Optional[str] = None
    result_code: Optional[str] = None
    description: str = ""
    transaction_id: Optional[str] = None
    raw: Optional[dict] = None


CallbackHandler = Callable[[ProviderCallback], Awaitable[None]]


class PayoutProvider(ABC):
    """Abstract base class for payout providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g. 'mpesa')."""
        ...

    @abstractmethod
    async def submit(self, request: PayoutRequest, on_callback: CallbackHandler) -> SubmissionAck:
        """
        Submit a payout request to the provider.

        Providers that deliver results over HTTP ignore ``on_callback``; the
        webhook route forwards those results to the dispatcher instead.

        Raises:
            ProviderRejectedError: The provider refused the request.
            ProviderTimeoutError: The provider did not answer in time.
        """
        ...

    async def aclose(self) -> None:
        """Release network resources held by the provider."""
        return None
