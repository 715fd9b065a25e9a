"""
Safaricom Daraja M-Pesa B2C provider.

M-Pesa B2C flow:
  1. Get an OAuth token (client credentials, cached for just under an hour)
  2. POST the payment request; M-Pesa acknowledges with a ConversationID
  3. M-Pesa processes the payment asynchronously
  4. The result arrives on ResultURL (or QueueTimeOutURL) as a webhook,
     which the callback route turns into a ProviderCallback
"""

import base64
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

import httpx

from settlement_engine.config import settings
from settlement_engine.engine.errors import ProviderError, ProviderRejectedError, ProviderTimeoutError
from settlement_engine.providers.base import (
    CallbackHandler,
    PayoutProvider,
    PayoutRequest,
    ProviderCallback,
    SubmissionAck,
)

logger = logging.getLogger("settlement_engine.providers.mpesa")

TOKEN_TTL = timedelta(seconds=3500)


def normalize_phone(phone: str) -> str:
    """Format a Kenyan number as 2547XXXXXXXX."""
    phone = phone.strip().replace(" ", "")
    if phone.startswith("+"):
        phone = phone[1:]
    if phone.startswith("0"):
        phone = "254" + phone[1:]
    return phone


class MpesaB2CProvider(PayoutProvider):
    """Daraja B2C adapter over httpx."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        consumer_key: Optional[str] = None,
        consumer_secret: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.mpesa_base_url).rstrip("/")
        self.consumer_key = consumer_key if consumer_key is not None else settings.mpesa_consumer_key
        self.consumer_secret = consumer_secret if consumer_secret is not None else settings.mpesa_consumer_secret
        self._client = client or httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
        self._token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return "mpesa"

    async def _access_token(self) -> str:
        now = datetime.now(timezone.utc)
        if self._token and self._token_expires_at and now < self._token_expires_at:
            return self._token

        credentials = base64.b64encode(f"{self.consumer_key}:{self.consumer_secret}".encode()).decode()
        response = await self._request(
            "GET",
            f"{self.base_url}/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            headers={"Authorization": f"Basic {credentials}"},
        )
        data = response.json()
        if "access_token" not in data:
            err = data.get("errorMessage") or data.get("error_description") or f"HTTP {response.status_code}"
            raise ProviderRejectedError(f"Daraja auth failed: {err}")

        self._token = data["access_token"]
        self._token_expires_at = now + TOKEN_TTL
        logger.info("Daraja access token refreshed")
        return self._token

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"Daraja request timed out: {e}")
        except httpx.RequestError as e:
            raise ProviderError(f"Daraja connection error: {e}")

    async def submit(self, request: PayoutRequest, on_callback: CallbackHandler) -> SubmissionAck:
        amount = Decimal(request.amount)
        if amount != amount.to_integral_value():
            raise ProviderRejectedError(f"M-Pesa B2C only pays whole shillings (got {amount})")

        token = await self._access_token()
        payload = {
            "OriginatorConversationID": request.originator_conversation_id,
            "InitiatorName": settings.mpesa_initiator_name,
            "SecurityCredential": settings.mpesa_security_credential,
            "CommandID": "BusinessPayment",
            "Amount": int(amount),
            "PartyA": settings.mpesa_shortcode,
            "PartyB": normalize_phone(request.phone),
            "Remarks": request.remarks[:100],
            "QueueTimeOutURL": settings.mpesa_timeout_url,
            "ResultURL": settings.mpesa_result_url,
            "Occasion": request.occasion,
        }

        response = await self._request(
            "POST",
            f"{self.base_url}/mpesa/b2c/v1/paymentrequest",
            json=payload,
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
        )
        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code != 200 or str(data.get("ResponseCode")) != "0":
            message = data.get("errorMessage") or data.get("ResponseDescription") or f"HTTP {response.status_code}"
            logger.warning("[B2C] Rejected %s: %s", request.originator_conversation_id, message)
            raise ProviderRejectedError(
                f"M-Pesa rejected payout: {message}",
                result_code=str(data.get("errorCode") or data.get("ResponseCode") or response.status_code),
            )

        logger.info("[B2C] Sent %s, conv=%s", request.originator_conversation_id, data.get("ConversationID"))
        return SubmissionAck(
            originator_conversation_id=data.get("OriginatorConversationID") or request.originator_conversation_id,
            conversation_id=data.get("ConversationID", ""),
            provider=self.name,
            message=data.get("ResponseDescription", ""),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def parse_result_callback(body: dict) -> ProviderCallback:
    """
    Convert a Daraja B2C result (or queue timeout) webhook into a ProviderCallback.

    Raises:
        ValueError: The body has no Result.OriginatorConversationID.
    """
    result = body.get("Result") or {}
    originator = result.get("OriginatorConversationID")
    if not originator:
        raise ValueError("Callback has no OriginatorConversationID")

    receipt = None
    params = (result.get("ResultParameters") or {}).get("ResultParameter") or []
    if isinstance(params, dict):
        params = [params]
    for p in params:
        if p.get("Key") == "TransactionReceipt":
            receipt = str(p.get("Value", ""))

    result_code = str(result.get("ResultCode", ""))
    return ProviderCallback(
        originator_conversation_id=originator,
        conversation_id=result.get("ConversationID"),
        success=result_code == "0",
        result_code=result_code,
        description=result.get("ResultDesc", ""),
        transaction_id=receipt or result.get("TransactionID"),
        raw=body,
    )
