"""
Mock M-Pesa B2C provider for demonstration.

Simulates the asynchronous B2C flow:
  - Configurable submission latency (default 100ms)
  - Synchronous rejections and failed result callbacks (default 5%)
  - Dropped callbacks, to exercise the dispatcher's timeout path
  - Realistic conversation and transaction ids
"""

import asyncio
import logging
import random
import uuid
from typing import Optional

from settlement_engine.config import settings
from settlement_engine.engine.errors import ProviderRejectedError
from settlement_engine.providers.base import (
    CallbackHandler,
    PayoutProvider,
    PayoutRequest,
    ProviderCallback,
    SubmissionAck,
)

logger = logging.getLogger("settlement_engine.providers.mock")


class MockMpesaProvider(PayoutProvider):
    """Mock provider that answers B2C requests through the callback hook."""

    def __init__(
        self,
        failure_rate: Optional[float] = None,
        latency_ms: Optional[int] = None,
        drop_rate: Optional[float] = None,
    ):
        self._failure_rate = failure_rate if failure_rate is not None else settings.mock_failure_rate
        self._latency_ms = latency_ms if latency_ms is not None else settings.mock_latency_ms
        self._drop_rate = drop_rate if drop_rate is not None else settings.mock_drop_rate
        self._tasks: set[asyncio.Task] = set()

    @property
    def name(self) -> str:
        return "mock_mpesa"

    async def _sleep(self) -> None:
        if self._latency_ms > 0:
            jitter = random.uniform(0.5, 1.5)
            await asyncio.sleep(self._latency_ms * jitter / 1000)

    async def submit(self, request: PayoutRequest, on_callback: CallbackHandler) -> SubmissionAck:
        await self._sleep()

        roll = random.random()
        if roll < self._failure_rate * 0.3:
            raise ProviderRejectedError(
                "Mock rejection: the initiator information is invalid",
                result_code="2001",
            )

        conversation_id = f"AG_{uuid.uuid4().hex[:20].upper()}"
        if roll < self._failure_rate:
            callback = ProviderCallback(
                originator_conversation_id=request.originator_conversation_id,
                conversation_id=conversation_id,
                success=False,
                result_code="2040",
                description="Mock failure: credit party customer type is not supported",
            )
        elif roll < self._failure_rate + self._drop_rate:
            logger.info("Mock provider dropping callback for %s", request.originator_conversation_id)
            callback = None
        else:
            callback = ProviderCallback(
                originator_conversation_id=request.originator_conversation_id,
                conversation_id=conversation_id,
                success=True,
                result_code="0",
                description="The service request is processed successfully.",
                transaction_id=f"S{uuid.uuid4().hex[:9].upper()}",
            )

        if callback is not None:
            task = asyncio.create_task(self._deliver(on_callback, callback))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return SubmissionAck(
            originator_conversation_id=request.originator_conversation_id,
            conversation_id=conversation_id,
            provider=self.name,
            message=f"B2C request accepted ({request.currency} {request.amount})",
        )

    async def _deliver(self, on_callback: CallbackHandler, callback: ProviderCallback) -> None:
        await self._sleep()
        await on_callback(callback)
