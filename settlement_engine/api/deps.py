"""Shared FastAPI dependencies."""

from typing import Optional

from settlement_engine.database import async_session
from settlement_engine.engine.dispatcher import PayoutDispatcher
from settlement_engine.providers import build_provider

_dispatcher: Optional[PayoutDispatcher] = None


def get_dispatcher() -> PayoutDispatcher:
    """The application-wide dispatcher. It owns the callback waiters, so there is only one."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = PayoutDispatcher(build_provider(), session_factory=async_session)
    return _dispatcher


async def close_dispatcher() -> None:
    global _dispatcher
    if _dispatcher is not None:
        await _dispatcher.provider.aclose()
        _dispatcher = None
