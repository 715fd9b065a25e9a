"""
Settlement Engine: settlement payout orchestration API.

Builds a day's settlement batch from allocated premium payments, pays agent
and super-agent commissions through M-Pesa B2C, and gives operators retry,
manual reconciliation and force-close tools for whatever the automated path
could not finish.

Start the server:
    uvicorn settlement_engine.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from settlement_engine.api.deps import close_dispatcher
from settlement_engine.api.health import router as health_router
from settlement_engine.api.settlements import router as settlements_router
from settlement_engine.config import settings
from settlement_engine.database import init_db
from settlement_engine.engine.errors import SettlementError

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger("settlement_engine")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup; close the payout provider on shutdown."""
    await init_db()
    logger.info("Settlement engine started (provider=%s)", settings.payout_provider)
    yield
    await close_dispatcher()


app = FastAPI(
    title="Settlement Engine",
    description=(
        "Settlement payout orchestration for micro-insurance premium collections: "
        "daily batch generation, commission payouts over mobile money, explicit "
        "retries, manual reconciliation and immutable audit trails."
    ),
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.message,
            "code": type(exc).__name__,
            "field": getattr(exc, "field", None),
        },
    )


app.include_router(health_router, prefix="/api")
app.include_router(settlements_router, prefix="/api")
