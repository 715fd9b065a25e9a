"""
Append-only audit trail for settlement batches and their payouts.

Entries are keyed by batch and, for row-level events, by payout; ``action``
is always one of ``AuditAction``. Details are stored as JSON with money
rendered as exact decimal strings ("150.00"), never floats, so the trail
reads back the same amounts the ledger holds. Entries are never updated or
deleted.
"""

import json
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.models.enums import AuditAction
from settlement_engine.models.settlement import AuditLog

logger = logging.getLogger("settlement_engine.audit")


def _encode(value: Any) -> Any:
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


def to_json(value: Any) -> str:
    """Serialize details; Decimals keep their exact digits, dates become ISO strings."""
    return json.dumps(value, default=_encode)


def from_json(raw: Optional[str]) -> Optional[Any]:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {"raw": raw}


async def log_event(
    session: AsyncSession,
    action: AuditAction,
    batch_id: Optional[str] = None,
    payout_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> AuditLog:
    """
    Append an audit entry to the session.

    The entry is committed with the change it describes.
    """
    action = AuditAction(action)
    encoded = to_json(details) if details else None
    entry = AuditLog(
        batch_id=batch_id,
        payout_id=payout_id,
        action=action.value,
        details=encoded,
        timestamp=datetime.now(timezone.utc),
    )
    session.add(entry)
    logger.info(
        "AUDIT | batch=%s payout=%s action=%s | %s",
        batch_id[:8] if batch_id else "-",
        payout_id or "-",
        action.value,
        encoded[:200] if encoded else "",
    )
    return entry


async def audit_trail(
    session: AsyncSession,
    batch_id: Optional[str] = None,
    payout_id: Optional[str] = None,
) -> list[AuditLog]:
    """Entries for a batch or a single payout, oldest first."""
    if batch_id is None and payout_id is None:
        raise ValueError("audit_trail needs a batch_id or a payout_id")
    stmt = select(AuditLog)
    if batch_id is not None:
        stmt = stmt.where(AuditLog.batch_id == batch_id)
    if payout_id is not None:
        stmt = stmt.where(AuditLog.payout_id == payout_id)
    result = await session.execute(stmt.order_by(AuditLog.timestamp.asc(), AuditLog.id.asc()))
    return list(result.scalars().all())
