from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops_core.errors import IdempotencyConflictError
from fieldops_core.models import MovementReceipt

logger = logging.getLogger(__name__)


async def lookup(session: AsyncSession, key: str, action: str) -> dict | None:
    """Stored response for a key that already committed, or None for a fresh key."""
    row = (await session.execute(
        select(MovementReceipt).where(MovementReceipt.idempotency_key == key)
    )).scalar_one_or_none()
    if not row:
        return None
    if row.action != action:
        raise IdempotencyConflictError(
            f"idempotency_key {key} was already used for a {row.action} movement",
            details={"idempotency_key": key, "stored_action": row.action, "action": action},
        )
    logger.info("replaying %s movement for idempotency_key=%s", action, key)
    return {**row.response, "replayed": True}


async def remember(session: AsyncSession, key: str, action: str, response: dict, performed_by: int) -> None:
    """
    Store the response under the key inside the caller's transaction.

    A concurrent request that committed the same key first makes the insert
    fail; the whole movement is then rejected and rolled back by the caller.
    """
    row = MovementReceipt(
        idempotency_key=key,
        action=action,
        response=response,
        performed_by=performed_by,
        created_at=datetime.now(timezone.utc),
    )
    session.add(row)
    try:
        await session.flush()
    except IntegrityError:
        raise IdempotencyConflictError(
            f"idempotency_key {key} is being processed by another request",
            details={"idempotency_key": key},
        )
