from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, condecimal, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops_core.actors import Actor, get_actor
from fieldops_core.db import get_session
from fieldops_core.errors import (
    BatchInUseError, BatchNotFoundError, DuplicateBatchCodeError, InventoryValidationError,
)
from fieldops_core.models import InventoryBatch, InventoryItem
from fieldops_core import ledger
from fieldops_core.stock import ZERO, change_crew, change_warehouse, lock_item, lock_items, qty

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/inventory/batches", tags=["batches"])

Qty = condecimal(gt=0, max_digits=12, decimal_places=3)
QtyOrZero = condecimal(ge=0, max_digits=12, decimal_places=3)


def normalize_batch_code(code: str) -> str:
    return code.strip().upper()


class BatchCreateRequest(BaseModel):
    batch_code: str = Field(min_length=1, max_length=64)
    inventory_id: int
    initial_quantity: Qty
    unit: str | None = Field(default=None, max_length=32)
    supplier: str | None = Field(default=None, max_length=255)
    acquisition_date: datetime | None = None
    notes: str | None = Field(default=None, max_length=1000)

    @field_validator("batch_code")
    @classmethod
    def _code(cls, v: str) -> str:
        v = normalize_batch_code(v)
        if not v:
            raise ValueError("batch_code must not be blank")
        return v

class BatchTopUpRequest(BaseModel):
    batch_code: str = Field(min_length=1, max_length=64)
    meters_to_add: Qty

class BatchAdjustRequest(BaseModel):
    batch_code: str = Field(min_length=1, max_length=64)
    item_id: int | None = None
    current_quantity: QtyOrZero
    reason: str | None = Field(default=None, max_length=500)


def batch_to_dict(b: InventoryBatch) -> dict:
    return {
        "id": b.id,
        "batch_code": b.batch_code,
        "item_id": b.item_id,
        "initial_quantity": float(b.initial_quantity),
        "current_quantity": float(b.current_quantity),
        "unit": b.unit,
        "supplier": b.supplier,
        "acquisition_date": b.acquisition_date,
        "notes": b.notes,
        "status": b.status,
        "location": b.location,
        "crew_id": b.crew_id,
    }


async def find_batch(session: AsyncSession, batch_code: str, lock: bool = False) -> InventoryBatch:
    stmt = select(InventoryBatch).where(InventoryBatch.batch_code == normalize_batch_code(batch_code))
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    batch = (await session.execute(stmt)).scalar_one_or_none()
    if not batch:
        raise BatchNotFoundError(normalize_batch_code(batch_code))
    return batch


def _refresh_status(batch: InventoryBatch) -> None:
    batch.status = "depleted" if qty(batch.current_quantity) == ZERO else "active"


async def _book(session: AsyncSession, batch: InventoryBatch, item: InventoryItem, delta: Decimal,
                movement_type: str, reason: str, actor: Actor) -> None:
    """Move `delta` in or out of whichever location currently holds the batch, with its history row."""
    if delta == ZERO:
        return
    if batch.location == "crew":
        await change_crew(session, batch.crew_id, item, delta)
        await ledger.record(
            session, item_id=item.id, movement_type="adjustment", quantity_change=delta,
            reason=reason, crew_id=batch.crew_id, batch_code=batch.batch_code,
            performed_by=actor.user_id,
        )
    else:
        change_warehouse(item, delta)
        await ledger.record(
            session, item_id=item.id, movement_type=movement_type, quantity_change=delta,
            reason=reason, batch_code=batch.batch_code, performed_by=actor.user_id,
        )


async def create_batch_txn(req: BatchCreateRequest, session: AsyncSession, actor: Actor) -> InventoryBatch:
    item = await lock_item(session, req.inventory_id)
    if item.item_type == "equipment":
        raise InventoryValidationError(
            f"Item {item.code} is equipment; register instances instead of batches",
            details={"item_id": item.id},
        )

    dup = (await session.execute(
        select(InventoryBatch.id).where(InventoryBatch.batch_code == req.batch_code)
    )).scalar_one_or_none()
    if dup:
        raise DuplicateBatchCodeError(req.batch_code)

    initial = qty(req.initial_quantity)
    batch = InventoryBatch(
        batch_code=req.batch_code,
        item_id=item.id,
        initial_quantity=initial,
        current_quantity=initial,
        unit=req.unit or item.unit,
        supplier=req.supplier,
        acquisition_date=req.acquisition_date or datetime.now(timezone.utc),
        notes=req.notes,
        status="active",
        location="warehouse",
        crew_id=None,
    )
    session.add(batch)
    await session.flush()

    await _book(session, batch, item, initial, "entry", f"Batch {batch.batch_code} received", actor)
    logger.info("batch %s created for item %s qty=%s by %s", batch.batch_code, item.code, initial, actor.user_id)
    return batch


async def add_quantity_txn(req: BatchTopUpRequest, session: AsyncSession, actor: Actor) -> InventoryBatch:
    batch = await find_batch(session, req.batch_code)
    item = await lock_item(session, batch.item_id)
    batch = await find_batch(session, req.batch_code, lock=True)
    if batch.location == "crew":
        actor.require_admin("top-up of a batch held by a crew")

    delta = qty(req.meters_to_add)
    batch.initial_quantity = qty(batch.initial_quantity) + delta
    batch.current_quantity = qty(batch.current_quantity) + delta
    _refresh_status(batch)

    await _book(session, batch, item, delta, "entry", f"Top-up of batch {batch.batch_code}", actor)
    await session.flush()
    return batch


async def adjust_batch_txn(req: BatchAdjustRequest, session: AsyncSession, actor: Actor) -> InventoryBatch:
    """
    Administrative correction of a batch's quantity and/or item.

    A changed item is booked as a write-off on the old item plus a write-on on
    the new one, both at the batch's current location.
    """
    actor.require_admin("batch adjustment")
    reason = (req.reason or "").strip()
    if not reason:
        raise InventoryValidationError("reason is required for a batch adjustment")

    batch = await find_batch(session, req.batch_code)
    new_item_id = req.item_id or batch.item_id
    items = await lock_items(session, [batch.item_id, new_item_id])
    batch = await find_batch(session, req.batch_code, lock=True)

    old_item = items[batch.item_id]
    new_item = items[new_item_id]
    if new_item.item_type == "equipment":
        raise InventoryValidationError(
            f"Item {new_item.code} is equipment and cannot hold batches",
            details={"item_id": new_item.id},
        )

    old_qty = qty(batch.current_quantity)
    new_qty = qty(req.current_quantity)

    if old_item.id != new_item.id:
        note = f"{reason} (batch {batch.batch_code} moved from {old_item.code} to {new_item.code})"
        await _book(session, batch, old_item, -old_qty, "adjustment", note, actor)
        await _book(session, batch, new_item, new_qty, "adjustment", note, actor)
        batch.item_id = new_item.id
    else:
        await _book(session, batch, old_item, new_qty - old_qty, "adjustment", reason, actor)

    if new_qty > qty(batch.initial_quantity):
        batch.initial_quantity = new_qty
    batch.current_quantity = new_qty
    _refresh_status(batch)
    await session.flush()
    logger.info("batch %s adjusted %s -> %s by %s", batch.batch_code, old_qty, new_qty, actor.user_id)
    return batch


async def remove_batch(session: AsyncSession, batch: InventoryBatch, item: InventoryItem,
                       force: bool, actor: Actor) -> None:
    """
    Delete one batch row. Caller holds the item lock.

    Empty batches go freely. A warehouse batch with quantity left needs
    `force` and an admin actor, and the remainder is written off. A batch
    out with a crew is never deleted; it has to be returned first.
    """
    remaining = qty(batch.current_quantity)
    if remaining > ZERO and batch.location == "crew":
        raise BatchInUseError(
            f"Batch {batch.batch_code} is held by crew {batch.crew_id}; return it first",
            details={"batch_code": batch.batch_code, "crew_id": batch.crew_id},
        )
    if remaining > ZERO and not force:
        raise BatchInUseError(
            f"Batch {batch.batch_code} still holds {float(remaining):.3f}; pass force to write it off",
            details={"batch_code": batch.batch_code, "current_quantity": float(remaining)},
        )
    if remaining > ZERO:
        actor.require_admin("writing off a batch remainder")
        await _book(session, batch, item, -remaining, "adjustment",
                    f"Batch {batch.batch_code} deleted, remainder written off", actor)
        logger.warning("batch %s force-deleted with %s written off", batch.batch_code, remaining)
    await session.delete(batch)
    await session.flush()


async def delete_batch_txn(batch_code: str, force: bool, session: AsyncSession, actor: Actor) -> dict:
    batch = await find_batch(session, batch_code)
    item = await lock_item(session, batch.item_id)
    batch = await find_batch(session, batch_code, lock=True)
    snapshot = batch_to_dict(batch)
    await remove_batch(session, batch, item, force, actor)
    return snapshot


async def transfer_whole(session: AsyncSession, batch: InventoryBatch, crew_id: int) -> None:
    batch.location = "crew"
    batch.crew_id = crew_id
    await session.flush()


async def return_whole(session: AsyncSession, batch: InventoryBatch) -> None:
    batch.location = "warehouse"
    batch.crew_id = None
    await session.flush()


async def list_batches(
    session: AsyncSession,
    item_id: int | None = None,
    location: str | None = None,
    crew_id: int | None = None,
    status: str | None = None,
    batch_code: str | None = None,
) -> List[InventoryBatch]:
    q = select(InventoryBatch).order_by(InventoryBatch.acquisition_date.desc(), InventoryBatch.id.desc())
    if item_id is not None:
        q = q.where(InventoryBatch.item_id == item_id)
    if location is not None:
        q = q.where(InventoryBatch.location == location)
    if crew_id is not None:
        q = q.where(InventoryBatch.crew_id == crew_id)
    if status is not None:
        q = q.where(InventoryBatch.status == status)
    if batch_code:
        q = q.where(InventoryBatch.batch_code.contains(normalize_batch_code(batch_code)))
    return list((await session.execute(q)).scalars().all())


@router.get("")
async def get_batches(
    item_id: int | None = None,
    location: Literal["warehouse", "crew"] | None = None,
    crew_id: int | None = None,
    status: Literal["active", "depleted"] | None = None,
    batch_code: str | None = None,
    session: AsyncSession = Depends(get_session),
):
    rows = await list_batches(session, item_id, location, crew_id, status, batch_code)
    return [batch_to_dict(b) for b in rows]

@router.post("")
async def create_batch(req: BatchCreateRequest, session: AsyncSession = Depends(get_session),
                       actor: Actor = Depends(get_actor)):
    batch = await create_batch_txn(req, session, actor)
    await session.commit()
    return {"success": True, "batch": batch_to_dict(batch)}

@router.put("")
async def top_up_batch(req: BatchTopUpRequest, session: AsyncSession = Depends(get_session),
                       actor: Actor = Depends(get_actor)):
    batch = await add_quantity_txn(req, session, actor)
    await session.commit()
    return {"success": True, "batch": batch_to_dict(batch)}

@router.put("/update")
async def adjust_batch(req: BatchAdjustRequest, session: AsyncSession = Depends(get_session),
                       actor: Actor = Depends(get_actor)):
    batch = await adjust_batch_txn(req, session, actor)
    await session.commit()
    return {"success": True, "batch": batch_to_dict(batch)}

@router.delete("")
async def delete_batch(batch_code: str, force: bool = False, session: AsyncSession = Depends(get_session),
                       actor: Actor = Depends(get_actor)):
    deleted = await delete_batch_txn(batch_code, force, session, actor)
    await session.commit()
    return {"success": True, "batch": deleted}
