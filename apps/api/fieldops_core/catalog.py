from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, condecimal
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops_core.actors import Actor, get_actor
from fieldops_core.batches import batch_to_dict, remove_batch
from fieldops_core.db import get_session
from fieldops_core.errors import (
    BatchInUseError, DuplicateCodeError, HasDependentBatchesError, InventoryValidationError,
    ItemInUseError, ItemNotFoundError,
)
from fieldops_core.instances import InstanceIn, add_instances
from fieldops_core.models import CrewInventory, EquipmentInstance, InventoryBatch, InventoryItem
from fieldops_core import ledger
from fieldops_core.stock import ZERO, change_warehouse, lock_item, qty

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/inventory", tags=["inventory"])

ItemType = Literal["material", "equipment", "tool"]
Qty = condecimal(ge=0, max_digits=12, decimal_places=3)


class ItemCreateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    description: str = Field(min_length=1, max_length=255)
    item_type: ItemType = "material"
    unit: str = Field(default="unidades", min_length=1, max_length=32)
    minimum_stock: Qty = 5
    initial_stock: Qty = 0
    instances: List[InstanceIn] = Field(default_factory=list)

# No current_stock here: stock only moves through movements.
class ItemUpdateRequest(BaseModel):
    description: str | None = Field(default=None, min_length=1, max_length=255)
    item_type: ItemType | None = None
    unit: str | None = Field(default=None, min_length=1, max_length=32)
    minimum_stock: Qty | None = None


def item_to_dict(i: InventoryItem) -> dict:
    return {
        "id": i.id,
        "code": i.code,
        "description": i.description,
        "item_type": i.item_type,
        "unit": i.unit,
        "current_stock": float(i.current_stock),
        "minimum_stock": float(i.minimum_stock),
        "low_stock": qty(i.current_stock) < qty(i.minimum_stock),
        "created_at": i.created_at,
        "updated_at": i.updated_at,
    }


async def get_item(session: AsyncSession, item_id: int) -> InventoryItem:
    item = (await session.execute(
        select(InventoryItem).where(InventoryItem.id == item_id).where(InventoryItem.deleted_at.is_(None))
    )).scalar_one_or_none()
    if not item:
        raise ItemNotFoundError(item_id)
    return item


async def list_items(
    session: AsyncSession,
    search: str | None = None,
    item_type: str | None = None,
    low_stock: bool = False,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[InventoryItem], int]:
    q = select(InventoryItem).where(InventoryItem.deleted_at.is_(None))
    if search:
        like = f"%{search.strip().lower()}%"
        q = q.where(or_(func.lower(InventoryItem.code).like(like), func.lower(InventoryItem.description).like(like)))
    if item_type:
        q = q.where(InventoryItem.item_type == item_type)
    if low_stock:
        q = q.where(InventoryItem.current_stock < InventoryItem.minimum_stock)

    total = (await session.execute(select(func.count()).select_from(q.subquery()))).scalar_one()
    rows = (await session.execute(
        q.order_by(InventoryItem.code.asc()).offset((page - 1) * limit).limit(limit)
    )).scalars().all()
    return list(rows), int(total)


async def create_item_txn(req: ItemCreateRequest, session: AsyncSession, actor: Actor) -> InventoryItem:
    code = req.code.strip()
    # Soft-deleted items keep their code.
    dup = (await session.execute(select(InventoryItem.id).where(InventoryItem.code == code))).scalar_one_or_none()
    if dup:
        raise DuplicateCodeError(code)

    if req.item_type != "equipment" and req.instances:
        raise InventoryValidationError("instances can only be registered on equipment items")

    now = datetime.now(timezone.utc)
    item = InventoryItem(
        code=code,
        description=req.description.strip(),
        item_type=req.item_type,
        unit=req.unit,
        current_stock=ZERO,
        minimum_stock=qty(req.minimum_stock),
        created_at=now,
        updated_at=now,
    )
    session.add(item)
    await session.flush()

    if req.item_type == "equipment":
        # Equipment stock is the count of in-stock instances; initial_stock is ignored.
        if req.instances:
            await add_instances(session, item, req.instances, actor)
    elif qty(req.initial_stock) > ZERO:
        change_warehouse(item, qty(req.initial_stock))
        await ledger.record(
            session,
            item_id=item.id,
            movement_type="entry",
            quantity_change=qty(req.initial_stock),
            reason="Initial stock",
            performed_by=actor.user_id,
        )

    logger.info("item %s created (%s) by %s", item.code, item.item_type, actor.user_id)
    return item


async def _holds_anything(session: AsyncSession, item: InventoryItem) -> bool:
    if qty(item.current_stock) > ZERO:
        return True
    crew_qty = (await session.execute(
        select(func.coalesce(func.sum(CrewInventory.quantity), 0)).where(CrewInventory.item_id == item.id)
    )).scalar_one()
    if qty(crew_qty) > ZERO:
        return True
    n_inst = (await session.execute(
        select(func.count(EquipmentInstance.id)).where(EquipmentInstance.item_id == item.id)
    )).scalar_one()
    n_batch = (await session.execute(
        select(func.count(InventoryBatch.id)).where(InventoryBatch.item_id == item.id)
    )).scalar_one()
    return bool(n_inst or n_batch)


async def update_item_txn(item_id: int, req: ItemUpdateRequest, session: AsyncSession) -> InventoryItem:
    item = await lock_item(session, item_id)
    fields = req.model_dump(exclude_unset=True, exclude_none=True)

    new_type = fields.get("item_type")
    if new_type and new_type != item.item_type and "equipment" in (new_type, item.item_type):
        if await _holds_anything(session, item):
            raise ItemInUseError(
                f"Item {item.code} holds stock; it cannot change to or from equipment",
                details={"item_id": item.id, "from": item.item_type, "to": new_type},
            )

    for k, v in fields.items():
        setattr(item, k, qty(v) if k == "minimum_stock" else v)
    item.updated_at = datetime.now(timezone.utc)
    await session.flush()
    return item


async def delete_item_txn(item_id: int, force: bool, session: AsyncSession, actor: Actor) -> dict:
    """
    Soft-delete an item. Batches block the delete unless `force`, which deletes
    them first (warehouse remainders written off). Anything out with a crew
    always blocks.
    """
    item = await lock_item(session, item_id)

    batches = (await session.execute(
        select(InventoryBatch)
        .where(InventoryBatch.item_id == item.id)
        .order_by(InventoryBatch.id.asc())
        .with_for_update()
    )).scalars().all()
    if batches and not force:
        raise HasDependentBatchesError(item.id, [b.batch_code for b in batches])

    held = [b.batch_code for b in batches if b.location == "crew" and qty(b.current_quantity) > ZERO]
    if held:
        raise BatchInUseError(
            f"Item {item.code} has batches out with crews: {', '.join(held)}",
            details={"item_id": item.id, "batch_codes": held},
        )

    crew_qty = (await session.execute(
        select(func.coalesce(func.sum(CrewInventory.quantity), 0)).where(CrewInventory.item_id == item.id)
    )).scalar_one()
    if qty(crew_qty) > ZERO:
        raise ItemInUseError(
            f"Item {item.code} is still held by crews ({float(crew_qty):.3f})",
            details={"item_id": item.id, "crew_quantity": float(crew_qty)},
        )
    assigned = (await session.execute(
        select(EquipmentInstance.unique_id)
        .where(EquipmentInstance.item_id == item.id)
        .where(EquipmentInstance.status == "assigned")
    )).scalars().all()
    if assigned:
        raise ItemInUseError(
            f"Item {item.code} has instances out with crews",
            details={"item_id": item.id, "unique_ids": list(assigned)},
        )

    removed = []
    for b in batches:
        removed.append(batch_to_dict(b))
        await remove_batch(session, b, item, True, actor)

    item.deleted_at = datetime.now(timezone.utc)
    await session.flush()
    logger.info("item %s deleted by %s (%s batch(es) removed)", item.code, actor.user_id, len(removed))
    return {"item": item_to_dict(item), "deleted_batches": removed}


@router.get("")
async def get_items(
    search: str | None = None,
    item_type: ItemType | None = None,
    low_stock: bool = False,
    page: int = 1,
    limit: int = 50,
    session: AsyncSession = Depends(get_session),
):
    page = max(page, 1)
    limit = min(max(limit, 1), 500)
    rows, total = await list_items(session, search, item_type, low_stock, page, limit)
    return {"success": True, "count": total, "items": [item_to_dict(r) for r in rows]}

@router.post("")
async def create_item(req: ItemCreateRequest, session: AsyncSession = Depends(get_session),
                      actor: Actor = Depends(get_actor)):
    item = await create_item_txn(req, session, actor)
    await session.commit()
    return {"success": True, "item": item_to_dict(item)}

@router.get("/{item_id:int}")
async def read_item(item_id: int, session: AsyncSession = Depends(get_session)):
    item = await get_item(session, item_id)
    return {"success": True, "item": item_to_dict(item)}

@router.put("/{item_id:int}")
async def update_item(item_id: int, req: ItemUpdateRequest, session: AsyncSession = Depends(get_session),
                      actor: Actor = Depends(get_actor)):
    item = await update_item_txn(item_id, req, session)
    await session.commit()
    return {"success": True, "item": item_to_dict(item)}

@router.delete("/{item_id:int}")
async def delete_item(item_id: int, force: bool = False, session: AsyncSession = Depends(get_session),
                      actor: Actor = Depends(get_actor)):
    out = await delete_item_txn(item_id, force, session, actor)
    await session.commit()
    return {"success": True, **out}
