from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops_core.db import get_session
from fieldops_core.models import (
    Crew, InventoryItem, WorkOrder,
    BATCH_LOCATIONS, BATCH_STATUSES, INSTANCE_STATUSES, ITEM_TYPES, MOVEMENT_TYPES,
)

router = APIRouter(prefix="/lookups", tags=["lookups"])

@router.get("/items")
async def list_items(item_type: str | None = None, session: AsyncSession = Depends(get_session)):
    q = select(InventoryItem).where(InventoryItem.deleted_at.is_(None)).order_by(InventoryItem.code)
    if item_type is not None:
        q = q.where(InventoryItem.item_type == item_type)
    rows = (await session.execute(q)).scalars().all()
    return [{"id": r.id, "code": r.code, "description": r.description, "item_type": r.item_type, "unit": r.unit} for r in rows]

@router.get("/crews")
async def list_crews(session: AsyncSession = Depends(get_session)):
    rows = (await session.execute(
        select(Crew)
        .where(Crew.is_active == True)  # noqa
        .order_by(Crew.name.asc())
    )).scalars().all()
    return [{"id": r.id, "name": r.name} for r in rows]

@router.get("/orders")
async def list_orders(crew_id: int | None = None, session: AsyncSession = Depends(get_session)):
    q = select(WorkOrder).order_by(WorkOrder.created_at.desc(), WorkOrder.id.desc())
    if crew_id is not None:
        q = q.where(WorkOrder.crew_id == crew_id)
    rows = (await session.execute(q.limit(200))).scalars().all()
    return [{"id": r.id, "ticket_id": r.ticket_id, "crew_id": r.crew_id, "status": r.status} for r in rows]

@router.get("/movement-types")
async def list_movement_types():
    return list(MOVEMENT_TYPES)

@router.get("/item-types")
async def list_item_types():
    return list(ITEM_TYPES)

@router.get("/instance-statuses")
async def list_instance_statuses():
    return list(INSTANCE_STATUSES)

@router.get("/batch-statuses")
async def list_batch_statuses():
    return list(BATCH_STATUSES)

@router.get("/batch-locations")
async def list_batch_locations():
    return list(BATCH_LOCATIONS)
