from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops_core.actors import Actor, get_actor
from fieldops_core.batches import batch_to_dict
from fieldops_core.db import get_session
from fieldops_core.errors import CrewNotFoundError, InventoryConflictError
from fieldops_core.instances import instance_to_dict
from fieldops_core.models import Crew, CrewInventory, EquipmentInstance, InventoryBatch, InventoryItem, WorkOrder
from fieldops_core.stock import get_crew

router = APIRouter(prefix="/crews", tags=["crews"])

class CrewCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    is_active: bool = True

class CrewUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    is_active: bool | None = None

class WorkOrderCreateRequest(BaseModel):
    ticket_id: str = Field(min_length=1, max_length=64)
    crew_id: int | None = None


def crew_to_dict(c: Crew) -> dict:
    return {"id": c.id, "name": c.name, "is_active": c.is_active}


@router.get("")
async def list_crews(active: bool | None = None, session: AsyncSession = Depends(get_session)):
    q = select(Crew).order_by(Crew.name.asc())
    if active is not None:
        q = q.where(Crew.is_active == active)
    rows = (await session.execute(q)).scalars().all()
    return [crew_to_dict(r) for r in rows]

@router.post("")
async def create_crew(req: CrewCreateRequest, session: AsyncSession = Depends(get_session),
                      actor: Actor = Depends(get_actor)):
    name = req.name.strip()
    if (await session.execute(select(Crew.id).where(Crew.name == name))).scalar_one_or_none():
        raise InventoryConflictError(f"Crew {name} already exists", code="DUPLICATE_CREW", details={"name": name})
    crew = Crew(name=name, is_active=req.is_active)
    session.add(crew)
    await session.commit()
    return {"success": True, "crew": crew_to_dict(crew)}

@router.put("/{crew_id:int}")
async def update_crew(crew_id: int, req: CrewUpdateRequest, session: AsyncSession = Depends(get_session),
                      actor: Actor = Depends(get_actor)):
    crew = (await session.execute(select(Crew).where(Crew.id == crew_id).with_for_update())).scalar_one_or_none()
    if not crew:
        raise CrewNotFoundError(crew_id)
    if req.name is not None:
        name = req.name.strip()
        taken = (await session.execute(
            select(Crew.id).where(Crew.name == name, Crew.id != crew_id)
        )).scalar_one_or_none()
        if taken:
            raise InventoryConflictError(f"Crew {name} already exists", code="DUPLICATE_CREW", details={"name": name})
        crew.name = name
    if req.is_active is not None:
        crew.is_active = req.is_active
    await session.commit()
    return {"success": True, "crew": crew_to_dict(crew)}

@router.get("/{crew_id:int}/inventory")
async def crew_inventory(crew_id: int, session: AsyncSession = Depends(get_session)):
    crew = await get_crew(session, crew_id)

    held = (await session.execute(
        select(CrewInventory, InventoryItem)
        .join(InventoryItem, InventoryItem.id == CrewInventory.item_id)
        .where(CrewInventory.crew_id == crew_id)
        .where(CrewInventory.quantity > 0)
        .order_by(InventoryItem.code.asc())
    )).all()
    batches = (await session.execute(
        select(InventoryBatch)
        .where(InventoryBatch.crew_id == crew_id)
        .order_by(InventoryBatch.batch_code.asc())
    )).scalars().all()
    instances = (await session.execute(
        select(EquipmentInstance)
        .where(EquipmentInstance.assigned_crew_id == crew_id)
        .order_by(EquipmentInstance.unique_id.asc())
    )).scalars().all()

    return {
        "success": True,
        "crew": crew_to_dict(crew),
        "inventory": [{
            "item_id": item.id,
            "code": item.code,
            "description": item.description,
            "unit": item.unit,
            "quantity": float(row.quantity),
            "last_update": row.last_update,
        } for row, item in held],
        "batches": [batch_to_dict(b) for b in batches],
        "instances": [instance_to_dict(i) for i in instances],
    }

@router.post("/orders")
async def create_order(req: WorkOrderCreateRequest, session: AsyncSession = Depends(get_session),
                       actor: Actor = Depends(get_actor)):
    ticket = req.ticket_id.strip()
    if (await session.execute(select(WorkOrder.id).where(WorkOrder.ticket_id == ticket))).scalar_one_or_none():
        raise InventoryConflictError(f"Work order {ticket} already exists", code="DUPLICATE_ORDER",
                                     details={"ticket_id": ticket})
    if req.crew_id is not None:
        await get_crew(session, req.crew_id)
    order = WorkOrder(ticket_id=ticket, crew_id=req.crew_id, status="pending")
    session.add(order)
    await session.commit()
    return {"success": True, "order": {"id": order.id, "ticket_id": order.ticket_id,
                                       "crew_id": order.crew_id, "status": order.status}}
