from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops_core.db import get_session
from fieldops_core.ledger import entry_to_dict, query

router = APIRouter(prefix="/inventory", tags=["history"])

MovementType = Literal["entry", "assignment", "return", "usage_order", "adjustment"]

@router.get("/history")
async def list_history(
    item_id: int | None = None,
    crew_id: int | None = None,
    order_id: int | None = None,
    movement_type: MovementType | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
):
    q = query(
        session,
        item_id=item_id,
        crew_id=crew_id,
        order_id=order_id,
        movement_type=movement_type,
        start_date=start_date,
        end_date=end_date,
    )
    total = await q.count()
    rows = await q.page(page, limit)

    return {
        "success": True,
        "history": [entry_to_dict(r) for r in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }
