"""
Shared fixtures. Each test runs against its own SQLite file through aiosqlite.
"""
import os

# fieldops_core.db builds its engine at import time.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./fieldops_import.db")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fieldops_core.actors import Actor
from fieldops_core.batches import BatchCreateRequest, create_batch_txn
from fieldops_core.catalog import ItemCreateRequest, create_item_txn
from fieldops_core.db import get_session
from fieldops_core.instances import InstanceIn
from fieldops_core.models import (
    Base, Crew, CrewInventory, EquipmentInstance, InventoryBatch, InventoryItem,
    MovementHistoryEntry, WorkOrder,
)
from fieldops_core.movements import MovementData, apply_movement
from fieldops_core.stock import ZERO, qty

ADMIN = Actor(user_id=1, role="admin")
CLERK = Actor(user_id=2)


@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fieldops.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
async def client(session_factory):
    from main import app

    async def _session():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_session] = _session
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"X-Actor-Id": "1", "X-Actor-Role": "admin"}


@pytest.fixture
def clerk_headers():
    return {"X-Actor-Id": "2"}


class Factory:
    """Committed setup rows plus read helpers that always hit the database."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def item(self, code, item_type="material", initial_stock=0, unit="unidades",
                   minimum_stock=5, instances=()):
        item = await create_item_txn(
            ItemCreateRequest(
                code=code,
                description=f"{code} description",
                item_type=item_type,
                unit=unit,
                minimum_stock=minimum_stock,
                initial_stock=initial_stock,
                instances=[InstanceIn(unique_id=u) for u in instances],
            ),
            self.session,
            ADMIN,
        )
        await self.session.commit()
        return item

    async def crew(self, name, is_active=True):
        crew = Crew(name=name, is_active=is_active)
        self.session.add(crew)
        await self.session.commit()
        return crew

    async def order(self, ticket_id, crew_id=None):
        order = WorkOrder(ticket_id=ticket_id, crew_id=crew_id, status="pending")
        self.session.add(order)
        await self.session.commit()
        return order

    async def batch(self, code, item_id, quantity):
        batch = await create_batch_txn(
            BatchCreateRequest(batch_code=code, inventory_id=item_id, initial_quantity=quantity),
            self.session,
            ADMIN,
        )
        await self.session.commit()
        return batch

    async def move(self, action, items, actor=CLERK, **data):
        resp = await apply_movement(self.session, action, MovementData(items=items, **data), actor)
        await self.session.commit()
        return resp

    async def stock(self, item_id):
        v = (await self.session.execute(
            select(InventoryItem.current_stock).where(InventoryItem.id == item_id)
        )).scalar_one()
        return qty(v)

    async def held(self, crew_id, item_id):
        v = (await self.session.execute(
            select(CrewInventory.quantity)
            .where(CrewInventory.crew_id == crew_id)
            .where(CrewInventory.item_id == item_id)
        )).scalar_one_or_none()
        return qty(v) if v is not None else ZERO

    async def batch_row(self, code):
        return (await self.session.execute(
            select(InventoryBatch)
            .where(InventoryBatch.batch_code == code)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()

    async def instance(self, unique_id):
        return (await self.session.execute(
            select(EquipmentInstance)
            .where(EquipmentInstance.unique_id == unique_id)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()

    async def history(self, item_id=None):
        q = select(MovementHistoryEntry).order_by(MovementHistoryEntry.id.asc())
        if item_id is not None:
            q = q.where(MovementHistoryEntry.item_id == item_id)
        return list((await self.session.execute(q)).scalars().all())


@pytest.fixture
def make(session):
    return Factory(session)
