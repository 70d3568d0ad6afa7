from decimal import Decimal

import pytest

from fieldops_core.errors import (
    BatchStateError, InactiveCrewError, InsufficientStockError, InstanceNotInStockError,
    InvalidTransitionError, InventoryValidationError, UnauthorizedActorError,
)
from fieldops_core.instances import delete_instance_txn
from fieldops_core.movements import MovementData, apply_movement
from fieldops_core.reconciliation import reconcile_item

from conftest import ADMIN, CLERK


async def _rejected(session_factory, exc, action, items, actor=CLERK, **data):
    """Run a call that must fail in its own session, rolled back on close like a request."""
    async with session_factory() as s:
        with pytest.raises(exc):
            await apply_movement(s, action, MovementData(items=items, **data), actor)


# ---- example scenarios

async def test_restock_books_one_entry_row(make):
    cab = await make.item("CAB-001", unit="metros", minimum_stock=100)

    await make.move("restock", [{"inventory_id": cab.id, "quantity": 500}], reason="PO-123")

    assert await make.stock(cab.id) == Decimal("500.000")
    rows = await make.history(cab.id)
    assert [(r.movement_type, r.quantity_change, r.reason) for r in rows] == [
        ("entry", Decimal("500.000"), "PO-123"),
    ]


async def test_whole_batch_assign_partial_reject_and_return(make, session, session_factory):
    cab = await make.item("CAB-001", unit="metros", minimum_stock=100)
    c1 = await make.crew("C1")
    await make.batch("BOB-01", cab.id, 500)

    await make.move("assign", [{"inventory_id": cab.id, "quantity": 500, "batch_code": "BOB-01"}], crew_id=c1.id)

    b = await make.batch_row("BOB-01")
    assert (b.location, b.crew_id, b.current_quantity) == ("crew", c1.id, Decimal("500.000"))
    assert await make.held(c1.id, cab.id) == Decimal("500.000")
    assert await make.stock(cab.id) == Decimal("0.000")
    assignment = [r for r in await make.history(cab.id) if r.movement_type == "assignment"]
    assert len(assignment) == 1
    assert assignment[0].batch_code == "BOB-01"
    assert assignment[0].quantity_change == Decimal("-500.000")

    # partial assign of a batch already out with the crew
    before = len(await make.history(cab.id))
    await _rejected(session_factory, BatchStateError, "assign",
                    [{"inventory_id": cab.id, "quantity": 300, "batch_code": "BOB-01"}], crew_id=c1.id)
    b = await make.batch_row("BOB-01")
    assert (b.location, b.crew_id, b.current_quantity) == ("crew", c1.id, Decimal("500.000"))
    assert len(await make.history(cab.id)) == before

    await make.move("return", [{"inventory_id": cab.id, "quantity": 500, "batch_code": "bob-01"}],
                    crew_id=c1.id, reason="unused")

    b = await make.batch_row("BOB-01")
    assert (b.location, b.crew_id) == ("warehouse", None)
    assert await make.held(c1.id, cab.id) == Decimal("0.000")
    assert await make.stock(cab.id) == Decimal("500.000")
    returns = [r for r in await make.history(cab.id) if r.movement_type == "return"]
    assert len(returns) == 1 and returns[0].quantity_change == Decimal("500.000")
    assert (await reconcile_item(session, cab.id))["consistent"]


async def test_assigned_instance_cannot_be_deleted(make, session_factory):
    router = await make.item("EQ-ROUTER", item_type="equipment", instances=["ONT-99"])
    c2 = await make.crew("C2")
    assert (await make.instance("ONT-99")).status == "in-stock"

    await make.move("assign", [{"inventory_id": router.id, "quantity": 1, "instance_ids": ["ONT-99"]}],
                    crew_id=c2.id)

    inst = await make.instance("ONT-99")
    assert inst.status == "assigned"
    assert inst.assigned_crew_id == c2.id

    async with session_factory() as s:
        with pytest.raises(InstanceNotInStockError):
            await delete_instance_txn("ONT-99", s, ADMIN)
    assert (await make.instance("ONT-99")).status == "assigned"
    assert await make.stock(router.id) == Decimal("0.000")
    assert await make.held(c2.id, router.id) == Decimal("1.000")


async def test_second_line_short_leaves_first_line_untouched(make, session_factory):
    a = await make.item("A-1", initial_stock=10)
    b = await make.item("B-1", initial_stock=3)
    crew = await make.crew("C1")

    await _rejected(session_factory, InsufficientStockError, "assign", [
        {"inventory_id": a.id, "quantity": 4},
        {"inventory_id": b.id, "quantity": 5},
    ], crew_id=crew.id)

    assert await make.stock(a.id) == Decimal("10.000")
    assert await make.stock(b.id) == Decimal("3.000")
    assert await make.held(crew.id, a.id) == Decimal("0.000")


# ---- all or nothing

def _lines(good_a, good_b, bad, position):
    lines = [good_a, good_b]
    lines.insert(position, bad)
    return lines


@pytest.mark.parametrize("position", [0, 1, 2])
async def test_failing_line_at_any_position_changes_nothing(make, session_factory, position):
    cable = await make.item("CAB-1", unit="metros", initial_stock=20)
    ont = await make.item("ONT-1", item_type="equipment", instances=["ONT-A", "ONT-B"])
    crew = await make.crew("C1")
    await make.batch("BOB-1", cable.id, 100)
    history_before = len(await make.history())

    good_a = {"inventory_id": cable.id, "quantity": 100, "batch_code": "BOB-1"}
    good_b = {"inventory_id": ont.id, "quantity": 2, "instance_ids": ["ONT-A", "ONT-B"]}
    bad = {"inventory_id": cable.id, "quantity": 21}

    await _rejected(session_factory, InsufficientStockError, "assign", _lines(good_a, good_b, bad, position),
                    crew_id=crew.id)

    assert await make.stock(cable.id) == Decimal("120.000")
    assert await make.stock(ont.id) == Decimal("2.000")
    assert (await make.batch_row("BOB-1")).location == "warehouse"
    assert (await make.instance("ONT-A")).status == "in-stock"
    assert (await make.instance("ONT-B")).status == "in-stock"
    assert await make.held(crew.id, cable.id) == Decimal("0.000")
    assert len(await make.history()) == history_before


async def test_lines_on_same_item_are_checked_together(make, session_factory):
    item = await make.item("A-1", initial_stock=10)
    crew = await make.crew("C1")

    await _rejected(session_factory, InsufficientStockError, "assign", [
        {"inventory_id": item.id, "quantity": 6},
        {"inventory_id": item.id, "quantity": 5},
    ], crew_id=crew.id)
    assert await make.stock(item.id) == Decimal("10.000")

    await make.move("assign", [
        {"inventory_id": item.id, "quantity": 6},
        {"inventory_id": item.id, "quantity": 4},
    ], crew_id=crew.id)
    assert await make.stock(item.id) == Decimal("0.000")
    assert await make.held(crew.id, item.id) == Decimal("10.000")


# ---- assign

async def test_plain_assign_cannot_draw_on_batched_stock(make, session_factory):
    cable = await make.item("CAB-1", unit="metros", initial_stock=50)
    crew = await make.crew("C1")
    await make.batch("BOB-1", cable.id, 300)
    assert await make.stock(cable.id) == Decimal("350.000")

    await _rejected(session_factory, InsufficientStockError, "assign",
                    [{"inventory_id": cable.id, "quantity": 51}], crew_id=crew.id)
    await make.move("assign", [{"inventory_id": cable.id, "quantity": 50}], crew_id=crew.id)
    assert await make.stock(cable.id) == Decimal("300.000")


async def test_batch_assign_requires_exact_quantity(make, session_factory):
    cable = await make.item("CAB-1", unit="metros")
    crew = await make.crew("C1")
    await make.batch("BOB-1", cable.id, 300)

    await _rejected(session_factory, BatchStateError, "assign",
                    [{"inventory_id": cable.id, "quantity": 299, "batch_code": "BOB-1"}], crew_id=crew.id)
    await _rejected(session_factory, BatchStateError, "assign", [
        {"inventory_id": cable.id, "quantity": 300, "batch_code": "BOB-1"},
        {"inventory_id": cable.id, "quantity": 300, "batch_code": "BOB-1"},
    ], crew_id=crew.id)
    assert (await make.batch_row("BOB-1")).location == "warehouse"


async def test_batch_return_must_be_whole_and_from_its_holder(make, session_factory):
    cable = await make.item("CAB-1", unit="metros")
    c1 = await make.crew("C1")
    c2 = await make.crew("C2")
    await make.batch("BOB-1", cable.id, 300)
    await make.move("assign", [{"inventory_id": cable.id, "quantity": 300, "batch_code": "BOB-1"}], crew_id=c1.id)
    before = len(await make.history(cable.id))

    await _rejected(session_factory, BatchStateError, "return",
                    [{"inventory_id": cable.id, "quantity": 120, "batch_code": "BOB-1"}],
                    crew_id=c1.id, reason="end of shift")
    await _rejected(session_factory, BatchStateError, "return",
                    [{"inventory_id": cable.id, "quantity": 300, "batch_code": "BOB-1"}],
                    crew_id=c2.id, reason="end of shift")

    b = await make.batch_row("BOB-1")
    assert (b.location, b.crew_id, b.current_quantity) == ("crew", c1.id, Decimal("300.000"))
    assert await make.held(c1.id, cable.id) == Decimal("300.000")
    assert await make.held(c2.id, cable.id) == Decimal("0.000")
    assert await make.stock(cable.id) == Decimal("0.000")
    assert len(await make.history(cable.id)) == before


async def test_batch_of_another_item_is_rejected(make, session_factory):
    cable = await make.item("CAB-1", unit="metros")
    other = await make.item("CAB-2", unit="metros")
    crew = await make.crew("C1")
    await make.batch("BOB-1", other.id, 100)

    await _rejected(session_factory, BatchStateError, "assign",
                    [{"inventory_id": cable.id, "quantity": 100, "batch_code": "BOB-1"}], crew_id=crew.id)


async def test_assign_to_inactive_crew_is_rejected(make, session_factory):
    item = await make.item("A-1", initial_stock=10)
    crew = await make.crew("Old crew", is_active=False)

    await _rejected(session_factory, InactiveCrewError, "assign", [{"inventory_id": item.id, "quantity": 1}],
                    crew_id=crew.id)


async def test_equipment_moves_by_instance_only(make, session_factory):
    ont = await make.item("ONT-1", item_type="equipment", instances=["ONT-A"])
    crew = await make.crew("C1")

    await _rejected(session_factory, InventoryValidationError, "assign", [{"inventory_id": ont.id, "quantity": 1}],
                    crew_id=crew.id)
    await _rejected(session_factory, InventoryValidationError, "assign",
                    [{"inventory_id": ont.id, "quantity": 2, "instance_ids": ["ONT-A"]}], crew_id=crew.id)


async def test_instance_assigned_elsewhere_cannot_be_reassigned(make, session_factory):
    ont = await make.item("ONT-1", item_type="equipment", instances=["ONT-A"])
    c1 = await make.crew("C1")
    c2 = await make.crew("C2")
    await make.move("assign", [{"inventory_id": ont.id, "quantity": 1, "instance_ids": ["ONT-A"]}], crew_id=c1.id)

    await _rejected(session_factory, InvalidTransitionError, "assign",
                    [{"inventory_id": ont.id, "quantity": 1, "instance_ids": ["ONT-A"]}], crew_id=c2.id)
    await _rejected(session_factory, InvalidTransitionError, "return",
                    [{"inventory_id": ont.id, "quantity": 1, "instance_ids": ["ONT-A"]}],
                    crew_id=c2.id, reason="wrong crew")
    assert (await make.instance("ONT-A")).assigned_crew_id == c1.id


async def test_equipment_line_writes_one_aggregate_row(make):
    ont = await make.item("ONT-1", item_type="equipment", instances=["ONT-A", "ONT-B", "ONT-C"])
    crew = await make.crew("C1")

    resp = await make.move("assign", [
        {"inventory_id": ont.id, "quantity": 2, "instance_ids": ["ont-a", "ONT-C"]},
    ], crew_id=crew.id)

    assert len(resp["history_ids"]) == 1
    row = [r for r in await make.history(ont.id) if r.movement_type == "assignment"][0]
    assert row.quantity_change == Decimal("-2.000")
    assert row.instance_ids == ["ONT-A", "ONT-C"]
    assert await make.stock(ont.id) == Decimal("1.000")
    assert await make.held(crew.id, ont.id) == Decimal("2.000")


# ---- return / usage

async def test_return_requires_reason(make, session_factory):
    item = await make.item("A-1", initial_stock=10)
    crew = await make.crew("C1")
    await make.move("assign", [{"inventory_id": item.id, "quantity": 5}], crew_id=crew.id)

    await _rejected(session_factory, InventoryValidationError, "return", [{"inventory_id": item.id, "quantity": 5}],
                    crew_id=crew.id, reason="  ")
    await _rejected(session_factory, InsufficientStockError, "return", [{"inventory_id": item.id, "quantity": 6}],
                    crew_id=crew.id, reason="leftover")
    await make.move("return", [{"inventory_id": item.id, "quantity": 2}], crew_id=crew.id, reason="leftover")
    assert await make.stock(item.id) == Decimal("7.000")
    assert await make.held(crew.id, item.id) == Decimal("3.000")


async def test_usage_consumes_crew_stock_against_order(make, session, session_factory):
    item = await make.item("CON-1", initial_stock=10)
    crew = await make.crew("C1")
    order = await make.order("T-100", crew.id)
    await make.move("assign", [{"inventory_id": item.id, "quantity": 5}], crew_id=crew.id)

    await _rejected(session_factory, InventoryValidationError, "usage_order", [{"inventory_id": item.id, "quantity": 1}],
                    crew_id=crew.id)
    await make.move("usage_order", [{"inventory_id": item.id, "quantity": 3}], crew_id=crew.id, order_id=order.id)

    assert await make.held(crew.id, item.id) == Decimal("2.000")
    assert await make.stock(item.id) == Decimal("5.000")
    use = [r for r in await make.history(item.id) if r.movement_type == "usage_order"][0]
    assert (use.quantity_change, use.order_id, use.crew_id) == (Decimal("-3.000"), order.id, crew.id)
    assert (await reconcile_item(session, item.id))["consistent"]


async def test_usage_can_cut_a_batch_partially(make, session, session_factory):
    cable = await make.item("CAB-1", unit="metros")
    crew = await make.crew("C1")
    order = await make.order("T-100", crew.id)
    await make.batch("BOB-1", cable.id, 100)
    await make.move("assign", [{"inventory_id": cable.id, "quantity": 100, "batch_code": "BOB-1"}], crew_id=crew.id)

    await make.move("usage_order", [{"inventory_id": cable.id, "quantity": 40, "batch_code": "BOB-1"}],
                    crew_id=crew.id, order_id=order.id)
    b = await make.batch_row("BOB-1")
    assert (b.current_quantity, b.status, b.location) == (Decimal("60.000"), "active", "crew")
    assert await make.held(crew.id, cable.id) == Decimal("60.000")

    await _rejected(session_factory, InsufficientStockError, "usage_order",
                    [{"inventory_id": cable.id, "quantity": 61, "batch_code": "BOB-1"}],
                    crew_id=crew.id, order_id=order.id)

    await make.move("usage_order", [{"inventory_id": cable.id, "quantity": 60, "batch_code": "BOB-1"}],
                    crew_id=crew.id, order_id=order.id)
    b = await make.batch_row("BOB-1")
    assert (b.current_quantity, b.status) == (Decimal("0.000"), "depleted")
    assert (await reconcile_item(session, cable.id))["consistent"]


async def test_install_instance_on_order(make, session_factory):
    ont = await make.item("ONT-1", item_type="equipment", instances=["ONT-A"])
    crew = await make.crew("C1")
    order = await make.order("T-7", crew.id)
    await make.move("assign", [{"inventory_id": ont.id, "quantity": 1, "instance_ids": ["ONT-A"]}], crew_id=crew.id)

    await make.move("usage_order", [{"inventory_id": ont.id, "quantity": 1, "instance_ids": ["ONT-A"]}],
                    crew_id=crew.id, order_id=order.id, install_location="Av. Central 12")

    inst = await make.instance("ONT-A")
    assert inst.status == "installed"
    assert (inst.installed_order_id, inst.install_location) == (order.id, "Av. Central 12")
    assert inst.assigned_crew_id is None
    assert await make.held(crew.id, ont.id) == Decimal("0.000")

    await _rejected(session_factory, InvalidTransitionError, "return",
                    [{"inventory_id": ont.id, "quantity": 1, "instance_ids": ["ONT-A"]}],
                    crew_id=crew.id, reason="back")


# ---- restock / adjustment

async def test_restock_rejects_non_positive_and_equipment(make, session_factory):
    item = await make.item("A-1")
    ont = await make.item("ONT-1", item_type="equipment")

    await _rejected(session_factory, InventoryValidationError, "restock", [{"inventory_id": item.id, "quantity": 0}],
                    reason="PO-1")
    await _rejected(session_factory, InventoryValidationError, "restock", [{"inventory_id": item.id, "quantity": 5}])
    await _rejected(session_factory, InventoryValidationError, "restock", [{"inventory_id": ont.id, "quantity": 1}],
                    reason="PO-1")
    assert await make.stock(item.id) == Decimal("0.000")


async def test_adjustment_needs_admin(make, session_factory):
    item = await make.item("A-1", initial_stock=10)

    await _rejected(session_factory, UnauthorizedActorError, "adjustment", [{"inventory_id": item.id, "quantity": -2}],
                    reason="count")
    await make.move("adjustment", [{"inventory_id": item.id, "quantity": -2}], actor=ADMIN, reason="count")
    assert await make.stock(item.id) == Decimal("8.000")
    assert (await make.history(item.id))[-1].performed_by == ADMIN.user_id


async def test_adjustment_cannot_go_negative_or_eat_batches(make, session, session_factory):
    cable = await make.item("CAB-1", unit="metros", initial_stock=5)
    crew = await make.crew("C1")
    await make.batch("BOB-1", cable.id, 100)

    await _rejected(session_factory, InsufficientStockError, "adjustment", [{"inventory_id": cable.id, "quantity": -6}],
                    actor=ADMIN, reason="count")
    await _rejected(session_factory, InsufficientStockError, "adjustment", [{"inventory_id": cable.id, "quantity": -1}],
                    actor=ADMIN, reason="count", crew_id=crew.id)

    await make.move("adjustment", [{"inventory_id": cable.id, "quantity": 2}], actor=ADMIN,
                    reason="found", crew_id=crew.id)
    assert await make.held(crew.id, cable.id) == Decimal("2.000")
    assert await make.stock(cable.id) == Decimal("105.000")
    assert (await reconcile_item(session, cable.id))["consistent"]


async def test_line_with_both_batch_and_instances_is_invalid():
    with pytest.raises(ValueError):
        MovementData(items=[{"inventory_id": 1, "quantity": 1, "batch_code": "B", "instance_ids": ["X"]}])
