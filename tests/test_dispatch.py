"""Tests for direct and third-party dispatch and shipment tracking."""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from trs_erp import constants, core_logic, data_manager, dispatch, fulfillment

ShipStatus = constants.ShipmentStatus
SalesStatus = constants.SalesOrderStatus

DIRECT = dispatch.DirectDispatchCommand(
    vehicle_number="12가3456",
    driver_name="Kim Driver",
    driver_phone="010-1234-5678",
    eta_at=datetime(2025, 6, 1, 6, 0, tzinfo=UTC),
)


@pytest.fixture
def sales_order(context):
    sheet = data_manager.OrderSheetRow(
        id="OS1",
        customer_org_id="ORG-1",
        customer_name="Seoul Butchery",
        status=constants.OrderSheetStatus.CONFIRMED.value,
        access_token="tok",
        is_guest=False,
    )
    item = data_manager.OrderSheetItemRow(
        id="OS1-001",
        order_sheet_id="OS1",
        line_no=1,
        product_id="P-1",
        product_name="Brisket",
        unit="kg",
        qty_requested=Decimal("50"),
        unit_price=Decimal("1000"),
        box_to_kg_factor=Decimal("1"),
        estimated_kg=Decimal("50"),
        amount=Decimal("50000"),
    )
    return fulfillment.create_sales_order_from_sheet(context, sheet, [item])


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def test_dispatch_direct_creates_preparing_shipment(context, sales_order, operator):
    shipment = dispatch.dispatch_direct(context, sales_order.id, DIRECT, operator)

    assert shipment.status == ShipStatus.PREPARING.value
    assert shipment.dispatch_mode == constants.DispatchMode.DIRECT.value
    assert shipment.carrier_org_id is None
    assert shipment.dispatcher_token is None
    assert shipment.vehicle_number == "12가3456"
    assert dispatch.get_shipment(context, shipment.id) == shipment
    assert fulfillment.get_sales_order(context, sales_order.id).active_shipment_id == shipment.id


def test_dispatch_direct_requires_vehicle_details(context, sales_order):
    command = dispatch.DirectDispatchCommand(vehicle_number="", driver_name="Kim", driver_phone="010")

    with pytest.raises(core_logic.ValidationError):
        dispatch.dispatch_direct(context, sales_order.id, command)
    assert dispatch.get_active_shipment(context, sales_order.id) is None


def test_dispatch_via_3pl_mints_token_and_notifies_carrier(context, sales_order, notifier):
    requested_at = datetime(2025, 6, 1, 4, 0, tzinfo=UTC)

    shipment = dispatch.dispatch_via_3pl(context, sales_order.id, "CARRIER-1", requested_at)

    assert shipment.status == ShipStatus.PREPARING.value
    assert shipment.carrier_org_id == "CARRIER-1"
    assert shipment.dispatcher_token
    assert shipment.vehicle_number is None
    assert shipment.eta_requested_at == requested_at
    _, recipient, payload = notifier.messages[-1]
    assert recipient == "CARRIER-1"
    assert payload["dispatcher_token"] == shipment.dispatcher_token


def test_second_active_shipment_is_rejected(context, sales_order):
    first = dispatch.dispatch_direct(context, sales_order.id, DIRECT)

    with pytest.raises(core_logic.DuplicateDispatch):
        dispatch.dispatch_via_3pl(context, sales_order.id, "CARRIER-1")
    dispatch.advance_shipment_status(context, first.id, ShipStatus.IN_TRANSIT)
    with pytest.raises(core_logic.DuplicateDispatch):
        dispatch.dispatch_direct(context, sales_order.id, DIRECT)

    assert [s.id for s in dispatch.list_shipments_for_sales_order(context, sales_order.id)] == [first.id]


def test_racing_dispatches_create_one_shipment(context, sales_order, monkeypatch):
    """Both callers pass the pre-check; the guarded batch lets only one through."""

    monkeypatch.setattr(dispatch, "_ensure_dispatchable", lambda _context, _order: None)
    barrier = threading.Barrier(2)
    outcomes = []

    def attempt() -> None:
        barrier.wait()
        try:
            outcomes.append(dispatch.dispatch_direct(context, sales_order.id, DIRECT))
        except core_logic.DuplicateDispatch as exc:
            outcomes.append(exc)

    threads = [threading.Thread(target=attempt) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    shipments = [o for o in outcomes if isinstance(o, data_manager.ShipmentRow)]
    assert len(shipments) == 1
    assert len(dispatch.list_shipments_for_sales_order(context, sales_order.id)) == 1


def test_cancelled_sales_order_cannot_be_dispatched(context, sales_order):
    fulfillment.cancel_sales_order(context, sales_order.id)

    with pytest.raises(core_logic.InvalidTransition):
        dispatch.dispatch_direct(context, sales_order.id, DIRECT)


def test_dispatch_unknown_sales_order_raises_not_found(context):
    with pytest.raises(core_logic.NotFound):
        dispatch.dispatch_direct(context, "SO-missing", DIRECT)


# ---------------------------------------------------------------------------
# Tracking
# ---------------------------------------------------------------------------


def test_shipment_progress_drives_sales_order_status(context, sales_order, notifier):
    shipment = dispatch.dispatch_direct(context, sales_order.id, DIRECT)

    in_transit = dispatch.advance_shipment_status(context, shipment.id, ShipStatus.IN_TRANSIT)
    assert in_transit.status == ShipStatus.IN_TRANSIT.value
    assert fulfillment.get_sales_order(context, sales_order.id).status == SalesStatus.SHIPPED.value

    delivered = dispatch.advance_shipment_status(context, shipment.id, ShipStatus.DELIVERED)
    order = fulfillment.get_sales_order(context, sales_order.id)
    assert delivered.status == ShipStatus.DELIVERED.value
    assert order.status == SalesStatus.COMPLETED.value
    assert order.active_shipment_id is None
    assert dispatch.get_active_shipment(context, sales_order.id) is None
    assert [payload["status"] for _, _, payload in notifier.messages if payload["event"] == "shipment_status_changed"] == [
        "IN_TRANSIT",
        "DELIVERED",
    ]


@pytest.mark.parametrize(
    "start, target",
    [
        (ShipStatus.PREPARING, ShipStatus.DELIVERED),
        (ShipStatus.PREPARING, ShipStatus.PREPARING),
        (ShipStatus.IN_TRANSIT, ShipStatus.PREPARING),
    ],
)
def test_shipment_transitions_cannot_skip_or_reverse(context, sales_order, start, target):
    shipment = dispatch.dispatch_direct(context, sales_order.id, DIRECT)
    if start == ShipStatus.IN_TRANSIT:
        dispatch.advance_shipment_status(context, shipment.id, ShipStatus.IN_TRANSIT)

    with pytest.raises(core_logic.InvalidTransition):
        dispatch.advance_shipment_status(context, shipment.id, target)
    assert dispatch.get_shipment(context, shipment.id).status == start.value


def test_delivered_shipment_is_terminal(context, sales_order):
    shipment = dispatch.dispatch_direct(context, sales_order.id, DIRECT)
    dispatch.advance_shipment_status(context, shipment.id, ShipStatus.IN_TRANSIT)
    dispatch.advance_shipment_status(context, shipment.id, ShipStatus.DELIVERED)

    with pytest.raises(core_logic.InvalidTransition):
        dispatch.advance_shipment_status(context, shipment.id, ShipStatus.DELIVERED)


def test_stale_shipment_read_raises_concurrent_modification(context, sales_order, monkeypatch):
    shipment = dispatch.dispatch_direct(context, sales_order.id, DIRECT)
    context.store.update(constants.Collection.SHIPMENTS, shipment.id, {"status": ShipStatus.IN_TRANSIT.value})
    monkeypatch.setattr(dispatch, "get_shipment", lambda _context, _shipment_id: shipment)

    with pytest.raises(core_logic.ConcurrentModification):
        dispatch.advance_shipment_status(context, shipment.id, ShipStatus.IN_TRANSIT)


# ---------------------------------------------------------------------------
# Carrier self-assignment
# ---------------------------------------------------------------------------


def test_carrier_submits_details_and_starts_shipment(context, sales_order):
    shipment = dispatch.dispatch_via_3pl(context, sales_order.id, "CARRIER-1")

    updated = dispatch.submit_dispatch_details(
        context, shipment.dispatcher_token, "34나5678", "Lee Driver", "010-9876-5432"
    )

    assert updated.status == ShipStatus.IN_TRANSIT.value
    assert (updated.vehicle_number, updated.driver_name, updated.driver_phone) == (
        "34나5678",
        "Lee Driver",
        "010-9876-5432",
    )
    assert fulfillment.get_sales_order(context, sales_order.id).status == SalesStatus.SHIPPED.value


def test_carrier_cannot_resubmit_after_departure(context, sales_order):
    shipment = dispatch.dispatch_via_3pl(context, sales_order.id, "CARRIER-1")
    dispatch.submit_dispatch_details(context, shipment.dispatcher_token, "34나5678", "Lee", "010")

    with pytest.raises(core_logic.InvalidTransition):
        dispatch.submit_dispatch_details(context, shipment.dispatcher_token, "99다0000", "Park", "011")
    assert dispatch.get_shipment(context, shipment.id).vehicle_number == "34나5678"


def test_carrier_details_require_all_fields(context, sales_order):
    shipment = dispatch.dispatch_via_3pl(context, sales_order.id, "CARRIER-1")

    with pytest.raises(core_logic.ValidationError):
        dispatch.submit_dispatch_details(context, shipment.dispatcher_token, "34나5678", "", "010")
    assert dispatch.get_shipment(context, shipment.id).status == ShipStatus.PREPARING.value


def test_resolve_shipment_by_dispatcher_token(context, sales_order):
    shipment = dispatch.dispatch_via_3pl(context, sales_order.id, "CARRIER-1")

    assert dispatch.resolve_shipment_by_dispatcher_token(context, shipment.dispatcher_token).id == shipment.id
    with pytest.raises(core_logic.NotFound):
        dispatch.resolve_shipment_by_dispatcher_token(context, "bogus")
