"""Shipment creation and tracking for confirmed sales orders.

A sales order is dispatched either directly (the operator already knows the
vehicle and driver) or through a third-party carrier that fills in those
details later through its dispatcher token. Exclusivity is enforced on the
sales order itself: creating a shipment also sets ``active_shipment_id`` in
the same batch, guarded on the field still being empty, so two racing
dispatches cannot both succeed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from . import data_manager, log
from .access import resolve_shipment
from .constants import (
    ACTIVE_SHIPMENT_STATUSES,
    Collection,
    DispatchMode,
    SalesOrderStatus,
    ShipmentStatus,
)
from .core_logic import (
    Actor,
    ConcurrentModification,
    DuplicateDispatch,
    InvalidTransition,
    RuntimeContext,
    ValidationError,
    generate_access_token,
    generate_document_id,
    load_record,
    require_text,
    send_notification,
    utc_now,
)
from .fulfillment import get_sales_order


DISPATCHABLE_STATUSES = frozenset({SalesOrderStatus.CREATED, SalesOrderStatus.PO_GENERATED})

NEXT_SHIPMENT_STATUS: Dict[ShipmentStatus, ShipmentStatus] = {
    ShipmentStatus.PREPARING: ShipmentStatus.IN_TRANSIT,
    ShipmentStatus.IN_TRANSIT: ShipmentStatus.DELIVERED,
}


@dataclass(frozen=True)
class DirectDispatchCommand:
    """Vehicle and driver details an operator supplies for a direct dispatch."""

    vehicle_number: str
    driver_name: str
    driver_phone: str
    eta_at: Optional[datetime] = None


def get_shipment(context: RuntimeContext, shipment_id: str) -> data_manager.ShipmentRow:
    return load_record(context, Collection.SHIPMENTS.value, data_manager.ShipmentRow, shipment_id)


def list_shipments_for_sales_order(context: RuntimeContext, sales_order_id: str) -> List[data_manager.ShipmentRow]:
    documents = context.store.query(Collection.SHIPMENTS.value, source_sales_order_id=sales_order_id)
    return [data_manager.deserialize_record(data_manager.ShipmentRow, doc) for doc in documents]


def get_active_shipment(context: RuntimeContext, sales_order_id: str) -> Optional[data_manager.ShipmentRow]:
    """Return the PREPARING or IN_TRANSIT shipment of a sales order, if any."""

    for shipment in list_shipments_for_sales_order(context, sales_order_id):
        if ShipmentStatus(shipment.status) in ACTIVE_SHIPMENT_STATUSES:
            return shipment
    return None


def resolve_shipment_by_dispatcher_token(context: RuntimeContext, dispatcher_token: str) -> data_manager.ShipmentRow:
    """Open the shipment a carrier was invited to complete.

    Raises:
        NotFound: If no shipment carries ``dispatcher_token``.
    """
    return resolve_shipment(context, dispatcher_token)


def _ensure_dispatchable(context: RuntimeContext, order: data_manager.SalesOrderRow) -> None:
    if order.active_shipment_id or get_active_shipment(context, order.id) is not None:
        log.warning("Rejected second dispatch for sales order '%s'", order.id)
        raise DuplicateDispatch(f"Sales order {order.id} already has an active shipment")
    if SalesOrderStatus(order.status) not in DISPATCHABLE_STATUSES:
        log.warning("Rejected dispatch for sales order '%s' in status %s", order.id, order.status)
        raise InvalidTransition(f"Sales order {order.id} cannot be dispatched in status {order.status}")


def _create_shipment(
    context: RuntimeContext,
    order: data_manager.SalesOrderRow,
    shipment: data_manager.ShipmentRow,
) -> data_manager.ShipmentRow:
    unique_on = ("dispatcher_token",) if shipment.dispatcher_token else ()
    try:
        context.store.apply_batch(
            [
                data_manager.WriteOp.create(
                    Collection.SHIPMENTS.value, data_manager.serialize_record(shipment), unique_on=unique_on
                ),
                data_manager.WriteOp.update(
                    Collection.SALES_ORDERS.value, order.id, {"active_shipment_id": shipment.id}
                ),
            ],
            expected=data_manager.Guard(
                Collection.SALES_ORDERS.value,
                order.id,
                {"active_shipment_id": None, "status": order.status},
            ),
        )
    except data_manager.WriteConflict as exc:
        latest = get_sales_order(context, order.id)
        if latest.active_shipment_id:
            log.warning("Sales order '%s' was dispatched concurrently", order.id)
            raise DuplicateDispatch(f"Sales order {order.id} already has an active shipment") from exc
        raise ConcurrentModification(str(exc)) from exc
    return shipment


def dispatch_direct(
    context: RuntimeContext,
    sales_order_id: str,
    command: DirectDispatchCommand,
    actor: Optional[Actor] = None,
) -> data_manager.ShipmentRow:
    """Create a PREPARING shipment with vehicle and driver already assigned.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        sales_order_id (str): Sales order being shipped.
        command (DirectDispatchCommand): Vehicle, driver and ETA.
        actor (Actor | None): Operator performing the dispatch, for the log.

    Returns:
        data_manager.ShipmentRow: The new shipment; ``carrier_org_id`` is unset.

    Raises:
        DuplicateDispatch: If the order already has an active shipment.
        InvalidTransition: If the order is not CREATED or PO_GENERATED.
        ValidationError: If a vehicle or driver field is blank.
    """
    order = get_sales_order(context, sales_order_id)
    _ensure_dispatchable(context, order)

    now = utc_now()
    shipment = data_manager.ShipmentRow(
        id=generate_document_id("SH", when=now),
        source_sales_order_id=order.id,
        dispatch_mode=DispatchMode.DIRECT.value,
        status=ShipmentStatus.PREPARING.value,
        vehicle_number=require_text(command.vehicle_number, "vehicle_number"),
        driver_name=require_text(command.driver_name, "driver_name"),
        driver_phone=require_text(command.driver_phone, "driver_phone"),
        eta_at=command.eta_at,
        created_at=now,
        updated_at=now,
    )
    _create_shipment(context, order, shipment)
    log.info(
        "Direct shipment '%s' created for sales order '%s' (vehicle=%s, by=%s)",
        shipment.id,
        order.id,
        shipment.vehicle_number,
        actor.id if actor is not None else "-",
    )
    return shipment


def dispatch_via_3pl(
    context: RuntimeContext,
    sales_order_id: str,
    carrier_org_id: str,
    eta_requested_at: Optional[datetime] = None,
    actor: Optional[Actor] = None,
) -> data_manager.ShipmentRow:
    """Hand a sales order to a third-party carrier.

    A dispatcher token is minted and sent to the carrier, who later supplies
    the vehicle and driver through :func:`submit_dispatch_details`.
    """
    carrier_org_id = require_text(carrier_org_id, "carrier_org_id")
    order = get_sales_order(context, sales_order_id)
    _ensure_dispatchable(context, order)

    now = utc_now()
    shipment = data_manager.ShipmentRow(
        id=generate_document_id("SH", when=now),
        source_sales_order_id=order.id,
        dispatch_mode=DispatchMode.THIRD_PARTY.value,
        status=ShipmentStatus.PREPARING.value,
        carrier_org_id=carrier_org_id,
        eta_requested_at=eta_requested_at,
        dispatcher_token=generate_access_token(),
        created_at=now,
        updated_at=now,
    )
    _create_shipment(context, order, shipment)
    log.info(
        "3PL shipment '%s' requested from carrier '%s' for sales order '%s' (by=%s)",
        shipment.id,
        carrier_org_id,
        order.id,
        actor.id if actor is not None else "-",
    )
    send_notification(
        context,
        carrier_org_id,
        {
            "event": "dispatch_requested",
            "shipment_id": shipment.id,
            "dispatcher_token": shipment.dispatcher_token,
            "eta_requested_at": eta_requested_at.isoformat() if eta_requested_at else None,
        },
    )
    return shipment


def _transition_shipment(
    context: RuntimeContext,
    shipment: data_manager.ShipmentRow,
    target: ShipmentStatus,
    fields: Optional[Dict[str, Any]] = None,
) -> data_manager.ShipmentRow:
    current = ShipmentStatus(shipment.status)
    if NEXT_SHIPMENT_STATUS.get(current) != target:
        log.warning("Rejected shipment '%s' transition %s -> %s", shipment.id, current.value, target.value)
        raise InvalidTransition(f"Shipment {shipment.id} cannot move from {current.value} to {target.value}")

    order = get_sales_order(context, shipment.source_sales_order_id)
    order_update: Dict[str, Any] = {}
    if target == ShipmentStatus.IN_TRANSIT and SalesOrderStatus(order.status) in DISPATCHABLE_STATUSES:
        order_update["status"] = SalesOrderStatus.SHIPPED.value
    elif target == ShipmentStatus.DELIVERED:
        order_update = {"status": SalesOrderStatus.COMPLETED.value, "active_shipment_id": None}

    operations = [
        data_manager.WriteOp.update(
            Collection.SHIPMENTS.value,
            shipment.id,
            {**(fields or {}), "status": target.value, "updated_at": utc_now()},
        )
    ]
    if order_update:
        operations.append(data_manager.WriteOp.update(Collection.SALES_ORDERS.value, order.id, order_update))
    try:
        context.store.apply_batch(
            operations,
            expected=data_manager.Guard(Collection.SHIPMENTS.value, shipment.id, {"status": current.value}),
        )
    except data_manager.WriteConflict as exc:
        log.warning("Concurrent modification on shipment '%s': %s", shipment.id, exc)
        raise ConcurrentModification(str(exc)) from exc

    log.info("Shipment '%s' moved %s -> %s", shipment.id, current.value, target.value)
    send_notification(
        context,
        order.customer_org_id or order.customer_name,
        {
            "event": "shipment_status_changed",
            "shipment_id": shipment.id,
            "sales_order_id": order.id,
            "status": target.value,
        },
    )
    return get_shipment(context, shipment.id)


def advance_shipment_status(
    context: RuntimeContext,
    shipment_id: str,
    target: ShipmentStatus,
    actor: Optional[Actor] = None,
) -> data_manager.ShipmentRow:
    """Move a shipment one step along PREPARING -> IN_TRANSIT -> DELIVERED.

    The parent sales order follows: IN_TRANSIT marks it SHIPPED, DELIVERED
    marks it COMPLETED and frees it from its active shipment.

    Raises:
        InvalidTransition: If ``target`` is not the next status.
        ConcurrentModification: If the shipment moved since it was read.
    """
    shipment = get_shipment(context, shipment_id)
    log.debug("Shipment '%s' advance to %s requested by %s", shipment_id, target, actor.id if actor else "-")
    return _transition_shipment(context, shipment, ShipmentStatus(target))


def submit_dispatch_details(
    context: RuntimeContext,
    dispatcher_token: str,
    vehicle_number: str,
    driver_name: str,
    driver_phone: str,
    eta_at: Optional[datetime] = None,
) -> data_manager.ShipmentRow:
    """Record a carrier's vehicle and driver and start the shipment.

    The details and the PREPARING -> IN_TRANSIT move are written together.

    Raises:
        NotFound: If the dispatcher token is unknown.
        InvalidTransition: If the shipment is no longer PREPARING.
        ValidationError: If a field is blank.
    """
    shipment = resolve_shipment(context, dispatcher_token)
    if shipment.dispatch_mode != DispatchMode.THIRD_PARTY.value:
        raise ValidationError(f"Shipment {shipment.id} was not dispatched through a carrier")

    fields: Dict[str, Any] = {
        "vehicle_number": require_text(vehicle_number, "vehicle_number"),
        "driver_name": require_text(driver_name, "driver_name"),
        "driver_phone": require_text(driver_phone, "driver_phone"),
    }
    if eta_at is not None:
        fields["eta_at"] = eta_at
    log.info("Carrier '%s' submitted dispatch details for shipment '%s'", shipment.carrier_org_id, shipment.id)
    return _transition_shipment(context, shipment, ShipmentStatus.IN_TRANSIT, fields)
