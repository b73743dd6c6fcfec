"""Conversion of confirmed order sheets into sales orders, and purchase orders.

A sales order is created exactly once per confirmed order sheet: the
``source_order_sheet_id`` is declared unique in the store, so a retried or
racing conversion returns the document that already exists. Totals are fixed
at creation; later status changes never touch them.

Purchase orders are the supplier-side sibling. They are built from their own
line inputs and carry no reference to any sales order.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from . import data_manager, log
from .access import resolve_purchase_order
from .constants import (
    ACTIVE_SHIPMENT_STATUSES,
    Collection,
    PurchaseOrderStatus,
    SalesOrderStatus,
)
from .core_logic import (
    ConcurrentModification,
    InvalidTransition,
    RuntimeContext,
    ValidationError,
    conditional_write,
    generate_access_token,
    generate_document_id,
    load_record,
    net_amount,
    require_nonnegative,
    require_text,
    send_notification,
    utc_now,
)


SALES_ORDER_TRANSITIONS: Dict[SalesOrderStatus, FrozenSet[SalesOrderStatus]] = {
    SalesOrderStatus.CREATED: frozenset(
        {SalesOrderStatus.PO_GENERATED, SalesOrderStatus.SHIPPED, SalesOrderStatus.CANCELLED}
    ),
    SalesOrderStatus.PO_GENERATED: frozenset({SalesOrderStatus.SHIPPED, SalesOrderStatus.CANCELLED}),
    SalesOrderStatus.SHIPPED: frozenset({SalesOrderStatus.COMPLETED}),
    SalesOrderStatus.COMPLETED: frozenset(),
    SalesOrderStatus.CANCELLED: frozenset(),
}

# Targets that dispatch owns while a shipment is active for the order.
SHIPMENT_CONTROLLED_TARGETS: FrozenSet[SalesOrderStatus] = frozenset(
    {SalesOrderStatus.SHIPPED, SalesOrderStatus.COMPLETED, SalesOrderStatus.CANCELLED}
)


@dataclass(frozen=True)
class PurchaseOrderLine:
    """User intent for one purchase order line, always expressed in kg."""

    product_name: str
    qty_kg: Decimal
    unit_cost: Decimal
    product_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Sales orders
# ---------------------------------------------------------------------------


def get_sales_order(context: RuntimeContext, sales_order_id: str) -> data_manager.SalesOrderRow:
    """Resolve a sales order by id, raising ``NotFound`` when unknown."""

    return load_record(context, Collection.SALES_ORDERS.value, data_manager.SalesOrderRow, sales_order_id)


def find_sales_order_for_sheet(context: RuntimeContext, sheet_id: str) -> Optional[data_manager.SalesOrderRow]:
    """Return the sales order created from ``sheet_id``, if any."""

    matches = context.store.query(Collection.SALES_ORDERS.value, source_order_sheet_id=sheet_id)
    if not matches:
        return None
    return data_manager.deserialize_record(data_manager.SalesOrderRow, matches[0])


def list_sales_order_items(context: RuntimeContext, sales_order_id: str) -> List[data_manager.SalesOrderItemRow]:
    """Return the lines of a sales order in line order."""

    documents = context.store.query(Collection.SALES_ORDER_ITEMS.value, sales_order_id=sales_order_id)
    rows = [data_manager.deserialize_record(data_manager.SalesOrderItemRow, doc) for doc in documents]
    return sorted(rows, key=lambda row: row.line_no)


def build_sales_order(
    sheet: data_manager.OrderSheetRow,
    items: Sequence[data_manager.OrderSheetItemRow],
    *,
    confirmed_at: Optional[datetime] = None,
) -> Tuple[data_manager.SalesOrderRow, List[data_manager.WriteOp]]:
    """Compute the sales order for ``sheet`` and the writes that create it.

    ``totals_kg`` is the sum of ``estimated_kg`` and ``totals_amount`` the sum
    of item amounts minus the sheet discount, floored at zero. Lines without
    weight are not copied. Nothing is written; callers add the operations to
    their own batch.
    """
    now = confirmed_at or utc_now()
    totals_kg = sum((item.estimated_kg for item in items), Decimal("0"))
    gross = sum((item.amount for item in items), Decimal("0"))
    sales_order = data_manager.SalesOrderRow(
        id=generate_document_id("SO", when=now),
        source_order_sheet_id=sheet.id,
        customer_org_id=sheet.customer_org_id,
        customer_name=sheet.customer_name,
        status=SalesOrderStatus.CREATED.value,
        totals_kg=totals_kg,
        totals_amount=net_amount(gross, sheet.discount_amount),
        discount_amount=sheet.discount_amount,
        confirmed_at=now,
        created_at=now,
    )
    lines = [
        data_manager.serialize_record(
            data_manager.SalesOrderItemRow(
                id=f"{sales_order.id}-{index:03d}",
                sales_order_id=sales_order.id,
                line_no=index,
                product_id=item.product_id,
                product_name=item.product_name,
                qty_kg=item.estimated_kg,
                unit_price=item.unit_price,
                amount=item.amount,
            )
        )
        for index, item in enumerate(items, start=1)
        if item.estimated_kg > 0
    ]
    operations = [
        data_manager.WriteOp.create(
            Collection.SALES_ORDERS.value,
            data_manager.serialize_record(sales_order),
            unique_on=("source_order_sheet_id",),
        ),
        *(data_manager.WriteOp.create(Collection.SALES_ORDER_ITEMS.value, line) for line in lines),
    ]
    return sales_order, operations


def create_sales_order_from_sheet(
    context: RuntimeContext,
    sheet: data_manager.OrderSheetRow,
    items: Sequence[data_manager.OrderSheetItemRow],
    *,
    confirmed_at: Optional[datetime] = None,
) -> data_manager.SalesOrderRow:
    """Convert a confirmed order sheet into its sales order.

    An existing sales order for ``sheet.id`` is returned unchanged. Otherwise
    the order built by :func:`build_sales_order` and its lines are written in
    one batch.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        sheet (data_manager.OrderSheetRow): The confirmed sheet, carrying the
            final ``discount_amount``.
        items (Sequence[data_manager.OrderSheetItemRow]): The sheet's final
            lines.
        confirmed_at (datetime | None): Confirmation instant; defaults to now.

    Returns:
        data_manager.SalesOrderRow: The new or pre-existing sales order.
    """
    existing = find_sales_order_for_sheet(context, sheet.id)
    if existing is not None:
        log.info("Sales order '%s' already exists for order sheet '%s'", existing.id, sheet.id)
        return existing

    sales_order, operations = build_sales_order(sheet, items, confirmed_at=confirmed_at)
    try:
        context.store.apply_batch(operations)
    except data_manager.DuplicateKey:
        winner = find_sales_order_for_sheet(context, sheet.id)
        if winner is None:
            raise
        log.info("Lost sales order race for sheet '%s'; returning '%s'", sheet.id, winner.id)
        return winner

    log.info(
        "Created sales order '%s' from order sheet '%s' (kg=%s, amount=%s)",
        sales_order.id,
        sheet.id,
        sales_order.totals_kg,
        sales_order.totals_amount,
    )
    return sales_order


def advance_sales_order_status(
    context: RuntimeContext,
    sales_order_id: str,
    target: SalesOrderStatus,
) -> data_manager.SalesOrderRow:
    """Move a sales order along :data:`SALES_ORDER_TRANSITIONS`.

    Re-applying the current status is a no-op. While a shipment is active the
    order's status belongs to dispatch: manual moves into
    :data:`SHIPMENT_CONTROLLED_TARGETS` are refused, and the write is guarded
    on ``active_shipment_id`` being empty so a dispatch committing in between
    is caught.

    Raises:
        InvalidTransition: If ``target`` is not reachable from the current
            status, or a shipment is active for the order.
        ConcurrentModification: If the status changed between read and write.
    """
    order = get_sales_order(context, sales_order_id)
    current = SalesOrderStatus(order.status)
    if current == target:
        return order
    if target not in SALES_ORDER_TRANSITIONS[current]:
        log.warning("Rejected sales order '%s' transition %s -> %s", sales_order_id, current.value, target.value)
        raise InvalidTransition(f"Sales order {sales_order_id} cannot move from {current.value} to {target.value}")

    expected: Dict[str, Optional[str]] = {"status": current.value}
    if target in SHIPMENT_CONTROLLED_TARGETS:
        if order.active_shipment_id or _has_active_shipment(context, sales_order_id):
            log.warning("Rejected sales order '%s' move to %s during shipment", sales_order_id, target.value)
            raise InvalidTransition(
                f"Sales order {sales_order_id} has an active shipment and cannot move to {target.value}"
            )
        expected["active_shipment_id"] = None

    try:
        with conditional_write(Collection.SALES_ORDERS.value, sales_order_id):
            document = context.store.update(
                Collection.SALES_ORDERS.value,
                sales_order_id,
                {"status": target.value},
                expected=expected,
            )
    except ConcurrentModification as exc:
        if get_sales_order(context, sales_order_id).active_shipment_id:
            raise InvalidTransition(
                f"Sales order {sales_order_id} was dispatched and cannot move to {target.value}"
            ) from exc
        raise
    log.info("Sales order '%s' moved %s -> %s", sales_order_id, current.value, target.value)
    return data_manager.deserialize_record(data_manager.SalesOrderRow, document)


def _has_active_shipment(context: RuntimeContext, sales_order_id: str) -> bool:
    active = {status.value for status in ACTIVE_SHIPMENT_STATUSES}
    return any(
        doc.get("status") in active
        for doc in context.store.query(Collection.SHIPMENTS.value, source_sales_order_id=sales_order_id)
    )


def cancel_sales_order(context: RuntimeContext, sales_order_id: str) -> data_manager.SalesOrderRow:
    """Cancel a sales order that has not shipped."""

    return advance_sales_order_status(context, sales_order_id, SalesOrderStatus.CANCELLED)


# ---------------------------------------------------------------------------
# Purchase orders
# ---------------------------------------------------------------------------


def get_purchase_order(context: RuntimeContext, purchase_order_id: str) -> data_manager.PurchaseOrderRow:
    """Resolve a purchase order by id, raising ``NotFound`` when unknown."""

    return load_record(context, Collection.PURCHASE_ORDERS.value, data_manager.PurchaseOrderRow, purchase_order_id)


def list_purchase_order_items(context: RuntimeContext, purchase_order_id: str) -> List[data_manager.PurchaseOrderItemRow]:
    documents = context.store.query(Collection.PURCHASE_ORDER_ITEMS.value, purchase_order_id=purchase_order_id)
    rows = [data_manager.deserialize_record(data_manager.PurchaseOrderItemRow, doc) for doc in documents]
    return sorted(rows, key=lambda row: row.line_no)


def create_purchase_order(
    context: RuntimeContext,
    supplier_id: str,
    items: Sequence[PurchaseOrderLine],
    *,
    supplier_name: Optional[str] = None,
    expected_arrival_date: Optional[datetime] = None,
    memo: Optional[str] = None,
) -> data_manager.PurchaseOrderRow:
    """Build a DRAFT purchase order for a supplier with its own access token.

    Raises:
        ValidationError: If the supplier is blank, there are no lines, or a
            line carries a negative quantity or cost.
    """
    supplier_id = require_text(supplier_id, "supplier_id")
    if not items:
        raise ValidationError("A purchase order needs at least one line")

    now = utc_now()
    purchase_order_id = generate_document_id("PO", when=now)
    lines: List[data_manager.PurchaseOrderItemRow] = []
    for index, line in enumerate(items, start=1):
        qty_kg = require_nonnegative(line.qty_kg, "qty_kg")
        unit_cost = require_nonnegative(line.unit_cost, "unit_cost")
        lines.append(
            data_manager.PurchaseOrderItemRow(
                id=f"{purchase_order_id}-{index:03d}",
                purchase_order_id=purchase_order_id,
                line_no=index,
                product_id=line.product_id,
                product_name=require_text(line.product_name, "product_name"),
                qty_kg=qty_kg,
                unit_cost=unit_cost,
                amount=qty_kg * unit_cost,
            )
        )

    purchase_order = data_manager.PurchaseOrderRow(
        id=purchase_order_id,
        supplier_id=supplier_id,
        supplier_name=supplier_name or supplier_id,
        status=PurchaseOrderStatus.DRAFT.value,
        access_token=generate_access_token(),
        totals_kg=sum((line.qty_kg for line in lines), Decimal("0")),
        totals_amount=sum((line.amount for line in lines), Decimal("0")),
        expected_arrival_date=expected_arrival_date,
        memo=memo,
        created_at=now,
        updated_at=now,
    )
    context.store.apply_batch(
        [
            data_manager.WriteOp.create(
                Collection.PURCHASE_ORDERS.value,
                data_manager.serialize_record(purchase_order),
                unique_on=("access_token",),
            ),
            *(
                data_manager.WriteOp.create(Collection.PURCHASE_ORDER_ITEMS.value, data_manager.serialize_record(line))
                for line in lines
            ),
        ]
    )
    log.info(
        "Created purchase order '%s' for supplier '%s' (kg=%s, amount=%s)",
        purchase_order.id,
        supplier_id,
        purchase_order.totals_kg,
        purchase_order.totals_amount,
    )
    return purchase_order


def send_purchase_order(context: RuntimeContext, purchase_order_id: str) -> data_manager.PurchaseOrderRow:
    """Move a purchase order DRAFT -> SENT and share its token with the supplier."""

    order = get_purchase_order(context, purchase_order_id)
    if order.status != PurchaseOrderStatus.DRAFT.value:
        raise InvalidTransition(f"Purchase order {purchase_order_id} is {order.status}, not DRAFT")

    with conditional_write(Collection.PURCHASE_ORDERS.value, purchase_order_id):
        document = context.store.update(
            Collection.PURCHASE_ORDERS.value,
            purchase_order_id,
            {"status": PurchaseOrderStatus.SENT.value, "updated_at": utc_now()},
            expected={"status": PurchaseOrderStatus.DRAFT.value},
        )
    log.info("Purchase order '%s' sent to supplier '%s'", purchase_order_id, order.supplier_id)
    send_notification(
        context,
        order.supplier_id,
        {"event": "purchase_order_sent", "purchase_order_id": order.id, "access_token": order.access_token},
    )
    return data_manager.deserialize_record(data_manager.PurchaseOrderRow, document)


def confirm_purchase_order_by_token(context: RuntimeContext, token: str) -> data_manager.PurchaseOrderRow:
    """Let the supplier holding ``token`` confirm a SENT purchase order.

    Confirming an already CONFIRMED order returns it unchanged.
    """
    order = resolve_purchase_order(context, token)
    if order.status == PurchaseOrderStatus.CONFIRMED.value:
        return order
    if order.status != PurchaseOrderStatus.SENT.value:
        raise InvalidTransition(f"Purchase order {order.id} is {order.status}, not SENT")

    now = utc_now()
    with conditional_write(Collection.PURCHASE_ORDERS.value, order.id):
        document = context.store.update(
            Collection.PURCHASE_ORDERS.value,
            order.id,
            {"status": PurchaseOrderStatus.CONFIRMED.value, "confirmed_at": now, "updated_at": now},
            expected={"status": PurchaseOrderStatus.SENT.value},
        )
    log.info("Purchase order '%s' confirmed by supplier", order.id)
    return data_manager.deserialize_record(data_manager.PurchaseOrderRow, document)
