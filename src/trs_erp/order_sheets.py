"""Order sheet lifecycle: issuance, customer edits, review and confirmation.

An order sheet moves ``DRAFT -> SENT -> SUBMITTED -> CONFIRMED`` with an
optional ``SUBMITTED -> REVISION -> SUBMITTED`` loop. Every mutation is a
conditional write on the sheet's ``status`` so that concurrent callers can
never both win the same transition, and every item-level save replaces the
full item set together with the recomputed totals in one batch.
"""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Deque, Dict, List, Optional, Sequence, Tuple, Union

from . import data_manager, log
from .access import ensure_activated
from .constants import (
    HOLDER_EDITABLE_STATUSES,
    Collection,
    ItemUnit,
    OrderSheetStatus,
)
from .core_logic import (
    Actor,
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
from . import fulfillment


OPERATIONS_RECIPIENT = "operations"

# Every status in which a sheet may still be edited, commented on or deleted.
OPEN_STATUSES: Tuple[OrderSheetStatus, ...] = tuple(
    status for status in OrderSheetStatus if status != OrderSheetStatus.CONFIRMED
)


@dataclass(frozen=True)
class ItemInput:
    """One line as entered by an operator or the token holder.

    ``box_to_kg_factor`` only matters for ``box`` lines; when omitted the
    configured ``DefaultBoxToKg`` applies.
    """

    product_id: str
    product_name: str
    unit: Union[ItemUnit, str]
    qty_requested: Decimal
    unit_price: Decimal
    box_to_kg_factor: Optional[Decimal] = None


@dataclass(frozen=True)
class CreateOrderSheetCommand:
    """Payload for :func:`create_order_sheet`."""

    customer_name: str
    customer_org_id: Optional[str] = None
    is_guest: bool = False
    ship_date: Optional[datetime] = None
    cut_off_at: Optional[datetime] = None
    discount_amount: Decimal = Decimal("0")
    admin_comment: Optional[str] = None
    items: Tuple[ItemInput, ...] = field(default_factory=tuple)
    issue_now: bool = False


@dataclass(frozen=True)
class ItemAdded:
    product_id: str
    product_name: str
    qty_requested: Decimal
    unit: str


@dataclass(frozen=True)
class ItemRemoved:
    product_id: str
    product_name: str
    qty_requested: Decimal
    unit: str


@dataclass(frozen=True)
class QuantityChanged:
    product_id: str
    product_name: str
    old_qty: Decimal
    new_qty: Decimal
    old_unit: str
    new_unit: str


@dataclass(frozen=True)
class PriceChanged:
    product_id: str
    product_name: str
    old_price: Decimal
    new_price: Decimal


ItemChange = Union[ItemAdded, ItemRemoved, QuantityChanged, PriceChanged]


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


def _parse_unit(unit: Union[ItemUnit, str]) -> ItemUnit:
    try:
        return ItemUnit(unit)
    except ValueError as exc:
        log.error("Validation failed: unknown unit '%s'", unit)
        raise ValidationError(f"Unknown unit: {unit}") from exc


def compute_estimated_kg(unit: Union[ItemUnit, str], qty_requested: Decimal, box_to_kg_factor: Decimal) -> Decimal:
    """Return the weight of a line: boxes are converted with ``box_to_kg_factor``."""

    if _parse_unit(unit) == ItemUnit.BOX:
        return qty_requested * box_to_kg_factor
    return qty_requested


def price_item(
    context: RuntimeContext,
    sheet_id: str,
    line_no: int,
    item: ItemInput,
) -> data_manager.OrderSheetItemRow:
    """Validate one :class:`ItemInput` and derive ``estimated_kg`` and ``amount``.

    Raises:
        ValidationError: If the product is blank, the unit is unknown, or a
            quantity, price or factor is negative.
    """
    unit = _parse_unit(item.unit)
    qty = require_nonnegative(Decimal(item.qty_requested), "qty_requested")
    price = require_nonnegative(Decimal(item.unit_price), "unit_price")
    if unit == ItemUnit.BOX:
        factor = item.box_to_kg_factor if item.box_to_kg_factor is not None else context.settings.default_box_to_kg
        factor = require_nonnegative(Decimal(factor), "box_to_kg_factor")
    else:
        factor = Decimal("1")

    estimated_kg = compute_estimated_kg(unit, qty, factor)
    return data_manager.OrderSheetItemRow(
        id=f"{sheet_id}-{line_no:03d}",
        order_sheet_id=sheet_id,
        line_no=line_no,
        product_id=require_text(item.product_id, "product_id"),
        product_name=require_text(item.product_name, "product_name"),
        unit=unit.value,
        qty_requested=qty,
        unit_price=price,
        box_to_kg_factor=factor,
        estimated_kg=estimated_kg,
        amount=estimated_kg * price,
    )


def price_items(
    context: RuntimeContext,
    sheet_id: str,
    items: Sequence[ItemInput],
) -> List[data_manager.OrderSheetItemRow]:
    return [price_item(context, sheet_id, index, item) for index, item in enumerate(items, start=1)]


def compute_sheet_totals(
    items: Sequence[data_manager.OrderSheetItemRow],
    discount_amount: Decimal,
) -> Tuple[Decimal, Decimal]:
    """Return ``(totals_kg, totals_amount)`` with the discount applied and floored at zero."""

    totals_kg = sum((item.estimated_kg for item in items), Decimal("0"))
    gross = sum((item.amount for item in items), Decimal("0"))
    return totals_kg, net_amount(gross, discount_amount)


# ---------------------------------------------------------------------------
# Change detection
# ---------------------------------------------------------------------------


def diff_items(
    before: Sequence[data_manager.OrderSheetItemRow],
    after: Sequence[data_manager.OrderSheetItemRow],
) -> List[ItemChange]:
    """Compare two item sets by ``product_id`` and list every discrete change.

    Lines sharing a ``product_id`` are paired in order of appearance, so a
    product listed twice on both sides is compared first-to-first and
    second-to-second. Additions and in-place changes follow the order of
    ``after``; removals follow the order of ``before`` and come last.
    """
    pending: Dict[str, Deque[data_manager.OrderSheetItemRow]] = defaultdict(deque)
    for item in before:
        pending[item.product_id].append(item)

    changes: List[ItemChange] = []
    for item in after:
        if not pending[item.product_id]:
            changes.append(ItemAdded(item.product_id, item.product_name, item.qty_requested, item.unit))
            continue
        previous = pending[item.product_id].popleft()
        if previous.qty_requested != item.qty_requested or previous.unit != item.unit:
            changes.append(
                QuantityChanged(
                    item.product_id,
                    item.product_name,
                    previous.qty_requested,
                    item.qty_requested,
                    previous.unit,
                    item.unit,
                )
            )
        if previous.unit_price != item.unit_price:
            changes.append(PriceChanged(item.product_id, item.product_name, previous.unit_price, item.unit_price))

    for item in before:
        queue = pending[item.product_id]
        if queue and queue[0] is item:
            queue.popleft()
            changes.append(ItemRemoved(item.product_id, item.product_name, item.qty_requested, item.unit))
    return changes


def describe_change(change: ItemChange) -> str:
    """Render a change record as a one-line note for the change log."""

    if isinstance(change, ItemAdded):
        return f"Added {change.product_name} ({change.qty_requested} {change.unit})"
    if isinstance(change, ItemRemoved):
        return f"Removed {change.product_name} ({change.qty_requested} {change.unit})"
    if isinstance(change, QuantityChanged):
        return (
            f"{change.product_name}: quantity {change.old_qty} {change.old_unit}"
            f" -> {change.new_qty} {change.new_unit}"
        )
    if isinstance(change, PriceChanged):
        return f"{change.product_name}: unit price {change.old_price} -> {change.new_price}"
    raise TypeError(f"Unsupported change record: {change!r}")


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def get_order_sheet(context: RuntimeContext, sheet_id: str) -> data_manager.OrderSheetRow:
    return load_record(context, Collection.ORDER_SHEETS.value, data_manager.OrderSheetRow, sheet_id)


def _list_lines(context: RuntimeContext, collection: Collection, sheet_id: str) -> List[data_manager.OrderSheetItemRow]:
    documents = context.store.query(collection.value, order_sheet_id=sheet_id)
    rows = [data_manager.deserialize_record(data_manager.OrderSheetItemRow, doc) for doc in documents]
    return sorted(rows, key=lambda row: row.line_no)


def list_order_sheet_items(context: RuntimeContext, sheet_id: str) -> List[data_manager.OrderSheetItemRow]:
    """Return the current lines of a sheet in line order."""

    return _list_lines(context, Collection.ORDER_SHEET_ITEMS, sheet_id)


def list_submitted_items(context: RuntimeContext, sheet_id: str) -> List[data_manager.OrderSheetItemRow]:
    """Return the lines as they stood at the most recent submit."""

    return _list_lines(context, Collection.SUBMITTED_ITEMS, sheet_id)


def list_order_sheets_for_customer(context: RuntimeContext, customer_org_id: str) -> List[data_manager.OrderSheetRow]:
    documents = context.store.query(Collection.ORDER_SHEETS.value, customer_org_id=customer_org_id)
    return [data_manager.deserialize_record(data_manager.OrderSheetRow, doc) for doc in documents]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def _recipient(sheet: data_manager.OrderSheetRow) -> str:
    return sheet.customer_org_id or sheet.customer_name


def _require_status(sheet: data_manager.OrderSheetRow, allowed: Sequence[OrderSheetStatus], action: str) -> OrderSheetStatus:
    current = OrderSheetStatus(sheet.status)
    if current not in allowed:
        log.warning("Rejected %s on order sheet '%s' in status %s", action, sheet.id, current.value)
        raise InvalidTransition(f"Cannot {action} order sheet {sheet.id} in status {current.value}")
    return current


def _status_guard(sheet_id: str, status: OrderSheetStatus) -> data_manager.Guard:
    return data_manager.Guard(Collection.ORDER_SHEETS.value, sheet_id, {"status": status.value})


def create_order_sheet(
    context: RuntimeContext,
    command: CreateOrderSheetCommand,
    actor: Optional[Actor] = None,
) -> data_manager.OrderSheetRow:
    """Create a new order sheet with a freshly minted access token.

    The sheet starts in DRAFT, or directly in SENT when ``command.issue_now``
    is set (the customer is notified in that case). Guest sheets without a
    ``cut_off_at`` get one ``GuestCutOffHours`` from now.

    Args:
        context (RuntimeContext): Runtime context providing settings and store.
        command (CreateOrderSheetCommand): Customer details and optional
            pre-filled lines; lines with zero quantity are allowed.
        actor (Actor | None): Operator performing the action, for the log.

    Returns:
        data_manager.OrderSheetRow: The stored sheet.

    Raises:
        ValidationError: If the customer is missing, a member sheet has no
            ``customer_org_id``, or any line or the discount is invalid.
    """
    customer_name = require_text(command.customer_name, "customer_name")
    if not command.is_guest:
        require_text(command.customer_org_id, "customer_org_id")
    discount = require_nonnegative(Decimal(command.discount_amount), "discount_amount")

    now = utc_now()
    sheet_id = generate_document_id("OS", when=now)
    items = price_items(context, sheet_id, command.items)
    totals_kg, totals_amount = compute_sheet_totals(items, discount)

    cut_off_at = command.cut_off_at
    if cut_off_at is None and command.is_guest:
        cut_off_at = now + timedelta(hours=context.settings.guest_cut_off_hours)

    status = OrderSheetStatus.SENT if command.issue_now else OrderSheetStatus.DRAFT
    sheet = data_manager.OrderSheetRow(
        id=sheet_id,
        customer_org_id=command.customer_org_id,
        customer_name=customer_name,
        status=status.value,
        access_token=generate_access_token(),
        is_guest=command.is_guest,
        ship_date=command.ship_date,
        cut_off_at=cut_off_at,
        discount_amount=discount,
        totals_kg=totals_kg,
        totals_amount=totals_amount,
        admin_comment=command.admin_comment,
        created_at=now,
        updated_at=now,
    )
    context.store.apply_batch(
        [
            data_manager.WriteOp.create(
                Collection.ORDER_SHEETS.value,
                data_manager.serialize_record(sheet),
                unique_on=("access_token",),
            ),
            *(
                data_manager.WriteOp.create(Collection.ORDER_SHEET_ITEMS.value, data_manager.serialize_record(item))
                for item in items
            ),
        ]
    )
    log.info(
        "Created order sheet '%s' for '%s' in %s (guest=%s, by=%s)",
        sheet.id,
        customer_name,
        status.value,
        command.is_guest,
        actor.id if actor is not None else "-",
    )
    if status == OrderSheetStatus.SENT:
        _notify_issued(context, sheet)
    return sheet


def _notify_issued(context: RuntimeContext, sheet: data_manager.OrderSheetRow) -> None:
    send_notification(
        context,
        _recipient(sheet),
        {"event": "order_sheet_issued", "order_sheet_id": sheet.id, "access_token": sheet.access_token},
    )


def issue_order_sheet(context: RuntimeContext, sheet_id: str, actor: Optional[Actor] = None) -> data_manager.OrderSheetRow:
    """Move a DRAFT sheet to SENT and hand its token to the customer.

    Raises:
        InvalidTransition: If the sheet is not DRAFT.
        ValidationError: If the sheet carries no access token.
        ConcurrentModification: If the status changed since it was read.
    """
    sheet = get_order_sheet(context, sheet_id)
    _require_status(sheet, (OrderSheetStatus.DRAFT,), "issue")
    require_text(sheet.access_token, "access_token")

    with conditional_write(Collection.ORDER_SHEETS.value, sheet_id):
        document = context.store.update(
            Collection.ORDER_SHEETS.value,
            sheet_id,
            {"status": OrderSheetStatus.SENT.value, "updated_at": utc_now()},
            expected={"status": OrderSheetStatus.DRAFT.value},
        )
    issued = data_manager.deserialize_record(data_manager.OrderSheetRow, document)
    log.info("Order sheet '%s' issued (DRAFT -> SENT)", sheet_id)
    _notify_issued(context, issued)
    return issued


def save_order_sheet_items(
    context: RuntimeContext,
    sheet_id: str,
    items: Sequence[ItemInput],
    actor: Optional[Actor] = None,
) -> data_manager.OrderSheetRow:
    """Replace the lines of a sheet without changing its status.

    The token holder may edit while the sheet is SENT or REVISION and only
    once the activation gate lets them through. Operators may adjust lines in
    any status short of CONFIRMED, which is how review-time changes are made
    before confirming.
    """
    sheet = get_order_sheet(context, sheet_id)
    if actor is not None and actor.is_operator:
        current = _require_status(
            sheet,
            OPEN_STATUSES,
            "edit items of",
        )
    else:
        current = _require_status(sheet, tuple(HOLDER_EDITABLE_STATUSES), "edit items of")
        ensure_activated(actor, sheet)

    rows = price_items(context, sheet_id, items)
    totals_kg, totals_amount = compute_sheet_totals(rows, sheet.discount_amount)
    now = utc_now()
    with conditional_write(Collection.ORDER_SHEETS.value, sheet_id):
        context.store.apply_batch(
            [
                data_manager.WriteOp.replace_children(
                    Collection.ORDER_SHEET_ITEMS.value,
                    "order_sheet_id",
                    sheet_id,
                    [data_manager.serialize_record(row) for row in rows],
                ),
                data_manager.WriteOp.update(
                    Collection.ORDER_SHEETS.value,
                    sheet_id,
                    {"totals_kg": totals_kg, "totals_amount": totals_amount, "updated_at": now},
                ),
            ],
            expected=_status_guard(sheet_id, current),
        )
    log.info("Saved %d items on order sheet '%s' (kg=%s, amount=%s)", len(rows), sheet_id, totals_kg, totals_amount)
    return get_order_sheet(context, sheet_id)


def update_order_sheet_comments(
    context: RuntimeContext,
    sheet_id: str,
    *,
    admin_comment: Optional[str] = None,
    customer_comment: Optional[str] = None,
) -> data_manager.OrderSheetRow:
    """Overwrite the admin and/or customer comment of a sheet not yet confirmed."""

    sheet = get_order_sheet(context, sheet_id)
    current = _require_status(
        sheet,
        OPEN_STATUSES,
        "comment on",
    )
    partial: Dict[str, object] = {"updated_at": utc_now()}
    if admin_comment is not None:
        partial["admin_comment"] = admin_comment
    if customer_comment is not None:
        partial["customer_comment"] = customer_comment

    with conditional_write(Collection.ORDER_SHEETS.value, sheet_id):
        document = context.store.update(
            Collection.ORDER_SHEETS.value, sheet_id, partial, expected={"status": current.value}
        )
    log.info("Updated comments on order sheet '%s'", sheet_id)
    return data_manager.deserialize_record(data_manager.OrderSheetRow, document)


def submit_order_sheet(
    context: RuntimeContext,
    sheet_id: str,
    items: Optional[Sequence[ItemInput]] = None,
    actor: Optional[Actor] = None,
) -> data_manager.OrderSheetRow:
    """Submit a SENT or REVISION sheet for operator review.

    When ``items`` is given it replaces the current lines; otherwise the
    stored lines are submitted as they are. The item set, the last-submitted
    snapshot, the totals and the new status are written in one guarded batch
    with the status change applied last.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        sheet_id (str): Identifier of the sheet being submitted.
        items (Sequence[ItemInput] | None): Replacement lines, if any.
        actor (Actor | None): Caller; must pass the activation gate unless the
            sheet is a guest sheet.

    Returns:
        data_manager.OrderSheetRow: The sheet in SUBMITTED status.

    Raises:
        InvalidTransition: If the sheet is not SENT or REVISION.
        ActivationRequired: If the caller must activate their account first.
        ValidationError: If no line has a positive estimated weight.
        ConcurrentModification: If the sheet changed since it was read.
    """
    sheet = get_order_sheet(context, sheet_id)
    current = _require_status(sheet, (OrderSheetStatus.SENT, OrderSheetStatus.REVISION), "submit")
    ensure_activated(actor, sheet)

    rows = price_items(context, sheet_id, items) if items is not None else list_order_sheet_items(context, sheet_id)
    if not any(row.estimated_kg > 0 for row in rows):
        log.error("Submit of order sheet '%s' rejected: no line with a positive quantity", sheet_id)
        raise ValidationError("At least one item with a positive quantity is required to submit")

    totals_kg, totals_amount = compute_sheet_totals(rows, sheet.discount_amount)
    now = utc_now()
    documents = [data_manager.serialize_record(row) for row in rows]
    with conditional_write(Collection.ORDER_SHEETS.value, sheet_id):
        context.store.apply_batch(
            [
                data_manager.WriteOp.replace_children(
                    Collection.ORDER_SHEET_ITEMS.value, "order_sheet_id", sheet_id, documents
                ),
                data_manager.WriteOp.replace_children(
                    Collection.SUBMITTED_ITEMS.value, "order_sheet_id", sheet_id, documents
                ),
                data_manager.WriteOp.update(
                    Collection.ORDER_SHEETS.value,
                    sheet_id,
                    {
                        "status": OrderSheetStatus.SUBMITTED.value,
                        "totals_kg": totals_kg,
                        "totals_amount": totals_amount,
                        "last_submitted_at": now,
                        "updated_at": now,
                    },
                ),
            ],
            expected=_status_guard(sheet_id, current),
        )
    log.info(
        "Order sheet '%s' submitted (%s -> SUBMITTED, kg=%s, amount=%s)",
        sheet_id,
        current.value,
        totals_kg,
        totals_amount,
    )
    send_notification(
        context,
        OPERATIONS_RECIPIENT,
        {"event": "order_sheet_submitted", "order_sheet_id": sheet_id, "customer_name": sheet.customer_name},
    )
    return get_order_sheet(context, sheet_id)


def request_revision(
    context: RuntimeContext,
    sheet_id: str,
    comment: str,
    actor: Optional[Actor] = None,
) -> data_manager.OrderSheetRow:
    """Send a SUBMITTED sheet back to the token holder with a comment.

    The comment stays on the sheet in ``revision_comment`` after the holder
    resubmits; only a later revision request overwrites it.
    """
    comment = require_text(comment, "comment")
    sheet = get_order_sheet(context, sheet_id)
    _require_status(sheet, (OrderSheetStatus.SUBMITTED,), "request revision on")

    with conditional_write(Collection.ORDER_SHEETS.value, sheet_id):
        document = context.store.update(
            Collection.ORDER_SHEETS.value,
            sheet_id,
            {"status": OrderSheetStatus.REVISION.value, "revision_comment": comment, "updated_at": utc_now()},
            expected={"status": OrderSheetStatus.SUBMITTED.value},
        )
    log.info(
        "Revision requested on order sheet '%s' by %s",
        sheet_id,
        actor.id if actor is not None else "-",
    )
    send_notification(
        context,
        _recipient(sheet),
        {
            "event": "revision_requested",
            "order_sheet_id": sheet_id,
            "access_token": sheet.access_token,
            "comment": comment,
        },
    )
    return data_manager.deserialize_record(data_manager.OrderSheetRow, document)


def _append_change_log(
    existing: Optional[str],
    when: datetime,
    reason: Optional[str],
    changes: Sequence[ItemChange],
) -> Optional[str]:
    if not reason and not changes:
        return existing
    lines = [f"[{when.isoformat()}] {reason or 'Confirmed'}"]
    lines.extend(f"- {describe_change(change)}" for change in changes)
    entry = "\n".join(lines)
    return f"{existing}\n{entry}" if existing else entry


def confirm_order_sheet(
    context: RuntimeContext,
    sheet_id: str,
    discount_amount: Decimal = Decimal("0"),
    *,
    change_reason: Optional[str] = None,
    actor: Optional[Actor] = None,
) -> data_manager.SalesOrderRow:
    """Confirm a SUBMITTED sheet and convert it into its sales order.

    The current lines are compared with the last-submitted snapshot; if the
    operator changed anything a ``change_reason`` is mandatory, and the
    reason plus one line per change is appended to ``change_log``. The sales
    order, its lines and the CONFIRMED status are written in one batch guarded
    on SUBMITTED, so a failed write leaves the sheet SUBMITTED with no order.

    Confirming an already CONFIRMED sheet is a successful no-op that returns
    the existing sales order, and so is losing a race against a concurrent
    confirm.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        sheet_id (str): Identifier of the sheet to confirm.
        discount_amount (Decimal): Final discount; must not be negative.
        change_reason (str | None): Why the lines differ from the submission.
        actor (Actor | None): Operator confirming the sheet.

    Returns:
        data_manager.SalesOrderRow: The sales order for the sheet.

    Raises:
        InvalidTransition: If the sheet is neither SUBMITTED nor CONFIRMED.
        ActivationRequired: If the caller must activate their account first.
        ValidationError: If the discount is negative or a required reason is
            missing.
        ConcurrentModification: If the sheet left SUBMITTED without being
            confirmed while this call was running.
    """
    sheet = get_order_sheet(context, sheet_id)
    if sheet.status == OrderSheetStatus.CONFIRMED.value:
        log.info("Order sheet '%s' already confirmed; returning its sales order", sheet_id)
        return fulfillment.create_sales_order_from_sheet(context, sheet, list_order_sheet_items(context, sheet_id))

    _require_status(sheet, (OrderSheetStatus.SUBMITTED,), "confirm")
    ensure_activated(actor, sheet)
    discount = require_nonnegative(Decimal(discount_amount), "discount_amount")

    items = list_order_sheet_items(context, sheet_id)
    changes = diff_items(list_submitted_items(context, sheet_id), items)
    reason = change_reason.strip() if change_reason else None
    if changes and not reason:
        log.error("Confirm of order sheet '%s' rejected: %d changes without a reason", sheet_id, len(changes))
        raise ValidationError("A change reason is required when items differ from the submission")

    totals_kg, totals_amount = compute_sheet_totals(items, discount)
    now = utc_now()
    confirmed = replace(
        sheet,
        status=OrderSheetStatus.CONFIRMED.value,
        discount_amount=discount,
        totals_kg=totals_kg,
        totals_amount=totals_amount,
        change_log=_append_change_log(sheet.change_log, now, reason, changes),
        updated_at=now,
    )
    sales_order, operations = fulfillment.build_sales_order(confirmed, items, confirmed_at=now)
    operations.append(
        data_manager.WriteOp.update(
            Collection.ORDER_SHEETS.value,
            sheet_id,
            {
                "status": confirmed.status,
                "discount_amount": discount,
                "totals_kg": totals_kg,
                "totals_amount": totals_amount,
                "change_log": confirmed.change_log,
                "updated_at": now,
            },
        )
    )
    try:
        with conditional_write(Collection.ORDER_SHEETS.value, sheet_id):
            context.store.apply_batch(operations, expected=_status_guard(sheet_id, OrderSheetStatus.SUBMITTED))
    except (ConcurrentModification, data_manager.DuplicateKey) as exc:
        latest = get_order_sheet(context, sheet_id)
        if latest.status != OrderSheetStatus.CONFIRMED.value:
            raise ConcurrentModification(f"Order sheet {sheet_id} changed while being confirmed") from exc
        log.info("Order sheet '%s' was confirmed concurrently; returning its sales order", sheet_id)
        return fulfillment.create_sales_order_from_sheet(context, latest, list_order_sheet_items(context, sheet_id))

    log.info(
        "Order sheet '%s' confirmed as sales order '%s' (discount=%s, changes=%d)",
        sheet_id,
        sales_order.id,
        discount,
        len(changes),
    )
    send_notification(
        context,
        _recipient(confirmed),
        {"event": "order_sheet_confirmed", "order_sheet_id": sheet_id, "sales_order_id": sales_order.id},
    )
    return sales_order


def delete_order_sheet(context: RuntimeContext, sheet_id: str, actor: Optional[Actor] = None) -> None:
    """Remove a sheet that has not been confirmed, together with its lines.

    Raises:
        InvalidTransition: If the sheet is CONFIRMED.
        ConcurrentModification: If the status changed since it was read.
    """
    sheet = get_order_sheet(context, sheet_id)
    current = _require_status(
        sheet,
        OPEN_STATUSES,
        "delete",
    )
    with conditional_write(Collection.ORDER_SHEETS.value, sheet_id):
        context.store.apply_batch(
            [
                data_manager.WriteOp.replace_children(Collection.ORDER_SHEET_ITEMS.value, "order_sheet_id", sheet_id, []),
                data_manager.WriteOp.replace_children(Collection.SUBMITTED_ITEMS.value, "order_sheet_id", sheet_id, []),
                data_manager.WriteOp.delete(Collection.ORDER_SHEETS.value, sheet_id),
            ],
            expected=_status_guard(sheet_id, current),
        )
    log.info(
        "Deleted order sheet '%s' in status %s (by=%s)",
        sheet_id,
        current.value,
        actor.id if actor is not None else "-",
    )
