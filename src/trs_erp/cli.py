"""Command-line entry points for the TRS order-management toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the business
layer. The CLI acts as a single operator identity (``--actor-id``); customers,
suppliers and carriers are addressed through their access tokens.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import access, core_logic, dispatch, fulfillment, log, order_sheets
from .constants import ActorRole, ActorStatus, ShipmentStatus


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="trs-cli",
        description="Command-line tools for the TRS order workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--actor-id",
        default="cli-operator",
        help="Operator identifier recorded in the log for mutating commands.",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    sheet_specs = register_order_sheet_commands(subparsers)
    fulfillment_specs = register_fulfillment_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*sheet_specs.values(), *fulfillment_specs.values(), *read_specs.values()])


def register_order_sheet_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare the order sheet lifecycle commands."""
    specs = {
        "create-sheet": register_create_sheet_command(subparsers),
        "issue": register_issue_command(subparsers),
        "submit": register_submit_command(subparsers),
        "request-revision": register_request_revision_command(subparsers),
        "confirm": register_confirm_command(subparsers),
        "delete-sheet": register_delete_sheet_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_fulfillment_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare purchase order and dispatch commands."""
    specs = {
        "create-po": register_create_po_command(subparsers),
        "send-po": register_send_po_command(subparsers),
        "dispatch-direct": register_dispatch_direct_command(subparsers),
        "dispatch-3pl": register_dispatch_3pl_command(subparsers),
        "advance-shipment": register_advance_shipment_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only commands."""
    specs = {
        "resolve": register_resolve_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_item_argument(parser: argparse.ArgumentParser, *, required: bool) -> None:
    parser.add_argument(
        "--item",
        dest="items",
        action="append",
        default=None,
        required=required,
        metavar="PRODUCT_ID:NAME:UNIT:QTY:PRICE[:BOX_KG]",
        help="Order line; repeat for several lines.",
    )


def register_create_sheet_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``create-sheet``."""
    name = "create-sheet"
    help_text = "Create an order sheet for a customer or guest."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-name", required=True)
        parser.add_argument("--customer-org-id", default=None)
        parser.add_argument("--guest", action="store_true", help="Issue as a guest sheet (no account needed).")
        parser.add_argument("--ship-date", default=None, help="ISO-8601 ship date.")
        parser.add_argument("--cut-off", default=None, help="ISO-8601 order deadline.")
        parser.add_argument("--comment", dest="admin_comment", default=None)
        parser.add_argument("--issue-now", action="store_true", help="Create directly in SENT status.")
        _add_item_argument(parser, required=False)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_create_sheet)


def register_issue_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``issue``."""
    name = "issue"
    help_text = "Send a DRAFT order sheet to its customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sheet-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_issue)


def register_submit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``submit``."""
    name = "submit"
    help_text = "Submit an order sheet on behalf of its token holder."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--token", required=True, help="Order sheet access token.")
        _add_item_argument(parser, required=False)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_submit)


def register_request_revision_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``request-revision``."""
    name = "request-revision"
    help_text = "Send a SUBMITTED order sheet back to the customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sheet-id", required=True)
        parser.add_argument("--comment", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_request_revision)


def register_confirm_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``confirm``."""
    name = "confirm"
    help_text = "Confirm a SUBMITTED order sheet into a sales order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sheet-id", required=True)
        parser.add_argument("--discount", default="0")
        parser.add_argument("--reason", dest="change_reason", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_confirm)


def register_delete_sheet_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-sheet``."""
    name = "delete-sheet"
    help_text = "Delete an order sheet that has not been confirmed."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sheet-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_sheet)


def register_create_po_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``create-po``."""
    name = "create-po"
    help_text = "Create a DRAFT purchase order for a supplier."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--supplier-id", required=True)
        parser.add_argument("--supplier-name", default=None)
        parser.add_argument("--arrival", default=None, help="ISO-8601 expected arrival date.")
        parser.add_argument("--memo", default=None)
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            required=True,
            metavar="NAME:QTY_KG:UNIT_COST",
            help="Purchase line; repeat for several lines.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_create_po)


def register_send_po_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``send-po``."""
    name = "send-po"
    help_text = "Send a DRAFT purchase order to its supplier."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--po-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_send_po)


def register_dispatch_direct_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dispatch-direct``."""
    name = "dispatch-direct"
    help_text = "Create a shipment with a known vehicle and driver."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sales-order-id", required=True)
        parser.add_argument("--vehicle", required=True)
        parser.add_argument("--driver", required=True)
        parser.add_argument("--phone", required=True)
        parser.add_argument("--eta", default=None, help="ISO-8601 estimated arrival.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dispatch_direct)


def register_dispatch_3pl_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dispatch-3pl``."""
    name = "dispatch-3pl"
    help_text = "Request a third-party carrier for a sales order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sales-order-id", required=True)
        parser.add_argument("--carrier-org-id", required=True)
        parser.add_argument("--eta-request", default=None, help="ISO-8601 time the carrier should answer by.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dispatch_3pl)


def register_advance_shipment_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``advance-shipment``."""
    name = "advance-shipment"
    help_text = "Move a shipment to IN_TRANSIT or DELIVERED."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--shipment-id", required=True)
        parser.add_argument(
            "--status",
            choices=[ShipmentStatus.IN_TRANSIT.value, ShipmentStatus.DELIVERED.value],
            required=True,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_advance_shipment)


def register_resolve_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``resolve``."""
    name = "resolve"
    help_text = "Show which document an access or dispatcher token opens."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--token", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_resolve)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def parse_decimal(raw: str, field_name: str) -> Decimal:
    """Parse a CLI number, reporting bad input as a validation failure."""
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise core_logic.ValidationError(f"{field_name} must be a number, got {raw!r}") from exc


def parse_timestamp(raw: Optional[str], field_name: str) -> Optional[datetime]:
    if raw is None:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError as exc:
        raise core_logic.ValidationError(f"{field_name} must be an ISO-8601 timestamp, got {raw!r}") from exc


def translate_item(raw: str) -> order_sheets.ItemInput:
    """Translate ``PRODUCT_ID:NAME:UNIT:QTY:PRICE[:BOX_KG]`` into an item input."""
    parts = raw.split(":")
    if len(parts) not in (5, 6):
        raise core_logic.ValidationError(f"Malformed item {raw!r}; expected PRODUCT_ID:NAME:UNIT:QTY:PRICE[:BOX_KG]")
    product_id, product_name, unit, qty, price = parts[:5]
    return order_sheets.ItemInput(
        product_id=product_id,
        product_name=product_name,
        unit=unit,
        qty_requested=parse_decimal(qty, "quantity"),
        unit_price=parse_decimal(price, "unit price"),
        box_to_kg_factor=parse_decimal(parts[5], "box factor") if len(parts) == 6 else None,
    )


def translate_items(raw_items: Optional[Sequence[str]]) -> Optional[List[order_sheets.ItemInput]]:
    if raw_items is None:
        return None
    return [translate_item(raw) for raw in raw_items]


def translate_create_sheet(args: argparse.Namespace) -> order_sheets.CreateOrderSheetCommand:
    """Translate CLI args into an order sheet creation command."""
    return order_sheets.CreateOrderSheetCommand(
        customer_name=args.customer_name,
        customer_org_id=args.customer_org_id,
        is_guest=args.guest,
        ship_date=parse_timestamp(args.ship_date, "ship date"),
        cut_off_at=parse_timestamp(args.cut_off, "cut-off"),
        admin_comment=args.admin_comment,
        items=tuple(translate_items(args.items) or ()),
        issue_now=args.issue_now,
    )


def translate_po_line(raw: str) -> fulfillment.PurchaseOrderLine:
    """Translate ``NAME:QTY_KG:UNIT_COST`` into a purchase order line."""
    parts = raw.split(":")
    if len(parts) != 3:
        raise core_logic.ValidationError(f"Malformed line {raw!r}; expected NAME:QTY_KG:UNIT_COST")
    return fulfillment.PurchaseOrderLine(
        product_name=parts[0],
        qty_kg=parse_decimal(parts[1], "quantity"),
        unit_cost=parse_decimal(parts[2], "unit cost"),
    )


def translate_direct_dispatch(args: argparse.Namespace) -> dispatch.DirectDispatchCommand:
    return dispatch.DirectDispatchCommand(
        vehicle_number=args.vehicle,
        driver_name=args.driver,
        driver_phone=args.phone,
        eta_at=parse_timestamp(args.eta, "eta"),
    )


def cli_actor(args: argparse.Namespace) -> core_logic.Actor:
    """Return the operator identity the CLI acts as."""
    return core_logic.Actor(
        id=getattr(args, "actor_id", None) or "cli-operator",
        role=ActorRole.ADMIN,
        status=ActorStatus.ACTIVE,
    )


def run_create_sheet(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the order sheet creation workflow in the BLL."""
    sheet = order_sheets.create_order_sheet(context, translate_create_sheet(args), cli_actor(args))
    print(f"Created order sheet {sheet.id} [{sheet.status}] token={sheet.access_token}")
    return 0


def run_issue(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    sheet = order_sheets.issue_order_sheet(context, args.sheet_id, cli_actor(args))
    print(f"Order sheet {sheet.id} is now {sheet.status}")
    return 0


def run_submit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Resolve the token and submit the sheet it grants."""
    sheet = access.resolve_order_sheet(context, args.token)
    submitted = order_sheets.submit_order_sheet(context, sheet.id, translate_items(args.items), cli_actor(args))
    print(f"Order sheet {submitted.id} submitted: {submitted.totals_kg} kg, {submitted.totals_amount}")
    return 0


def run_request_revision(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    sheet = order_sheets.request_revision(context, args.sheet_id, args.comment, cli_actor(args))
    print(f"Order sheet {sheet.id} is now {sheet.status}")
    return 0


def run_confirm(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the confirmation workflow and report the resulting sales order."""
    sales_order = order_sheets.confirm_order_sheet(
        context,
        args.sheet_id,
        parse_decimal(args.discount, "discount"),
        change_reason=args.change_reason,
        actor=cli_actor(args),
    )
    print(f"Sales order {sales_order.id}: {sales_order.totals_kg} kg, {sales_order.totals_amount}")
    return 0


def run_delete_sheet(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    order_sheets.delete_order_sheet(context, args.sheet_id, cli_actor(args))
    print(f"Deleted order sheet {args.sheet_id}")
    return 0


def run_create_po(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase order creation workflow in the BLL."""
    purchase_order = fulfillment.create_purchase_order(
        context,
        args.supplier_id,
        [translate_po_line(raw) for raw in args.lines],
        supplier_name=args.supplier_name,
        expected_arrival_date=parse_timestamp(args.arrival, "arrival"),
        memo=args.memo,
    )
    print(f"Created purchase order {purchase_order.id} token={purchase_order.access_token}")
    return 0


def run_send_po(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    purchase_order = fulfillment.send_purchase_order(context, args.po_id)
    print(f"Purchase order {purchase_order.id} is now {purchase_order.status}")
    return 0


def run_dispatch_direct(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    shipment = dispatch.dispatch_direct(context, args.sales_order_id, translate_direct_dispatch(args), cli_actor(args))
    print(f"Created shipment {shipment.id} [{shipment.status}]")
    return 0


def run_dispatch_3pl(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    shipment = dispatch.dispatch_via_3pl(
        context,
        args.sales_order_id,
        args.carrier_org_id,
        parse_timestamp(args.eta_request, "eta request"),
        cli_actor(args),
    )
    print(f"Created shipment {shipment.id} [{shipment.status}] dispatcher_token={shipment.dispatcher_token}")
    return 0


def run_advance_shipment(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    shipment = dispatch.advance_shipment_status(
        context, args.shipment_id, ShipmentStatus(args.status), cli_actor(args)
    )
    print(f"Shipment {shipment.id} is now {shipment.status}")
    return 0


def run_resolve(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the kind, id and status of the document a token opens."""
    resolution = access.resolve_by_token(context, args.token)
    print(f"{resolution.kind} {resolution.document.id} [{resolution.document.status}]")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
