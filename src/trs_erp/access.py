"""Token-based access and account activation gating.

Customers, suppliers and carriers reach their documents through opaque access
tokens rather than a login. Resolution never looks at deadlines: a token keeps
resolving after ``cut_off_at`` has passed, and callers decide from the returned
status whether to render an active or read-only view.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Union

from . import data_manager, log
from .constants import ActorStatus, Collection
from .core_logic import ActivationRequired, Actor, NotFound, RuntimeContext


@dataclass(frozen=True)
class TokenResolution:
    """Result of :func:`resolve_by_token`: which document kind a token opened."""

    kind: str
    document: Union[data_manager.OrderSheetRow, data_manager.PurchaseOrderRow, data_manager.ShipmentRow]


def _resolve(context: RuntimeContext, collection: Collection, token_field: str, token: str) -> Optional[dict[str, Any]]:
    if not token:
        return None
    matches = context.store.query(collection.value, **{token_field: token})
    if len(matches) > 1:
        log.error("Token maps to %d %s documents", len(matches), collection.value)
    return matches[0] if matches else None


def resolve_order_sheet(context: RuntimeContext, token: str) -> data_manager.OrderSheetRow:
    """Return the order sheet granted by ``token``.

    Raises:
        NotFound: If no order sheet carries the token.
    """
    document = _resolve(context, Collection.ORDER_SHEETS, "access_token", token)
    if document is None:
        log.warning("Order sheet token did not resolve")
        raise NotFound("Unknown order sheet token")
    return data_manager.deserialize_record(data_manager.OrderSheetRow, document)


def resolve_purchase_order(context: RuntimeContext, token: str) -> data_manager.PurchaseOrderRow:
    """Return the purchase order granted by ``token``.

    Raises:
        NotFound: If no purchase order carries the token.
    """
    document = _resolve(context, Collection.PURCHASE_ORDERS, "access_token", token)
    if document is None:
        log.warning("Purchase order token did not resolve")
        raise NotFound("Unknown purchase order token")
    return data_manager.deserialize_record(data_manager.PurchaseOrderRow, document)


def resolve_shipment(context: RuntimeContext, dispatcher_token: str) -> data_manager.ShipmentRow:
    """Return the 3PL shipment a carrier was invited to fill in."""

    document = _resolve(context, Collection.SHIPMENTS, "dispatcher_token", dispatcher_token)
    if document is None:
        log.warning("Dispatcher token did not resolve")
        raise NotFound("Unknown dispatcher token")
    return data_manager.deserialize_record(data_manager.ShipmentRow, document)


def resolve_by_token(context: RuntimeContext, token: str) -> TokenResolution:
    """Resolve any public token, trying order sheets, purchase orders, then shipments.

    Raises:
        NotFound: If the token opens nothing.
    """
    for kind, resolver in (
        ("order_sheet", resolve_order_sheet),
        ("purchase_order", resolve_purchase_order),
        ("shipment", resolve_shipment),
    ):
        try:
            return TokenResolution(kind=kind, document=resolver(context, token))
        except NotFound:
            continue
    raise NotFound("Unknown access token")


def requires_activation(actor: Optional[Actor], sheet: data_manager.OrderSheetRow) -> bool:
    """Decide whether ``actor`` must activate their account before acting on ``sheet``.

    Guest sheets never require activation. Otherwise only an actor whose
    organization is ACTIVE may proceed; an anonymous caller on a member sheet
    always needs to activate.
    """
    if sheet.is_guest:
        return False
    if actor is None:
        return True
    return actor.status != ActorStatus.ACTIVE


def ensure_activated(actor: Optional[Actor], sheet: data_manager.OrderSheetRow) -> None:
    """Raise :class:`ActivationRequired` when :func:`requires_activation` says so."""

    if requires_activation(actor, sheet):
        invite_token = actor.invite_token if actor is not None else None
        log.warning(
            "Actor '%s' must activate before acting on order sheet '%s'",
            actor.id if actor is not None else "<anonymous>",
            sheet.id,
        )
        raise ActivationRequired(
            f"Account activation required before acting on order sheet {sheet.id}",
            invite_token=invite_token,
        )
