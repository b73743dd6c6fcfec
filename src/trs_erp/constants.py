"""Enumerations shared across TRS order-management modules.

Centralises domain constants so that the data access layer (DAL), business
logic layer (BLL), and the CLI rely on a single source of truth for status
names, roles, and collection identifiers.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class OrderSheetStatus(str, Enum):
    """Enumerate the states of a customer-facing order sheet."""

    DRAFT = "DRAFT"
    SENT = "SENT"
    REVISION = "REVISION"
    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"


class SalesOrderStatus(str, Enum):
    """Enumerate the states of a confirmed sales order."""

    CREATED = "CREATED"
    PO_GENERATED = "PO_GENERATED"
    SHIPPED = "SHIPPED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PurchaseOrderStatus(str, Enum):
    """Enumerate the states of a supplier purchase order."""

    DRAFT = "DRAFT"
    SENT = "SENT"
    CONFIRMED = "CONFIRMED"


class ShipmentStatus(str, Enum):
    """Enumerate the states of a shipment."""

    PREPARING = "PREPARING"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"


class ItemUnit(str, Enum):
    """Enumerate the units a customer may order in."""

    KG = "kg"
    BOX = "box"


class ActorRole(str, Enum):
    """Enumerate the roles an authenticated actor can hold."""

    ADMIN = "ADMIN"
    OPS = "OPS"
    ACCOUNTING = "ACCOUNTING"
    WAREHOUSE = "WAREHOUSE"
    CUSTOMER = "CUSTOMER"
    SUPPLIER = "SUPPLIER"
    CARRIER = "3PL"


class ActorStatus(str, Enum):
    """Enumerate account states of an actor's organization."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class DispatchMode(str, Enum):
    """Enumerate how a shipment was dispatched."""

    DIRECT = "DIRECT"
    THIRD_PARTY = "3PL"


class NotifyChannel(str, Enum):
    """Enumerate notification delivery channels."""

    KAKAO = "kakao"
    EMAIL = "email"


class Collection(str, Enum):
    """Enumerate the document collections (worksheets) managed by the DAL."""

    ORDER_SHEETS = "OrderSheets"
    ORDER_SHEET_ITEMS = "OrderSheetItems"
    SUBMITTED_ITEMS = "SubmittedItems"
    SALES_ORDERS = "SalesOrders"
    SALES_ORDER_ITEMS = "SalesOrderItems"
    PURCHASE_ORDERS = "PurchaseOrders"
    PURCHASE_ORDER_ITEMS = "PurchaseOrderItems"
    SHIPMENTS = "Shipments"


OPERATOR_ROLES: frozenset[ActorRole] = frozenset({ActorRole.ADMIN, ActorRole.OPS})

# Sheets in these states accept item edits from the token holder.
HOLDER_EDITABLE_STATUSES: frozenset[OrderSheetStatus] = frozenset(
    {OrderSheetStatus.SENT, OrderSheetStatus.REVISION}
)

ACTIVE_SHIPMENT_STATUSES: frozenset[ShipmentStatus] = frozenset(
    {ShipmentStatus.PREPARING, ShipmentStatus.IN_TRANSIT}
)


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "OrderSheetStatus",
    "SalesOrderStatus",
    "PurchaseOrderStatus",
    "ShipmentStatus",
    "ItemUnit",
    "ActorRole",
    "ActorStatus",
    "DispatchMode",
    "NotifyChannel",
    "Collection",
    "OPERATOR_ROLES",
    "HOLDER_EDITABLE_STATUSES",
    "ACTIVE_SHIPMENT_STATUSES",
]
