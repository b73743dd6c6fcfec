"""Data access layer for TRS order management.

This module provides low-level helpers that read from and write to the
``trs_master.xlsx`` workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Document operations: the :class:`WorkbookStore` entity store, which keeps
   every collection in memory, indexes secondary fields, and guards writes
   with compare-and-swap checks.
"""


from __future__ import annotations

import configparser
import threading
import typing
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Type, TypeVar

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import Collection


CONFIG_FILE_NAME = "config.ini"

INDEXED_FIELDS: Tuple[str, ...] = (
    "access_token",
    "dispatcher_token",
    "customer_org_id",
    "status",
    "order_sheet_id",
    "source_order_sheet_id",
    "source_sales_order_id",
    "sales_order_id",
    "purchase_order_id",
)


class WriteConflict(Exception):
    """Raised when a guarded write finds the document changed since it was read."""


class DuplicateKey(Exception):
    """Raised when a create would duplicate a value declared unique."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    company_name: str
    schema_version: str
    guest_cut_off_hours: int = 24
    default_box_to_kg: Decimal = Decimal("20")
    lock_timeout: float = 5.0


@dataclass(frozen=True)
class OrderSheetRow:
    """In-memory view of a document from the ``OrderSheets`` collection."""

    id: str
    customer_org_id: Optional[str]
    customer_name: str
    status: str
    access_token: str
    is_guest: bool
    ship_date: Optional[datetime] = None
    cut_off_at: Optional[datetime] = None
    discount_amount: Decimal = Decimal("0")
    totals_kg: Decimal = Decimal("0")
    totals_amount: Decimal = Decimal("0")
    admin_comment: Optional[str] = None
    customer_comment: Optional[str] = None
    revision_comment: Optional[str] = None
    change_log: Optional[str] = None
    last_submitted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class OrderSheetItemRow:
    """In-memory view of one order sheet line (current or last-submitted)."""

    id: str
    order_sheet_id: str
    line_no: int
    product_id: str
    product_name: str
    unit: str
    qty_requested: Decimal
    unit_price: Decimal
    box_to_kg_factor: Decimal
    estimated_kg: Decimal
    amount: Decimal


@dataclass(frozen=True)
class SalesOrderRow:
    """In-memory view of a document from the ``SalesOrders`` collection."""

    id: str
    source_order_sheet_id: str
    customer_org_id: Optional[str]
    customer_name: str
    status: str
    totals_kg: Decimal
    totals_amount: Decimal
    discount_amount: Decimal = Decimal("0")
    active_shipment_id: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class SalesOrderItemRow:
    """In-memory view of a confirmed sales order line."""

    id: str
    sales_order_id: str
    line_no: int
    product_id: str
    product_name: str
    qty_kg: Decimal
    unit_price: Decimal
    amount: Decimal


@dataclass(frozen=True)
class PurchaseOrderRow:
    """In-memory view of a document from the ``PurchaseOrders`` collection."""

    id: str
    supplier_id: str
    supplier_name: str
    status: str
    access_token: str
    totals_kg: Decimal
    totals_amount: Decimal
    expected_arrival_date: Optional[datetime] = None
    memo: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class PurchaseOrderItemRow:
    """In-memory view of a purchase order line."""

    id: str
    purchase_order_id: str
    line_no: int
    product_id: Optional[str]
    product_name: str
    qty_kg: Decimal
    unit_cost: Decimal
    amount: Decimal


@dataclass(frozen=True)
class ShipmentRow:
    """In-memory view of a document from the ``Shipments`` collection."""

    id: str
    source_sales_order_id: str
    dispatch_mode: str
    status: str
    carrier_org_id: Optional[str] = None
    vehicle_number: Optional[str] = None
    driver_name: Optional[str] = None
    driver_phone: Optional[str] = None
    eta_at: Optional[datetime] = None
    eta_requested_at: Optional[datetime] = None
    dispatcher_token: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


RECORD_TYPES: Mapping[str, type] = {
    Collection.ORDER_SHEETS.value: OrderSheetRow,
    Collection.ORDER_SHEET_ITEMS.value: OrderSheetItemRow,
    Collection.SUBMITTED_ITEMS.value: OrderSheetItemRow,
    Collection.SALES_ORDERS.value: SalesOrderRow,
    Collection.SALES_ORDER_ITEMS.value: SalesOrderItemRow,
    Collection.PURCHASE_ORDERS.value: PurchaseOrderRow,
    Collection.PURCHASE_ORDER_ITEMS.value: PurchaseOrderItemRow,
    Collection.SHIPMENTS.value: ShipmentRow,
}

# Worksheet header row for each collection, in dataclass field order.
COLLECTION_COLUMNS: Mapping[str, Sequence[str]] = {
    name: [f.name for f in fields(record_type)] for name, record_type in RECORD_TYPES.items()
}


RecordT = TypeVar("RecordT")


@dataclass(frozen=True)
class Guard:
    """Compare-and-swap precondition: ``fields`` must still hold on the document."""

    collection: str
    doc_id: str
    fields: Mapping[str, Any]


@dataclass(frozen=True)
class WriteOp:
    """One write inside an atomic :meth:`WorkbookStore.apply_batch` call."""

    action: str
    collection: str
    doc_id: Optional[str] = None
    doc: Optional[Mapping[str, Any]] = None
    parent_field: Optional[str] = None
    docs: Tuple[Mapping[str, Any], ...] = field(default_factory=tuple)
    unique_on: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def create(cls, collection: str, doc: Mapping[str, Any], *, unique_on: Sequence[str] = ()) -> "WriteOp":
        return cls("create", collection, doc=doc, unique_on=tuple(unique_on))

    @classmethod
    def update(cls, collection: str, doc_id: str, partial: Mapping[str, Any]) -> "WriteOp":
        return cls("update", collection, doc_id=doc_id, doc=partial)

    @classmethod
    def delete(cls, collection: str, doc_id: str) -> "WriteOp":
        return cls("delete", collection, doc_id=doc_id)

    @classmethod
    def replace_children(
        cls,
        collection: str,
        parent_field: str,
        parent_id: str,
        docs: Sequence[Mapping[str, Any]],
    ) -> "WriteOp":
        return cls("replace_children", collection, doc_id=parent_id, parent_field=parent_field, docs=tuple(docs))


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Orders]`` and ``[Store]`` are
    optional and fall back to the dataclass defaults. Relative ``DataFile``
    paths are expanded against ``base_path`` (or the working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If an optional numeric entry cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        company_name = parser.get("System", "CompanyName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    guest_cut_off_hours = parser.getint("Orders", "GuestCutOffHours", fallback=24)
    default_box_to_kg = Decimal(parser.get("Orders", "DefaultBoxToKg", fallback="20"))
    lock_timeout = parser.getfloat("Store", "LockTimeoutSeconds", fallback=5.0)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        company_name=company_name,
        schema_version=schema_version,
        guest_cut_off_hours=guest_cut_off_hours,
        default_box_to_kg=default_box_to_kg,
        lock_timeout=lock_timeout,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _normalize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def to_cell(value: Any) -> Any:
    """Convert a document value into something ``openpyxl`` can store."""

    value = _normalize(value)
    if isinstance(value, datetime):
        return value.isoformat()
    # Stored as text so amounts survive the workbook without float rounding.
    if isinstance(value, Decimal):
        return str(value)
    return value


def _unwrap_optional(hint: Any) -> Tuple[Any, bool]:
    args = typing.get_args(hint)
    if typing.get_origin(hint) is typing.Union and type(None) in args:
        inner = [arg for arg in args if arg is not type(None)]
        return inner[0], True
    return hint, False


def _coerce(value: Any, hint: Any) -> Any:
    base, optional = _unwrap_optional(hint)
    value = _normalize(value)
    if value is None or (value == "" and base is not str):
        if optional:
            return None
        if base is Decimal:
            return Decimal("0")
        if base is bool:
            return False
        if base is int:
            return 0
        return ""
    if base is Decimal:
        return value if isinstance(value, Decimal) else Decimal(str(value))
    if base is datetime:
        return value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    if base is bool:
        if isinstance(value, str):
            return value.strip().lower() in {"true", "1", "yes"}
        return bool(value)
    if base is int:
        return int(value)
    return str(value)


def deserialize_record(record_type: Type[RecordT], document: Mapping[str, Any]) -> RecordT:
    """Convert a raw store document into a strongly typed row dataclass.

    Decimal columns become :class:`~decimal.Decimal`, ISO strings become
    :class:`~datetime.datetime`, and blank optional cells stay ``None``.
    Unknown keys in ``document`` are ignored.
    """

    hints = typing.get_type_hints(record_type)
    values = {f.name: _coerce(document.get(f.name), hints[f.name]) for f in fields(record_type)}
    return record_type(**values)


def serialize_record(record: Any) -> Dict[str, Any]:
    """Convert a row dataclass into a store document."""

    return {key: _normalize(value) for key, value in asdict(record).items()}


class WorkbookStore:
    """Entity store backed by an ``openpyxl`` workbook.

    Every worksheet listed in :data:`COLLECTION_COLUMNS` is loaded into memory
    once. Reads and writes operate on those documents under a single lock, and
    :meth:`flush` writes them back to the worksheets. Fields listed in
    :data:`INDEXED_FIELDS` are indexed so token, status, and parent lookups do
    not scan the collection.
    """

    def __init__(
        self,
        workbook: Workbook,
        *,
        lock_timeout: float = 5.0,
        columns: Mapping[str, Sequence[str]] = COLLECTION_COLUMNS,
    ) -> None:
        self.workbook = workbook
        self.lock_timeout = lock_timeout
        self._columns = {name: list(cols) for name, cols in columns.items()}
        self._lock = threading.RLock()
        self._documents: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._indexes: Dict[str, Dict[str, Dict[Any, Dict[str, None]]]] = {}
        self._load()

    # ------------------------------------------------------------------
    # Loading and flushing
    # ------------------------------------------------------------------

    def _load(self) -> None:
        for name in self._columns:
            sheet = self.workbook[name]
            headers = [cell.value for cell in sheet[1]]
            collection: Dict[str, Dict[str, Any]] = {}
            self._documents[name] = collection
            self._indexes[name] = {key: {} for key in INDEXED_FIELDS if key in headers}
            for raw in sheet.iter_rows(min_row=2, values_only=True):
                if not any(cell is not None for cell in raw):
                    continue
                doc = dict(zip(headers, raw))
                collection[str(doc["id"])] = doc
                self._index_add(name, doc)
            log.debug("Loaded %d documents from '%s'", len(collection), name)

    def flush(self) -> None:
        """Write every in-memory collection back into its worksheet."""

        with self._locked():
            for name, columns in self._columns.items():
                sheet = self.workbook[name]
                if sheet.max_row >= 2:
                    sheet.delete_rows(2, sheet.max_row - 1)
                for row_index, doc in enumerate(self._documents[name].values(), start=2):
                    for column_index, column in enumerate(columns, start=1):
                        sheet.cell(row=row_index, column=column_index, value=to_cell(doc.get(column)))
            log.debug("Flushed %d collections to workbook", len(self._columns))

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise TimeoutError(f"Entity store lock not acquired within {self.lock_timeout}s")
        try:
            yield
        finally:
            self._lock.release()

    # ------------------------------------------------------------------
    # Index maintenance
    # ------------------------------------------------------------------

    def _index_add(self, collection: str, doc: Mapping[str, Any]) -> None:
        for key, index in self._indexes[collection].items():
            value = _normalize(doc.get(key))
            if value is not None:
                index.setdefault(value, {})[str(doc["id"])] = None

    def _index_remove(self, collection: str, doc: Mapping[str, Any]) -> None:
        for key, index in self._indexes[collection].items():
            value = _normalize(doc.get(key))
            bucket = index.get(value)
            if bucket is not None:
                bucket.pop(str(doc["id"]), None)
                if not bucket:
                    del index[value]

    def _collection(self, collection: str) -> Dict[str, Dict[str, Any]]:
        try:
            return self._documents[_normalize(collection)]
        except KeyError as exc:
            raise KeyError(f"Unknown collection: {collection}") from exc

    # ------------------------------------------------------------------
    # Read contract
    # ------------------------------------------------------------------

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Return a copy of the document or ``None`` when it does not exist."""

        with self._locked():
            doc = self._collection(collection).get(doc_id)
            return dict(doc) if doc is not None else None

    def query(self, collection: str, **filters: Any) -> List[Dict[str, Any]]:
        """Return copies of every document whose fields equal ``filters``.

        The first indexed filter narrows the candidates; remaining filters are
        checked per document. Results keep insertion order.
        """

        name = _normalize(collection)
        with self._locked():
            documents = self._collection(name)
            wanted = {key: _normalize(value) for key, value in filters.items()}
            indexed = [key for key in wanted if key in self._indexes[name]]
            if indexed:
                bucket = self._indexes[name][indexed[0]].get(wanted[indexed[0]], {})
                candidates = [documents[doc_id] for doc_id in bucket]
            else:
                candidates = list(documents.values())
            return [
                dict(doc)
                for doc in candidates
                if all(_normalize(doc.get(key)) == value for key, value in wanted.items())
            ]

    # ------------------------------------------------------------------
    # Write contract
    # ------------------------------------------------------------------

    def create(self, collection: str, doc: Mapping[str, Any], *, unique_on: Sequence[str] = ()) -> Dict[str, Any]:
        """Insert ``doc`` and return the stored copy.

        Raises:
            DuplicateKey: If the id or any ``unique_on`` value already exists.
        """

        with self._locked():
            stored = self._check_create(_normalize(collection), doc, tuple(unique_on))
            self._apply_create(_normalize(collection), stored)
            return dict(stored)

    def update(
        self,
        collection: str,
        doc_id: str,
        partial: Mapping[str, Any],
        *,
        expected: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Merge ``partial`` into a document, optionally guarded by ``expected``.

        Raises:
            KeyError: If the document does not exist.
            WriteConflict: If any ``expected`` field no longer matches.
        """

        name = _normalize(collection)
        with self._locked():
            if expected:
                self._check_guard(Guard(name, doc_id, expected))
            self._require(name, doc_id)
            return dict(self._apply_update(name, doc_id, partial))

    def delete(self, collection: str, doc_id: str, *, expected: Optional[Mapping[str, Any]] = None) -> None:
        """Remove a document, optionally guarded by ``expected``."""

        name = _normalize(collection)
        with self._locked():
            if expected:
                self._check_guard(Guard(name, doc_id, expected))
            self._require(name, doc_id)
            self._apply_delete(name, doc_id)

    def replace_children(
        self,
        collection: str,
        parent_field: str,
        parent_id: str,
        docs: Sequence[Mapping[str, Any]],
    ) -> None:
        """Swap the full set of child documents belonging to ``parent_id``."""

        self.apply_batch([WriteOp.replace_children(collection, parent_field, parent_id, docs)])

    def apply_batch(self, operations: Sequence[WriteOp], *, expected: Optional[Guard] = None) -> None:
        """Apply ``operations`` all-or-nothing under a single lock acquisition.

        The guard and every precondition (existing targets, unique values) are
        checked before the first write, so a rejected batch leaves the store
        untouched.
        """

        with self._locked():
            if expected is not None:
                self._check_guard(expected)
            prepared: List[Tuple[WriteOp, Any]] = []
            for op in operations:
                name = _normalize(op.collection)
                if op.action == "create":
                    prepared.append((op, self._check_create(name, op.doc or {}, op.unique_on)))
                elif op.action in ("update", "delete"):
                    self._require(name, op.doc_id)
                    prepared.append((op, None))
                elif op.action == "replace_children":
                    self._collection(name)
                    prepared.append((op, [self._with_id(doc) for doc in op.docs]))
                else:
                    raise ValueError(f"Unsupported batch action: {op.action}")

            for op, payload in prepared:
                name = _normalize(op.collection)
                if op.action == "create":
                    self._apply_create(name, payload)
                elif op.action == "update":
                    self._apply_update(name, op.doc_id, op.doc or {})
                elif op.action == "delete":
                    self._apply_delete(name, op.doc_id)
                else:
                    for child in self.query(name, **{op.parent_field: op.doc_id}):
                        self._apply_delete(name, child["id"])
                    for child in payload:
                        child[op.parent_field] = op.doc_id
                        self._apply_create(name, child)
            log.debug("Applied batch of %d operations", len(prepared))

    # ------------------------------------------------------------------
    # Internal helpers (caller holds the lock)
    # ------------------------------------------------------------------

    @staticmethod
    def _with_id(doc: Mapping[str, Any]) -> Dict[str, Any]:
        stored = {key: _normalize(value) for key, value in doc.items()}
        if not stored.get("id"):
            stored["id"] = uuid.uuid4().hex
        return stored

    def _require(self, collection: str, doc_id: Optional[str]) -> Dict[str, Any]:
        doc = self._collection(collection).get(doc_id) if doc_id is not None else None
        if doc is None:
            raise KeyError(f"Document not found: {collection}/{doc_id}")
        return doc

    def _check_guard(self, guard: Guard) -> None:
        doc = self._require(_normalize(guard.collection), guard.doc_id)
        for key, value in guard.fields.items():
            if _normalize(doc.get(key)) != _normalize(value):
                raise WriteConflict(
                    f"{guard.collection}/{guard.doc_id}: expected {key}={_normalize(value)!r}, "
                    f"found {_normalize(doc.get(key))!r}"
                )

    def _check_create(self, collection: str, doc: Mapping[str, Any], unique_on: Tuple[str, ...]) -> Dict[str, Any]:
        stored = self._with_id(doc)
        documents = self._collection(collection)
        if stored["id"] in documents:
            raise DuplicateKey(f"{collection}/{stored['id']} already exists")
        for key in unique_on:
            if self.query(collection, **{key: stored.get(key)}):
                raise DuplicateKey(f"{collection} already holds {key}={stored.get(key)!r}")
        return stored

    def _apply_create(self, collection: str, doc: Dict[str, Any]) -> None:
        self._documents[collection][doc["id"]] = doc
        self._index_add(collection, doc)

    def _apply_update(self, collection: str, doc_id: str, partial: Mapping[str, Any]) -> Dict[str, Any]:
        doc = self._documents[collection][doc_id]
        self._index_remove(collection, doc)
        doc.update({key: _normalize(value) for key, value in partial.items() if key != "id"})
        self._index_add(collection, doc)
        return doc

    def _apply_delete(self, collection: str, doc_id: str) -> None:
        doc = self._documents[collection].pop(doc_id)
        self._index_remove(collection, doc)
