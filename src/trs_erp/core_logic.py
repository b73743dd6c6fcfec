"""Business logic foundation for TRS order management.

This module holds what every lifecycle component shares: the runtime context
that bundles settings, workbook and entity store, the domain error taxonomy,
the actor contract, the notifier seam, and small validation and identifier
helpers. Component modules (``access``, ``order_sheets``, ``fulfillment``,
``dispatch``) build on it and never talk to ``openpyxl`` directly.
"""

from __future__ import annotations

import secrets
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional, Protocol, Type, TypeVar

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, ActorRole, ActorStatus, NotifyChannel, OPERATOR_ROLES


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class NotFound(BusinessRuleViolation):
    """Raised when an id or access token resolves to nothing."""


class InvalidTransition(BusinessRuleViolation):
    """Raised when a status guard rejects the requested transition."""


class ValidationError(BusinessRuleViolation):
    """Raised when a required field is missing or out of range."""


class ActivationRequired(BusinessRuleViolation):
    """Raised when the actor must activate their account before acting.

    ``invite_token`` keys the activation flow the caller should redirect to.
    """

    def __init__(self, message: str, *, invite_token: Optional[str] = None) -> None:
        super().__init__(message)
        self.invite_token = invite_token


class DuplicateDispatch(BusinessRuleViolation):
    """Raised when a sales order already has a non-terminal shipment."""


class ConcurrentModification(BusinessRuleViolation):
    """Raised when a conditional write loses to a concurrent change."""


@dataclass(frozen=True)
class Actor:
    """The opaque current actor handed to the core by the identity layer."""

    id: str
    role: ActorRole
    status: ActorStatus
    org_id: Optional[str] = None
    invite_token: Optional[str] = None

    @property
    def is_operator(self) -> bool:
        return self.role in OPERATOR_ROLES


class Notifier(Protocol):
    """Fire-and-forget delivery of a message to a recipient."""

    def notify(self, channel: NotifyChannel, recipient_ref: str, payload: Mapping[str, Any]) -> None:
        ...


class LoggingNotifier:
    """Notifier that records every message in the package log."""

    def notify(self, channel: NotifyChannel, recipient_ref: str, payload: Mapping[str, Any]) -> None:
        log.info("Notify [%s] %s: %s", channel.value, recipient_ref, dict(payload))


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook and store references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    store: data_manager.WorkbookStore
    notifier: Notifier = field(default_factory=LoggingNotifier, compare=False)


RecordT = TypeVar("RecordT")


def utc_now() -> datetime:
    """Return the current timezone-aware UTC time."""

    return datetime.now(UTC)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else utc_now()


def build_context(
    settings: data_manager.ConfigSettings,
    workbook: Workbook,
    *,
    notifier: Optional[Notifier] = None,
) -> RuntimeContext:
    """Wrap an open workbook in a :class:`RuntimeContext` with a fresh store."""

    store = data_manager.WorkbookStore(workbook, lock_timeout=settings.lock_timeout)
    return RuntimeContext(
        settings=settings,
        workbook=workbook,
        store=store,
        notifier=notifier if notifier is not None else LoggingNotifier(),
    )


def load_runtime_context(config_path: Optional[Path] = None, *, notifier: Optional[Notifier] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    The helper resolves ``config.ini``, parses settings, opens the workbook and
    loads every collection into a :class:`data_manager.WorkbookStore`.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        notifier (Notifier | None): Delivery backend; defaults to
            :class:`LoggingNotifier`.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_context(settings, workbook, notifier=notifier)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Flush the entity store into the workbook and save it to disk."""

    context.store.flush()
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return build_context(context.settings, workbook, notifier=context.notifier)


def generate_document_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable document identifier.

    Returns:
        str: ``{prefix}{YYYYMMDDHHMMSSffffff}{4 hex}``. The random suffix keeps
            identifiers unique when concurrent callers share a microsecond.
    """
    when = _resolve_timestamp(when)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}{secrets.token_hex(2)}"


def generate_access_token() -> str:
    """Mint an opaque, URL-safe access token with no embedded expiry."""

    return secrets.token_urlsafe(24)


def require_text(value: Optional[str], field_name: str) -> str:
    """Return ``value`` stripped, or raise :class:`ValidationError` when blank."""

    if value is None or not str(value).strip():
        log.error("Validation failed: '%s' is required", field_name)
        raise ValidationError(f"{field_name} is required")
    return str(value).strip()


def require_nonnegative(amount: Decimal, field_name: str) -> Decimal:
    """Validate that a monetary or weight value is zero or positive."""

    if amount < Decimal("0"):
        log.error("Validation failed: %s=%s is negative", field_name, amount)
        raise ValidationError(f"{field_name} must be zero or positive")
    return amount


def net_amount(gross: Decimal, discount: Decimal) -> Decimal:
    """Apply ``discount`` to ``gross`` without ever going below zero."""

    return max(Decimal("0"), gross - discount)


def load_record(
    context: RuntimeContext,
    collection: str,
    record_type: Type[RecordT],
    doc_id: str,
) -> RecordT:
    """Fetch one document and convert it into ``record_type``.

    Raises:
        NotFound: If the store holds no document with ``doc_id``.
    """
    document = context.store.get(collection, doc_id)
    if document is None:
        log.warning("Lookup failed for %s '%s'", collection, doc_id)
        raise NotFound(f"Unknown {collection} id: {doc_id}")
    return data_manager.deserialize_record(record_type, document)


@contextmanager
def conditional_write(collection: str, doc_id: str) -> Iterator[None]:
    """Translate DAL write failures into domain errors.

    ``WriteConflict`` becomes :class:`ConcurrentModification` and a vanished
    document becomes :class:`NotFound`.
    """
    try:
        yield
    except data_manager.WriteConflict as exc:
        log.warning("Concurrent modification on %s '%s': %s", collection, doc_id, exc)
        raise ConcurrentModification(str(exc)) from exc
    except KeyError as exc:
        log.warning("Document %s '%s' disappeared during write", collection, doc_id)
        raise NotFound(f"Unknown {collection} id: {doc_id}") from exc


def send_notification(
    context: RuntimeContext,
    recipient_ref: Optional[str],
    payload: Mapping[str, Any],
    *,
    channel: NotifyChannel = NotifyChannel.KAKAO,
) -> bool:
    """Deliver a notification without letting failures escape.

    Delivery runs on the caller's thread after the business write has
    committed, so a slow notifier delays the return of the operation that sent
    it but never its outcome. Notifiers backed by network I/O should hand the
    message to a queue or worker and return quickly.

    Returns:
        bool: ``True`` when the notifier accepted the message.
    """
    if not recipient_ref:
        log.debug("Skipping notification without recipient: %s", dict(payload))
        return False
    try:
        context.notifier.notify(channel, recipient_ref, payload)
    except Exception:
        log.exception("Notification to '%s' failed", recipient_ref)
        return False
    return True
