"""Unit tests for the shared business-logic foundation."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

import trs_erp
from trs_erp import constants, core_logic, data_manager
from trs_erp.setup_excel import build_master_workbook


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings, workbook and store into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "trs_master.xlsx",
        company_name="TRS",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )
    workbook = build_master_workbook()

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    open_workbook = Mock(return_value=workbook)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.workbook is workbook
    assert context.store.workbook is workbook
    assert isinstance(context.notifier, core_logic.LoggingNotifier)
    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(parsed_settings.data_file)


def test_ensure_schema_version_rejects_mismatch(context):
    """Schema mismatches should surface a RuntimeError with clear messaging."""

    bad_context = replace(context, settings=replace(context.settings, schema_version="0.9"))
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)


def test_persist_and_refresh_context_round_trip(runtime_context):
    """Persisted documents should survive a reload; unsaved ones should not."""

    store = runtime_context.store
    store.create(constants.Collection.ORDER_SHEETS, {"id": "OS1", "customer_name": "A", "status": "DRAFT"})
    core_logic.persist_context(runtime_context)
    store.create(constants.Collection.ORDER_SHEETS, {"id": "OS2", "customer_name": "B", "status": "DRAFT"})

    refreshed = core_logic.refresh_context(runtime_context)

    assert refreshed.store.get(constants.Collection.ORDER_SHEETS, "OS1") is not None
    assert refreshed.store.get(constants.Collection.ORDER_SHEETS, "OS2") is None
    assert refreshed.notifier is runtime_context.notifier


# ---------------------------------------------------------------------------
# Identifiers and validators
# ---------------------------------------------------------------------------


def test_utc_now_uses_patched_clock(set_fixed_datetime):
    moment = set_fixed_datetime(datetime(2025, 1, 2, 3, 4, 5, tzinfo=UTC))
    assert core_logic.utc_now() == moment


def test_generate_document_id_embeds_timestamp():
    moment = datetime(2025, 1, 2, 3, 4, 5, 678901, tzinfo=UTC)
    document_id = core_logic.generate_document_id("SO", when=moment)

    assert document_id.startswith("SO20250102030405678901")
    assert len(document_id) == len("SO20250102030405678901") + 4


def test_generate_document_id_is_unique_within_same_instant():
    moment = datetime(2025, 1, 2, tzinfo=UTC)
    ids = {core_logic.generate_document_id("OS", when=moment) for _ in range(20)}
    assert len(ids) > 1


def test_generate_access_token_is_opaque_and_unique():
    tokens = {core_logic.generate_access_token() for _ in range(50)}
    assert len(tokens) == 50
    assert all(len(token) >= 32 for token in tokens)


@pytest.mark.parametrize("value", [None, "", "   "])
def test_require_text_rejects_blank_values(value):
    with pytest.raises(core_logic.ValidationError):
        core_logic.require_text(value, "comment")


def test_require_text_strips_whitespace():
    assert core_logic.require_text("  fix qty ", "comment") == "fix qty"


def test_require_nonnegative_rejects_negative_amounts():
    assert core_logic.require_nonnegative(Decimal("0"), "discount") == Decimal("0")
    with pytest.raises(core_logic.ValidationError):
        core_logic.require_nonnegative(Decimal("-1"), "discount")


@pytest.mark.parametrize(
    "gross, discount, expected",
    [
        (Decimal("50000"), Decimal("5000"), Decimal("45000")),
        (Decimal("1000"), Decimal("1000"), Decimal("0")),
        (Decimal("1000"), Decimal("2500"), Decimal("0")),
    ],
)
def test_net_amount_floors_at_zero(gross, discount, expected):
    assert core_logic.net_amount(gross, discount) == expected


# ---------------------------------------------------------------------------
# Store access helpers
# ---------------------------------------------------------------------------


def test_load_record_raises_not_found(context):
    with pytest.raises(core_logic.NotFound):
        core_logic.load_record(context, constants.Collection.SALES_ORDERS.value, data_manager.SalesOrderRow, "SO-X")


def test_conditional_write_translates_conflicts():
    with pytest.raises(core_logic.ConcurrentModification):
        with core_logic.conditional_write("OrderSheets", "OS1"):
            raise data_manager.WriteConflict("status changed")


def test_conditional_write_translates_missing_documents():
    with pytest.raises(core_logic.NotFound):
        with core_logic.conditional_write("OrderSheets", "OS1"):
            raise KeyError("OS1")


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


def test_send_notification_delivers_to_notifier(context, notifier):
    delivered = core_logic.send_notification(context, "ORG-1", {"event": "ping"})

    assert delivered is True
    assert notifier.messages == [(constants.NotifyChannel.KAKAO, "ORG-1", {"event": "ping"})]


def test_send_notification_swallows_and_logs_failures(context, caplog):
    """A failing notifier must never propagate into the caller."""

    failing = replace(context, notifier=Mock(notify=Mock(side_effect=ConnectionError("down"))))
    caplog.set_level("ERROR")

    assert core_logic.send_notification(failing, "ORG-1", {"event": "ping"}) is False
    assert any("Notification to 'ORG-1' failed" in record.getMessage() for record in caplog.records)


def test_send_notification_skips_missing_recipient(context, notifier):
    assert core_logic.send_notification(context, None, {"event": "ping"}) is False
    assert notifier.messages == []


def test_send_notification_returns_after_notifier_finishes(context):
    """Delivery is synchronous: the notifier has run by the time the call returns."""

    calls = []
    recording = replace(context, notifier=Mock(notify=Mock(side_effect=lambda *args: calls.append(args))))

    assert core_logic.send_notification(recording, "ORG-1", {"event": "ping"}) is True
    assert calls == [(constants.NotifyChannel.KAKAO, "ORG-1", {"event": "ping"})]


def test_package_logger_is_named_for_the_project():
    assert trs_erp.log.name == "trs_erp"
    assert trs_erp.LOG_FILE.name == "trs_erp.log"
    assert trs_erp.LOG_FILE.parent == trs_erp.LOG_DIR


def test_actor_is_operator_only_for_admin_and_ops(make_actor):
    assert make_actor(constants.ActorRole.ADMIN).is_operator
    assert make_actor(constants.ActorRole.OPS).is_operator
    assert not make_actor(constants.ActorRole.CUSTOMER).is_operator
    assert not make_actor(constants.ActorRole.CARRIER).is_operator
