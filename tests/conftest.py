"""Shared pytest fixtures and utilities for TRS order-management tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Iterator, List, Mapping, Tuple

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from trs_erp import cli, constants, core_logic, data_manager, order_sheets  # noqa: E402
from trs_erp.setup_excel import build_master_workbook, create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "CompanyName = {company_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Orders]\n"
    "GuestCutOffHours = {guest_cut_off_hours}\n"
    "DefaultBoxToKg = 20\n\n"
    "[Store]\n"
    "LockTimeoutSeconds = 2\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    company_name: str


@dataclass
class RecordingNotifier:
    """Notifier double that keeps every delivered message."""

    messages: List[Tuple[constants.NotifyChannel, str, Mapping[str, Any]]] = field(default_factory=list)

    def notify(self, channel: constants.NotifyChannel, recipient_ref: str, payload: Mapping[str, Any]) -> None:
        self.messages.append((channel, recipient_ref, dict(payload)))

    def events(self) -> List[str]:
        return [payload["event"] for _, _, payload in self.messages]


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "trs_master.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        company_name: str = "Test Meats",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        guest_cut_off_hours: int = 24,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                company_name=company_name,
                schema_version=schema_version,
                guest_cut_off_hours=guest_cut_off_hours,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            company_name=company_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def runtime_context(config_file: Path, notifier: RecordingNotifier) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file, notifier=notifier)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# In-memory context fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for in-memory contexts."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "trs_master.xlsx",
        company_name="Test Meats",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        lock_timeout=2.0,
    )


@pytest.fixture
def context(settings: data_manager.ConfigSettings, notifier: RecordingNotifier) -> core_logic.RuntimeContext:
    """Assemble a runtime context over a fresh, never-saved workbook."""

    return core_logic.build_context(settings, build_master_workbook(), notifier=notifier)


@pytest.fixture
def make_actor() -> Callable[..., core_logic.Actor]:
    """Factory for actors with sensible defaults."""

    def _make(
        role: constants.ActorRole = constants.ActorRole.CUSTOMER,
        status: constants.ActorStatus = constants.ActorStatus.ACTIVE,
        *,
        actor_id: str = "U-1",
        org_id: str | None = "ORG-1",
        invite_token: str | None = None,
    ) -> core_logic.Actor:
        return core_logic.Actor(actor_id, role, status, org_id=org_id, invite_token=invite_token)

    return _make


@pytest.fixture
def operator(make_actor: Callable[..., core_logic.Actor]) -> core_logic.Actor:
    return make_actor(constants.ActorRole.ADMIN, actor_id="ADMIN-1", org_id=None)


@pytest.fixture
def customer(make_actor: Callable[..., core_logic.Actor]) -> core_logic.Actor:
    return make_actor(constants.ActorRole.CUSTOMER, actor_id="CUST-1", org_id="ORG-1")


@pytest.fixture
def sent_sheet_factory(
    context: core_logic.RuntimeContext,
    operator: core_logic.Actor,
) -> Callable[..., data_manager.OrderSheetRow]:
    """Create SENT order sheets for ``ORG-1`` (or guests) through the BLL."""

    def _create(*, is_guest: bool = False, items: Tuple[order_sheets.ItemInput, ...] = ()) -> data_manager.OrderSheetRow:
        command = order_sheets.CreateOrderSheetCommand(
            customer_name="Guest Butcher" if is_guest else "Seoul Butchery",
            customer_org_id=None if is_guest else "ORG-1",
            is_guest=is_guest,
            items=items,
            issue_now=True,
        )
        return order_sheets.create_order_sheet(context, command, operator)

    return _create


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="trs-cli", description="TRS CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_table_entry() -> tuple[str, cli.CommandSpec]:
    """Provide a placeholder command table entry for dispatch tests."""

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        execute.__dict__["called"] = True
        return 0

    def register(
        subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    ) -> argparse.ArgumentParser:
        return subparsers.add_parser("catalog-test")

    spec = cli.CommandSpec(
        name="catalog-test",
        help_text="help",
        register=register,
        execute=execute,
    )
    return "catalog-test", spec
