"""Shared pytest fixtures and utilities for StockFlow tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

import pytest

# Running from a checkout must not require installing the package first.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = str(PROJECT_ROOT / "src")
if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)

from stockflow import cli, constants, core_logic, data_manager  # noqa: E402
from stockflow.models import AppState, Customer, Product  # noqa: E402
from stockflow.storage import Session, StateStore  # noqa: E402
from stockflow.sync import RemoteMirror, RemoteSyncError, SyncOutbox  # noqa: E402

_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataDir = {data_dir}\n"
    "SchemaVersion = {schema_version}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """A temporary config.ini and the data directory it points at."""

    directory: Path
    config_path: Path
    data_dir: Path
    schema_version: str


@dataclass
class InMemoryDocumentStore:
    """Remote document store double keeping documents in a dict.

    ``upsert`` merges top-level keys like the HTTP store's ``PATCH``. Setting
    ``fail_fetch`` or ``fail_upsert`` makes the matching call raise
    :class:`RemoteSyncError`.
    """

    documents: Dict[Tuple[str, str], Dict[str, Any]] = field(default_factory=dict)
    fetches: List[Tuple[str, str]] = field(default_factory=list)
    upserts: List[Tuple[str, str]] = field(default_factory=list)
    fail_fetch: bool = False
    fail_upsert: bool = False

    def fetch(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        self.fetches.append((collection, document_id))
        if self.fail_fetch:
            raise RemoteSyncError("remote unavailable")
        document = self.documents.get((collection, document_id))
        return dict(document) if document is not None else None

    def upsert(self, collection: str, document_id: str, payload: Mapping[str, Any]) -> None:
        self.upserts.append((collection, document_id))
        if self.fail_upsert:
            raise RemoteSyncError("remote unavailable")
        self.documents.setdefault((collection, document_id), {}).update(payload)


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Put sys.path back the way it was once the session ends."""

    saved = list(sys.path)
    yield
    sys.path[:] = saved


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Checkout directory holding src/ and tests/."""

    return PROJECT_ROOT


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Write isolated config.ini files; each call gets its own directory."""

    def _create_config(
        *,
        make_relative: bool = False,
        schema_version: str = constants.EXPECTED_SCHEMA_VERSION,
        extra: str = "",
    ) -> ConfigBundle:
        root = tmp_path / f"store_{uuid.uuid4().hex[:8]}"
        root.mkdir(parents=True)
        data_dir = root / "data"
        text = _CONFIG_TEMPLATE.format(
            data_dir="data" if make_relative else data_dir,
            schema_version=schema_version,
        )
        ini = root / "config.ini"
        ini.write_text(text + extra, encoding="utf-8")
        return ConfigBundle(
            directory=root,
            config_path=ini,
            data_dir=data_dir,
            schema_version=schema_version,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Path of a valid config.ini with an absolute DataDir."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Guest context loaded from ``config_file`` the way the CLI does it."""

    loaded = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(loaded)
    return loaded


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Bare parser for registering individual command specs."""

    return argparse.ArgumentParser(prog="stockflow", description="StockFlow CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Sub-command action of ``cli_parser``."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Three no-op specs named alpha, beta and gamma."""

    def _noop(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_noop(name) for name in ("alpha", "beta", "gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Settings pointing at an empty data directory under ``tmp_path``."""

    return data_manager.ConfigSettings(
        data_dir=tmp_path / "data",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def store(settings: data_manager.ConfigSettings) -> StateStore:
    """Return a gateway over an empty temporary data directory."""

    return StateStore(settings.data_dir)


@pytest.fixture
def context(settings: data_manager.ConfigSettings, store: StateStore) -> core_logic.RuntimeContext:
    """Assemble a guest runtime context from injected settings and store."""

    return core_logic.RuntimeContext(settings=settings, store=store)


@pytest.fixture
def remote_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def mirror(tmp_path: Path, remote_store: InMemoryDocumentStore) -> RemoteMirror:
    """Mirror backed by the in-memory remote and a temporary outbox file."""

    return RemoteMirror(store=remote_store, outbox=SyncOutbox(tmp_path / "outbox.json"))


@pytest.fixture
def owner_session() -> Session:
    return Session("owner@example.com")


@pytest.fixture
def product_factory() -> Callable[..., Product]:
    """Build products with sensible defaults; keyword arguments override."""

    def _make(**overrides: Any) -> Product:
        values: Dict[str, Any] = {
            "id": "p1",
            "barcode": "BC-001",
            "name": "Widget",
            "description": "",
            "category": "General",
            "buy_price": Decimal("60"),
            "sell_price": Decimal("100"),
            "stock": 10,
            "total_sold": 0,
        }
        values.update(overrides)
        return Product(**values)

    return _make


@pytest.fixture
def customer_factory() -> Callable[..., Customer]:
    def _make(**overrides: Any) -> Customer:
        values: Dict[str, Any] = {
            "id": "c1",
            "name": "Asha",
            "phone": "9876543210",
            "last_visit": "2024-01-01T09:00:00+00:00",
        }
        values.update(overrides)
        return Customer(**values)

    return _make


@pytest.fixture
def seed_state(context: core_logic.RuntimeContext) -> Callable[..., AppState]:
    """Persist an aggregate for the context's session and return it."""

    def _seed(**fields: Any) -> AppState:
        return context.store.save(context.session, AppState(**fields))

    return _seed


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Freeze the clock used by ledger entries and visit timestamps."""

    def _freeze(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _freeze
