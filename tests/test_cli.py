"""Tests covering the CLI wiring, argument translation and end-to-end runs."""

from __future__ import annotations

import argparse
import logging
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

import stockflow
from stockflow import auth, cli, core_logic
from stockflow.constants import ReportPeriod


def _run(config_file: Path, *argv: str) -> int:
    return cli.main(["--config", str(config_file), *argv])


# ---------------------------------------------------------------------------
# Parser and command table
# ---------------------------------------------------------------------------


def test_build_parser_sets_prog_and_config():
    """The top-level parser is named after the tool and accepts --config."""

    parser = cli.build_parser()
    assert parser.prog == "stockflow"
    assert parser.parse_args(["--config", "x.ini"]).config == Path("x.ini")


def test_configure_subcommands_registers_every_command():
    """Account, write and read commands all land in one table."""

    table = cli.configure_subcommands(cli.build_parser())

    assert {"register", "login", "logout", "passwd", "sync", "reset"} <= set(table)
    assert {"add-product", "sale", "return", "pay", "profile", "delete-customer"} <= set(table)
    assert {"products", "customers", "log", "report", "statement", "dues", "invoice", "catalog", "barcode", "export"} <= set(table)


def test_build_command_table_rejects_duplicates(command_spec_iterable):
    """Two specs with the same name are a wiring error."""

    table = cli.build_command_table(command_spec_iterable)
    assert list(table) == ["alpha", "beta", "gamma"]

    with pytest.raises(ValueError):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


def test_dispatch_command_routes_and_rejects_unknown(command_spec_iterable, runtime_context):
    """Known commands execute; unknown or missing ones raise KeyError."""

    table = cli.build_command_table(command_spec_iterable)

    assert cli.dispatch_command(runtime_context, argparse.Namespace(command="beta"), table) == 0
    with pytest.raises(KeyError):
        cli.dispatch_command(runtime_context, argparse.Namespace(command="delta"), table)
    with pytest.raises(KeyError):
        cli.dispatch_command(runtime_context, argparse.Namespace(), table)


def test_spec_register_adds_parser(subparsers_action, cli_parser):
    """A spec's registrar wires a sub-parser that sets the command name."""

    spec = cli.register_pay_command(subparsers_action)
    spec.register(subparsers_action)

    args = cli_parser.parse_args(["pay", "--customer-id", "c1", "--amount", "12.50"])
    assert args.command == "pay"
    assert args.amount == Decimal("12.50")
    assert args.method == "Cash"


# ---------------------------------------------------------------------------
# Argument types and translation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("BC-001", ("BC-001", 1, Decimal("0"))),
        ("BC-001:3", ("BC-001", 3, Decimal("0"))),
        ("p1:2:12.5%", ("p1", 2, Decimal("12.5"))),
        ("p1:2:10", ("p1", 2, Decimal("10"))),
    ],
)
def test_item_argument_parses_lines(raw, expected):
    """Cart lines accept optional quantity and discount."""

    assert cli.item_argument(raw) == expected


@pytest.mark.parametrize("raw", ["", ":2", "p1:x", "p1:1:abc", "p1:1:2:3"])
def test_item_argument_rejects_malformed_lines(raw):
    """Malformed lines are argparse type errors."""

    with pytest.raises(argparse.ArgumentTypeError):
        cli.item_argument(raw)


@pytest.mark.parametrize("raw", ["abc", "NaN", "Infinity"])
def test_money_argument_rejects_non_amounts(raw):
    """Only finite decimals are amounts."""

    with pytest.raises(argparse.ArgumentTypeError):
        cli.money_argument(raw)


def test_translate_checkout_falls_back_to_configured_tax():
    """Without --tax the configured default label applies."""

    args = argparse.Namespace(
        new_customer_name=None,
        new_customer_phone=None,
        tax=None,
        method="Credit",
        customer_id="c1",
        notes=None,
    )
    translated = cli.translate_checkout(args, "GST@12%")

    assert translated["tax_option"].rate == Decimal("12")
    assert translated["new_customer"] is None
    assert cli.translate_checkout(args, None)["tax_option"] is None


def test_translate_period_switches_to_custom_when_dates_given():
    """Giving a start or end date implies a custom range."""

    args = argparse.Namespace(period="all", start=date(2024, 1, 1), end=None)
    assert cli.translate_period(args) == (ReportPeriod.CUSTOM, date(2024, 1, 1), None)


@pytest.mark.parametrize(
    "error, code",
    [
        (core_logic.StockLimitExceeded("no"), 2),
        (auth.AuthenticationError("no"), 2),
        (FileNotFoundError("missing"), 3),
        (RuntimeError("boom"), 1),
    ],
)
def test_handle_cli_error_maps_exit_codes(error, code):
    """Business rules, missing files and everything else map to distinct codes."""

    assert cli.handle_cli_error(error) == code


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------


def _add_widget(config_file: Path, stock: str = "5") -> None:
    assert _run(
        config_file,
        "add-product",
        "--product-id",
        "p1",
        "--barcode",
        "BC-001",
        "--name",
        "Widget",
        "--category",
        "General",
        "--buy-price",
        "60",
        "--sell-price",
        "100",
        "--stock",
        stock,
    ) == 0


def test_main_sale_flow(config_file, capsys):
    """Adding a product and selling it updates listings and the log."""

    _add_widget(config_file)
    assert _run(config_file, "sale", "--item", "bc-001:2", "--tax", "GST@18%") == 0
    assert _run(config_file, "products") == 0
    assert _run(config_file, "log") == 0

    out = capsys.readouterr().out
    assert "total 236.00 (Cash)" in out
    assert "stock 3" in out
    assert "1 transactions: revenue 236.00" in out


def test_main_rejects_overselling(config_file):
    """Selling more than is in stock exits with the business-rule code."""

    _add_widget(config_file, stock="1")
    assert _run(config_file, "sale", "--item", "p1:2") == 2


def test_main_credit_sale_and_payment(config_file, capsys):
    """Credit sales create a due that payments settle."""

    _add_widget(config_file)
    capsys.readouterr()
    assert _run(config_file, "add-customer", "--name", "Asha", "--phone", "9876543210") == 0
    customer_id = capsys.readouterr().out.split()[1]

    assert _run(config_file, "sale", "--item", "p1", "--method", "Credit", "--customer-id", customer_id) == 0
    assert "outstanding due 100.00" in capsys.readouterr().out

    assert _run(config_file, "pay", "--customer-id", customer_id, "--amount", "150") == 2
    assert _run(config_file, "pay", "--customer-id", customer_id, "--amount", "60") == 0
    assert "remaining due 40.00" in capsys.readouterr().out

    assert _run(config_file, "statement", "--customer-id", customer_id) == 0
    assert "Final due: 40.00" in capsys.readouterr().out


def test_main_writes_documents(config_file, tmp_path, capsys):
    """PDF and spreadsheet commands write their files."""

    _add_widget(config_file)
    catalog = tmp_path / "out" / "catalog.pdf"
    label = tmp_path / "out" / "label.pdf"
    workbook = tmp_path / "out" / "books.xlsx"

    assert _run(config_file, "catalog", "--output", str(catalog)) == 0
    assert _run(config_file, "barcode", "--product-id", "p1", "--output", str(label)) == 0
    assert _run(config_file, "export", "--output", str(workbook)) == 0

    assert catalog.read_bytes().startswith(b"%PDF")
    assert label.read_bytes().startswith(b"%PDF")
    assert workbook.exists()
    assert f"Wrote {catalog.resolve()}" in capsys.readouterr().out


def test_main_missing_config_returns_three(tmp_path):
    """A config path that does not exist maps to exit code 3."""

    assert cli.main(["--config", str(tmp_path / "missing.ini"), "products"]) == 3


def test_main_schema_mismatch_returns_one(config_factory):
    """A config written for another schema refuses to run."""

    bundle = config_factory(schema_version="0.1.0")
    assert _run(bundle.config_path, "products") == 1


def test_main_reset_requires_confirmation(config_file, capsys):
    """Reset refuses to run without --yes."""

    _add_widget(config_file)
    assert _run(config_file, "reset") == 2
    assert _run(config_file, "reset", "--yes") == 0
    assert _run(config_file, "products") == 0
    assert "0 products" in capsys.readouterr().out


def test_main_accounts_use_separate_stores(config_file, monkeypatch, capsys):
    """Signing in switches to the account's own store and back on logout."""

    monkeypatch.setattr(auth, "BCRYPT_ROUNDS", 4)
    _add_widget(config_file)

    assert _run(config_file, "register", "--email", "owner@example.com", "--password", "pa55word") == 0
    assert _run(config_file, "products") == 0
    assert "0 products" in capsys.readouterr().out

    assert _run(config_file, "logout") == 0
    assert _run(config_file, "login", "--email", "owner@example.com", "--password", "wrong") == 2
    assert _run(config_file, "products") == 0
    assert "1 products" in capsys.readouterr().out

    assert _run(config_file, "login", "--email", "OWNER@example.com", "--password", "pa55word") == 0
    assert "Signed in as owner@example.com" in capsys.readouterr().out


def test_main_sync_without_remote(config_file, capsys):
    """Sync is a no-op when no remote is configured."""

    assert _run(config_file, "sync") == 0
    assert "not configured" in capsys.readouterr().out


def test_verbose_flag_raises_console_level(config_file, monkeypatch):
    """--verbose lets INFO records through to stderr."""

    calls = []
    monkeypatch.setattr(cli, "set_console_level", calls.append)

    assert cli.main(["--config", str(config_file), "--verbose", "products"]) == 0
    assert calls == [logging.INFO]


def test_log_directory_can_be_overridden(tmp_path, monkeypatch):
    """The log location follows STOCKFLOW_LOG_DIR when set."""

    monkeypatch.setenv(stockflow.LOG_DIR_ENV, str(tmp_path / "logs"))
    assert stockflow.log_file_path() == tmp_path / "logs" / "stockflow.log"
