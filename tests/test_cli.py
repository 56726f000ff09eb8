"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
import json
import logging
from datetime import date
from pathlib import Path
from typing import Iterable

import pytest

from stock_sheets import cli, log, set_console_level
from stock_sheets.constants import ALL_GROUPS
from stock_sheets.errors import FormulaError, PersistenceError, ValidationError


SHEET_COMMANDS = {
    "validate-sheet",
    "totals",
}

RECONCILE_COMMANDS = {
    "reconcile-start",
    "reconcile-count",
    "reconcile-summary",
    "reconcile-export",
    "reconcile-save",
    "reconcile-clear",
}

# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_returns_argument_parser():
    """build_parser should produce a configured ArgumentParser instance."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert parser.prog == "stock-sheets"
    assert "stock sheets" in (parser.description or "")


def test_configure_subcommands_registers_every_command(cli_parser):
    """configure_subcommands should wire sheet and reconciliation commands."""

    command_table = cli.configure_subcommands(cli_parser)
    assert set(command_table) == SHEET_COMMANDS | RECONCILE_COMMANDS
    assert _registered_choices(cli_parser) == SHEET_COMMANDS | RECONCILE_COMMANDS


def test_register_sheet_commands_returns_command_specs(subparsers_action):
    """register_sheet_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_sheet_commands(subparsers_action)
    assert set(specs) == SHEET_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.help_text
        assert callable(spec.execute)
    assert set(subparsers_action.choices) == SHEET_COMMANDS


def test_register_reconcile_commands_returns_command_specs(subparsers_action):
    """register_reconcile_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_reconcile_commands(subparsers_action)
    assert set(specs) == RECONCILE_COMMANDS
    for name in RECONCILE_COMMANDS:
        assert name in subparsers_action.choices


# ---------------------------------------------------------------------------
# Command registrations
# ---------------------------------------------------------------------------


def test_register_totals_command_configures_arguments():
    """totals needs metadata and a workbook, export is optional."""

    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    spec = cli.register_totals_command(subparsers)
    spec.register(subparsers)
    namespace = parser.parse_args(["totals", "--metadata", "bar.json", "--workbook", "bar.xlsx"])
    assert namespace.metadata == Path("bar.json")
    assert namespace.workbook == Path("bar.xlsx")
    assert namespace.worksheet is None
    assert namespace.export is None


def test_register_reconcile_start_command_configures_arguments():
    """reconcile-start takes a captured stream and a date range."""

    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    spec = cli.register_reconcile_start_command(subparsers)
    spec.register(subparsers)
    namespace = parser.parse_args(
        ["reconcile-start", "--stream", "pull.txt", "--start", "2024-01-01", "--end", "2024-01-31"]
    )
    assert spec.name == "reconcile-start"
    assert namespace.stream == Path("pull.txt")
    assert namespace.start == "2024-01-01"
    assert namespace.groups is None


def test_register_reconcile_count_command_restricts_fields():
    """Only the opening and closing counts can be entered."""

    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    cli.register_reconcile_count_command(subparsers).register(subparsers)
    namespace = parser.parse_args(["reconcile-count", "--sheet", "Kitchen", "--field", "closing", "--value", "4.5"])
    assert namespace.sheet == "Kitchen"
    assert namespace.field == "closing"
    assert namespace.value == "4.5"
    with pytest.raises(SystemExit):
        parser.parse_args(["reconcile-count", "--sheet", "Kitchen", "--field", "middle", "--value", "1"])


def test_register_reconcile_summary_command_adds_filter_options():
    """Summary accepts repeatable sheet names, a group, a search and a sort."""

    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    cli.register_reconcile_summary_command(subparsers).register(subparsers)
    namespace = parser.parse_args(
        [
            "reconcile-summary",
            "--sheet",
            "Bar Stock",
            "--sheet",
            "Cellar",
            "--group",
            "Beverages",
            "--sort-key",
            "closing_variance",
            "--descending",
        ]
    )
    assert namespace.sheets == ["Bar Stock", "Cellar"]
    assert namespace.group == "Beverages"
    assert namespace.sort_key == "closing_variance"
    assert namespace.descending is True


def test_register_reconcile_export_command_defaults():
    """Without options the export covers everything and goes to the export dir."""

    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    cli.register_reconcile_export_command(subparsers).register(subparsers)
    namespace = parser.parse_args(["reconcile-export"])
    assert namespace.output is None
    assert namespace.sheets is None
    assert namespace.group == ALL_GROUPS
    assert namespace.search == ""


# ---------------------------------------------------------------------------
# Runtime context helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_factory):
    """load_runtime_context should bind the differ to the configured store."""

    bundle = config_factory()
    context = cli.load_runtime_context(bundle.config_path)
    assert context.settings.store_file == bundle.store_path.resolve()
    assert context.differ.store.path == bundle.store_path.resolve()


def test_load_runtime_context_supports_defaults(config_factory, monkeypatch):
    """load_runtime_context should resolve config.ini from the working directory."""

    bundle = config_factory()
    monkeypatch.chdir(bundle.directory)
    context = cli.load_runtime_context()
    assert context.settings.export_dir == bundle.export_dir.resolve()


def test_load_runtime_context_rejects_schema_mismatch(config_factory):
    """Config files written for another schema are refused."""

    bundle = config_factory(schema_version="0.1.0")
    with pytest.raises(RuntimeError):
        cli.load_runtime_context(bundle.config_path)


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def test_dispatch_command_invokes_executor(runtime_context, command_table_entry):
    """dispatch_command should call the executor associated with the command."""

    command_name, spec = command_table_entry
    command_table = {command_name: spec}
    args = argparse.Namespace(command=command_name)
    result = cli.dispatch_command(runtime_context, args, command_table)
    assert result == 0
    assert spec.execute.__dict__["called"] is True


def test_dispatch_command_handles_unknown_commands(runtime_context):
    """dispatch_command should raise a clear error for unknown commands."""

    args = argparse.Namespace(command="unknown")
    with pytest.raises(KeyError):
        cli.dispatch_command(runtime_context, args, {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    """build_command_table should index specs by their command names."""

    table = cli.build_command_table(command_spec_iterable)
    assert set(table) == {spec.name for spec in command_spec_iterable}


def test_build_command_table_detects_duplicate_commands():
    """build_command_table should guard against duplicate command names."""

    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_translate_filter_builds_sheet_filter():
    """Repeated --sheet options become a name set."""

    args = argparse.Namespace(sheets=["Bar Stock", "Cellar"], group="Beverages", search="bar")
    sheet_filter = cli.translate_filter(args)
    assert sheet_filter.sheet_names == frozenset({"Bar Stock", "Cellar"})
    assert sheet_filter.group == "Beverages"
    assert sheet_filter.search == "bar"


def test_translate_filter_without_options_selects_everything():
    """No options means no restriction at all."""

    sheet_filter = cli.translate_filter(argparse.Namespace())
    assert sheet_filter.sheet_names is None
    assert sheet_filter.group == ALL_GROUPS


def test_translate_date_range_rejects_bad_dates():
    """Dates are validated before a session is created."""

    with pytest.raises(ValidationError):
        cli.translate_date_range(argparse.Namespace(start="yesterday", end="2024-01-31"))


def test_load_group_metadata_reads_json_list(tmp_path, group_metadata):
    """Group listings are read from a JSON file."""

    path = tmp_path / "groups.json"
    path.write_text(json.dumps(group_metadata), encoding="utf-8")
    assert cli.load_group_metadata(path) == group_metadata
    assert cli.load_group_metadata(None) == []


def test_load_group_metadata_missing_file_raises(tmp_path):
    """A named but missing group file is an error."""

    with pytest.raises(FileNotFoundError):
        cli.load_group_metadata(tmp_path / "groups.json")


# ---------------------------------------------------------------------------
# Command execution helpers
# ---------------------------------------------------------------------------


def test_run_validate_sheet_reports_columns(runtime_context, metadata_file, capsys):
    """A valid sheet prints how many columns were checked."""

    result = cli.run_validate_sheet(runtime_context, argparse.Namespace(metadata=metadata_file))
    assert result == 0
    assert "5 columns valid" in capsys.readouterr().out


def test_run_totals_prints_visible_totals(runtime_context, metadata_file, stock_workbook_path, capsys):
    """Totals are resolved from the workbook, not read from it."""

    args = argparse.Namespace(metadata=metadata_file, workbook=stock_workbook_path, worksheet=None, export=None)
    assert cli.run_totals(runtime_context, args) == 0
    out = capsys.readouterr().out
    assert "opening: 7" in out
    assert "closing: 17" in out


def test_run_totals_includes_linked_column_values(runtime_context, tmp_path, workbook_factory, capsys):
    """Values under a linked column count towards its total."""

    metadata = {
        "sheetName": "Shop",
        "attributes": [
            {"name": "date"},
            {"name": "own"},
            {"name": "transfer_in", "linkedFrom": {"sheetObjectId": "other"}},
        ],
    }
    metadata_path = tmp_path / "shop.json"
    metadata_path.write_text(json.dumps(metadata), encoding="utf-8")
    workbook_path = workbook_factory(
        column_names=("date", "own", "transfer_in"),
        rows=[(date(2024, 1, 1), 1, 7), (date(2024, 1, 2), 2, 3)],
        filename="shop.xlsx",
    )

    args = argparse.Namespace(metadata=metadata_path, workbook=workbook_path, worksheet=None, export=None)
    assert cli.run_totals(runtime_context, args) == 0
    out = capsys.readouterr().out
    assert "own: 3" in out
    assert "transfer_in: 10" in out


def test_run_reconcile_count_requires_saved_session(runtime_context):
    """Counting without a started session surfaces the persistence error."""

    args = argparse.Namespace(sheet="Kitchen", field="closing", value="1")
    with pytest.raises(PersistenceError):
        cli.run_reconcile_count(runtime_context, args)


def test_run_reconcile_start_seeds_store(runtime_context, stream_file, capsys):
    """Starting from a captured stream saves the progress straight away."""

    args = argparse.Namespace(stream=stream_file, start="2024-01-01", end="2024-01-31", groups=None)
    assert cli.run_reconcile_start(runtime_context, args) == 0
    assert "3 sheets" in capsys.readouterr().out
    assert runtime_context.differ.has_saved_progress()


def test_run_reconcile_clear_empties_store(runtime_context, stream_file):
    """Clearing needs no saved session and leaves nothing behind."""

    start = argparse.Namespace(stream=stream_file, start="2024-01-01", end="2024-01-31", groups=None)
    cli.run_reconcile_start(runtime_context, start)
    assert cli.run_reconcile_clear(runtime_context, argparse.Namespace()) == 0
    assert not runtime_context.differ.has_saved_progress()


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (ValidationError("name_required", "invalid"), 2),
        (FormulaError(3, "cycle"), 2),
        (FileNotFoundError("missing"), 3),
        (PersistenceError("reconciliationProgress", "corrupt"), 1),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    exit_code = cli.handle_cli_error(error)
    assert exit_code == expected
    assert caplog.records


def test_handle_cli_error_logs_human_readable_message(caplog: pytest.LogCaptureFixture):
    """handle_cli_error should emit a user-friendly log message."""

    caplog.set_level("ERROR")
    cli.handle_cli_error(ValidationError("name_required", "Column name is required"))
    assert any("Column name is required" in record.getMessage() for record in caplog.records)


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def test_main_executes_specified_command(monkeypatch, runtime_context):
    """main should execute the command parsed from argv."""

    parser = _stub_parser(command="totals")
    command_table = {"totals": cli.CommandSpec("totals", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)

    called = {}

    def fake_dispatch(context, args, table) -> int:
        called["context"] = context
        called["args"] = args
        called["table"] = table
        return 0

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)

    exit_code = cli.main(["totals"])
    assert exit_code == 0
    assert called["context"] is runtime_context
    assert called["args"].command == "totals"
    assert called["table"] is command_table


def test_main_handles_engine_errors(monkeypatch, runtime_context):
    """main should surface engine errors as non-zero exits."""

    parser = _stub_parser(command="reconcile-count")
    command_table = {"reconcile-count": cli.CommandSpec("reconcile-count", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)

    def fake_dispatch(*_: object) -> int:
        raise ValidationError("unknown_sheet", "No sheet named 'Garage'")

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)

    handled = {}

    def fake_handle(error: Exception) -> int:
        handled["error"] = error
        return 99

    monkeypatch.setattr(cli, "handle_cli_error", fake_handle)
    exit_code = cli.main(["reconcile-count"])
    assert exit_code == 99
    assert isinstance(handled["error"], ValidationError)


def test_main_verbose_lowers_console_threshold(monkeypatch, runtime_context):
    """--verbose echoes info records to stderr."""

    levels = []
    monkeypatch.setattr(cli, "set_console_level", levels.append)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)
    monkeypatch.setattr(cli, "dispatch_command", lambda *_: 0)

    assert cli.main(["--verbose", "reconcile-save"]) == 0
    assert levels == [logging.INFO]

    assert cli.main(["reconcile-save"]) == 0
    assert levels == [logging.INFO]


def test_set_console_level_targets_console_handler():
    """Only the stderr handler changes level; the logger keeps everything."""

    console = [handler for handler in log.handlers if handler.get_name() == "console"]
    assert len(console) == 1
    try:
        set_console_level(logging.INFO)
        assert console[0].level == logging.INFO
        assert log.level == logging.DEBUG
    finally:
        set_console_level(logging.WARNING)
    assert console[0].level == logging.WARNING


def test_main_requires_a_command():
    """Running without a sub-command is a usage error."""

    with pytest.raises(SystemExit):
        cli.main([])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stub_parser(command: str) -> argparse.ArgumentParser:
    """Create a stub parser that always returns the supplied command."""

    class _Stub(argparse.ArgumentParser):
        def parse_args(self, args: Iterable[str] | None = None, namespace: argparse.Namespace | None = None):  # type: ignore[override]
            parsed = argparse.Namespace(command=command)
            return parsed

    return _Stub(prog="test")


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    """Return the set of registered sub-command names for assertion helpers."""

    actions = getattr(parser, "_subparsers", None)
    if not actions:
        return set()
    group_actions = actions._group_actions  # type: ignore[attr-defined]
    if not group_actions:
        return set()
    return set(group_actions[0].choices)  # type: ignore[index]
