"""Command-line entry points for the stock sheet toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into calls on the engine modules. Keeping the CLI thin
ensures the same parser configuration can be reused by tests, scripts, or any
alternative front-end.
"""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import data_manager, log, set_console_level
from .aggregation import AggregationEngine
from .columns import validate_sheet_columns
from .constants import ALL_GROUPS, CountField
from .errors import FormulaError, PersistenceError, ValidationError
from .ingestion import read_stream_file
from .periods import parse_period_date
from .reconciliation import SORTABLE_FIELDS, DateRange, ReconciliationDiffer, SheetFilter
from .resolver import ValueResolver


@dataclass(frozen=True)
class RuntimeContext:
    """Settings plus the reconciliation differ bound to the configured store."""

    settings: data_manager.ConfigSettings
    differ: ReconciliationDiffer


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stock-sheets",
        description="Command-line tools for stock sheets and reconciliation.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini).",
    )
    parser.add_argument("--verbose", action="store_true", help="Echo progress messages to stderr.")
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    sheet_specs = register_sheet_commands(subparsers)
    reconcile_specs = register_reconcile_commands(subparsers)
    return build_command_table([*sheet_specs.values(), *reconcile_specs.values()])


def register_sheet_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare commands that work on a single sheet."""
    specs = {
        "validate-sheet": register_validate_sheet_command(subparsers),
        "totals": register_totals_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_reconcile_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare commands that drive a reconciliation session."""
    specs = {
        "reconcile-start": register_reconcile_start_command(subparsers),
        "reconcile-count": register_reconcile_count_command(subparsers),
        "reconcile-summary": register_reconcile_summary_command(subparsers),
        "reconcile-export": register_reconcile_export_command(subparsers),
        "reconcile-save": register_reconcile_save_command(subparsers),
        "reconcile-clear": register_reconcile_clear_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def add_filter_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--sheet", dest="sheets", action="append", default=None, help="Limit to this sheet (repeatable).")
    parser.add_argument("--group", default=ALL_GROUPS, help="Limit to one group (default: all).")
    parser.add_argument("--search", default="", help="Case-insensitive substring of the sheet name.")
    parser.add_argument("--sort-key", choices=SORTABLE_FIELDS, default=None)
    parser.add_argument("--descending", action="store_true")


def register_validate_sheet_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``validate-sheet``."""
    name = "validate-sheet"
    help_text = "Validate the column definitions of a sheet metadata file."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--metadata", type=Path, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_validate_sheet)


def register_totals_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``totals``."""
    name = "totals"
    help_text = "Resolve a sheet stored in a workbook and print its column totals."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--metadata", type=Path, required=True)
        parser.add_argument("--workbook", type=Path, required=True)
        parser.add_argument("--worksheet", default=None)
        parser.add_argument("--export", type=Path, default=None, help="Also write the resolved table to this .xlsx file.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_totals)


def register_reconcile_start_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reconcile-start``."""
    name = "reconcile-start"
    help_text = "Start a fresh reconciliation from a captured stock-pull stream."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--stream", type=Path, required=True)
        parser.add_argument("--start", required=True, help="First date of the pulled range.")
        parser.add_argument("--end", required=True, help="Last date of the pulled range.")
        parser.add_argument("--groups", type=Path, default=None, help="JSON list of {sheetName, groupName} entries.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reconcile_start)


def register_reconcile_count_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reconcile-count``."""
    name = "reconcile-count"
    help_text = "Enter a counted opening or closing total for a sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sheet", required=True)
        parser.add_argument("--field", choices=[member.value for member in CountField], required=True)
        parser.add_argument("--value", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reconcile_count)


def register_reconcile_summary_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reconcile-summary``."""
    name = "reconcile-summary"
    help_text = "Print the visible sheets and their aggregated variance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_filter_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reconcile_summary)


def register_reconcile_export_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reconcile-export``."""
    name = "reconcile-export"
    help_text = "Export the visible sheets of the reconciliation to Excel."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_filter_arguments(parser)
        parser.add_argument("--output", type=Path, default=None, help="Target file or directory (default: export dir).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reconcile_export)


def register_reconcile_save_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reconcile-save``."""
    name = "reconcile-save"
    help_text = "Save the reconciliation and exit the session."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reconcile_save)


def register_reconcile_clear_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reconcile-clear``."""
    name = "reconcile-clear"
    help_text = "Discard all saved reconciliation state."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reconcile_clear)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Resolve settings and bind a differ to the configured store file."""
    settings = data_manager.load_settings(config_path)
    data_manager.ensure_schema_version(settings)
    store = data_manager.JsonFileStore(settings.store_file)
    log.info("Loaded runtime context for store '%s'", settings.store_file)
    return RuntimeContext(settings=settings, differ=ReconciliationDiffer(store))


def dispatch_command(
    context: RuntimeContext,
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


def translate_filter(args: argparse.Namespace) -> SheetFilter:
    """Translate CLI filter options into a sheet filter."""
    sheets = getattr(args, "sheets", None)
    return SheetFilter(
        sheet_names=frozenset(sheets) if sheets else None,
        group=getattr(args, "group", ALL_GROUPS),
        search=getattr(args, "search", ""),
    )


def translate_date_range(args: argparse.Namespace) -> DateRange:
    return DateRange(start=parse_period_date(args.start), end=parse_period_date(args.end))


def load_group_metadata(path: Optional[Path]) -> List[Mapping[str, Any]]:
    """Read the optional sheet-to-group listing used to seed a session."""
    if path is None:
        return []
    path = Path(path).expanduser().resolve()
    if not path.exists():
        raise FileNotFoundError(f"Group metadata not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        entries = json.load(handle)
    if not isinstance(entries, list):
        raise ValueError(f"Group metadata must be a JSON list: {path}")
    return entries


def resume_session(context: RuntimeContext) -> ReconciliationDiffer:
    """Restore the saved session, failing when there is nothing to resume."""
    differ = context.differ
    differ.restore()
    if differ.last_error is not None:
        raise differ.last_error
    return differ


def apply_view_options(differ: ReconciliationDiffer, args: argparse.Namespace) -> SheetFilter:
    differ.filter = translate_filter(args)
    differ.set_sort(getattr(args, "sort_key", None), descending=getattr(args, "descending", False))
    return differ.filter


def run_validate_sheet(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Validate every column of a sheet definition."""
    sheet = data_manager.load_sheet_metadata(args.metadata)
    validate_sheet_columns(sheet.columns)
    print(f"Sheet '{sheet.sheet_name}': {len(sheet.columns)} columns valid.")
    return 0


def run_totals(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Print the totals row of a sheet stored in a workbook."""
    sheet = data_manager.load_sheet_metadata(args.metadata)
    workbook = data_manager.open_workbook(args.workbook)
    table, references = data_manager.load_sheet_data(workbook, sheet, args.worksheet)
    resolver = ValueResolver(table, references)
    totals = AggregationEngine(resolver).totals_row()
    for column, total in zip(sheet.columns, totals):
        if column.is_visible and not column.is_date:
            print(f"{column.name}: {total}")
    for index in sorted(resolver.flagged_columns):
        print(f"[WARNING] Column '{sheet.columns[index].name}' has an invalid formula and was treated as 0.")
    if args.export is not None:
        path = data_manager.export_sheet_table(sheet, table, args.export, references)
        print(f"Exported to '{path}'.")
    return 0


def run_reconcile_start(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Seed a new session from a captured stream."""
    pull = read_stream_file(args.stream)
    if not pull.complete:
        log.warning("Stock pull in '%s' is incomplete; starting with %d sheets", args.stream, len(pull))
    session = context.differ.start_fresh(
        pull.source_sheets(),
        translate_date_range(args),
        metadata=load_group_metadata(args.groups),
        summary=pull.summary,
    )
    print(f"Started reconciliation of {len(session.snapshots)} sheets.")
    return 0


def run_reconcile_count(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Record a counted value in the saved session."""
    differ = resume_session(context)
    snapshot = differ.set_counted(args.sheet, args.field, args.value)
    variance = snapshot.opening_variance if args.field == CountField.OPENING.value else snapshot.closing_variance
    print(f"{snapshot.sheet_name} {args.field} variance: {variance}")
    return 0


def run_reconcile_summary(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Print visible sheets and summed variances."""
    differ = resume_session(context)
    sheet_filter = apply_view_options(differ, args)
    for sheet in differ.visible_sheets(sheet_filter):
        print(
            f"[{sheet.group_label}] {sheet.sheet_name}: "
            f"opening {sheet.opening_total} / {sheet.counted_opening if sheet.counted_opening is not None else '-'} "
            f"({sheet.opening_variance}), "
            f"closing {sheet.closing_total} / {sheet.counted_closing if sheet.counted_closing is not None else '-'} "
            f"({sheet.closing_variance})"
        )
    summary = differ.aggregate_variance(sheet_filter)
    print(
        f"{summary.sheet_count} sheets: opening variance {summary.opening_variance_sum}, "
        f"closing variance {summary.closing_variance_sum}"
    )
    return 0


def run_reconcile_export(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Export the visible sheets to an Excel workbook."""
    differ = resume_session(context)
    sheet_filter = apply_view_options(differ, args)
    destination = args.output if args.output is not None else context.settings.export_dir
    path = data_manager.export_reconciliation(differ.visible_sheets(sheet_filter), destination)
    print(f"Exported reconciliation to '{path}'.")
    return 0


def run_reconcile_save(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Persist the session and close it."""
    differ = resume_session(context)
    differ.save_and_exit()
    print("Reconciliation saved.")
    return 0


def run_reconcile_clear(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Discard the saved session."""
    context.differ.clear()
    print("Reconciliation cleared.")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, (ValidationError, FormulaError)):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, PersistenceError):
        log.error("Saved reconciliation unavailable: %s", error.message)
        return 1
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    if getattr(args, "verbose", False):
        set_console_level(logging.INFO)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
