"""Shared pytest fixtures and utilities for stock sheet tests."""

from __future__ import annotations

import argparse
import json
import sys
import uuid
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Callable, Iterator, List, Mapping, Sequence

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from stock_sheets import cli, columns, constants  # noqa: E402
from stock_sheets.periods import PeriodTable  # noqa: E402
from stock_sheets.reconciliation import InMemoryStore  # noqa: E402
from setup_excel import create_sheet_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "StoreFile = {store_file}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Export]\n"
    "Directory = {export_dir}\n"
)

# date | opening (carries previous closing) | received | sold | closing
STOCK_SHEET_METADATA: Mapping[str, Any] = {
    "_id": "sheet-bar",
    "sheetName": "Bar Stock",
    "groupName": "Beverages",
    "attributes": [
        {"name": "date"},
        {
            "name": "opening",
            "recurrentCheck": {
                "isRecurrent": True,
                "recurrentReferenceIndice": 4,
                "recurrenceFedStatus": True,
            },
        },
        {"name": "received"},
        {"name": "sold"},
        {
            "name": "closing",
            "derived": True,
            "formula": {"additionIndices": [1, 2], "subtractionIndices": [3]},
        },
    ],
}


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    store_path: Path
    export_dir: Path
    schema_version: str


def sse_line(payload: Mapping[str, Any]) -> str:
    """Encode one payload the way the stock-pull stream does."""

    return f"{constants.STREAM_DATA_PREFIX}{json.dumps(payload)}"


def sheet_payload(
    name: str,
    opening: float,
    closing: float,
    *,
    sheet_id: str | None = None,
    group: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "sheetId": sheet_id or f"id-{name.lower().replace(' ', '-')}",
        "sheetName": name,
        "openingStockTotal": opening,
        "closingStockTotal": closing,
        "hasStockColumns": True,
        "openingCount": 2,
        "closingCount": 2,
        "openingColumnName": "opening",
        "closingColumnName": "closing",
    }
    if group is not None:
        payload["columnMeta"] = {"groupName": group}
    return payload


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the repository root path."""

    return PROJECT_ROOT


@pytest.fixture(scope="session")
def src_dir() -> Path:
    """Return the ``src`` directory containing the package under test."""

    return SRC_DIR


# ---------------------------------------------------------------------------
# Column model and period fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def stock_metadata() -> dict[str, Any]:
    """Return a deep copy of the canonical stock sheet metadata."""

    return json.loads(json.dumps(STOCK_SHEET_METADATA))


@pytest.fixture
def stock_sheet(stock_metadata: dict[str, Any]) -> columns.SheetDefinition:
    """Typed definition of the canonical stock sheet."""

    return columns.sheet_from_metadata(stock_metadata)


@pytest.fixture
def stock_columns(stock_sheet: columns.SheetDefinition) -> tuple[columns.Column, ...]:
    return stock_sheet.columns


@pytest.fixture
def stock_table(stock_columns: Sequence[columns.Column]) -> PeriodTable:
    """Two periods: receive 10 sell 3, then receive 5 sell 2."""

    table = PeriodTable(stock_columns)
    table.add_period(date(2024, 1, 1), {2: 10, 3: 3})
    table.add_period(date(2024, 1, 2), {2: 5, 3: 2})
    return table


@pytest.fixture
def metadata_file(tmp_path: Path, stock_metadata: dict[str, Any]) -> Path:
    """Write the canonical sheet metadata to a JSON file."""

    path = tmp_path / "bar_stock.json"
    path.write_text(json.dumps(stock_metadata), encoding="utf-8")
    return path


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an entry workbook in a temp folder."""

    def _create_workbook(
        *,
        column_names: Sequence[str] = ("date", "opening", "received", "sold", "closing"),
        rows: Sequence[Sequence[Any]] = (),
        subdir: str | None = None,
        filename: str = "bar_stock.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_sheet_workbook(workbook_path, column_names=column_names, rows=rows, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def stock_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Workbook holding the two canonical periods as entered by hand."""

    return workbook_factory(
        subdir=f"workbook_{uuid.uuid4().hex}",
        rows=[
            (date(2024, 1, 1), None, 10, 3, None),
            (date(2024, 1, 2), None, 5, 2, None),
        ],
    )


# ---------------------------------------------------------------------------
# Configuration fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        store_path = bundle_dir / "reconciliation_store.json"
        export_dir = bundle_dir / "exports"
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                store_file=store_path.name if make_relative else str(store_path),
                export_dir=export_dir.name if make_relative else str(export_dir),
                schema_version=schema_version,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            store_path=store_path,
            export_dir=export_dir,
            schema_version=schema_version,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> cli.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    return cli.load_runtime_context(config_file)


# ---------------------------------------------------------------------------
# Stream and reconciliation fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def stream_lines() -> List[str]:
    """A complete stock-pull stream for three sheets."""

    sheets = [
        sheet_payload("Bar Stock", 100, 80),
        sheet_payload("Kitchen", 50, 45.5),
        sheet_payload("Cellar", 200, 210),
    ]
    lines = [sse_line({"type": "progress", "processed": 0, "total": len(sheets), "percentage": 0})]
    for position, sheet in enumerate(sheets, start=1):
        lines.append(
            sse_line(
                {
                    "type": "sheet",
                    "data": sheet,
                    "progress": {"processed": position, "total": len(sheets)},
                }
            )
        )
        lines.append("")
    lines.append(sse_line({"type": "complete", "summary": {"totalSheets": len(sheets)}}))
    return lines


@pytest.fixture
def stream_file(tmp_path: Path, stream_lines: List[str]) -> Path:
    """Write the canonical stream to disk as a captured response body."""

    path = tmp_path / "stock_pull.txt"
    path.write_text("\n".join(stream_lines) + "\n", encoding="utf-8")
    return path


@pytest.fixture
def group_metadata() -> List[dict[str, str]]:
    return [
        {"sheetName": "Bar Stock", "groupName": "Beverages"},
        {"sheetName": "Cellar", "groupName": "Beverages"},
        {"sheetName": "Kitchen", "groupName": "Food"},
    ]


@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore()


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="stock-sheets", description="Stock sheets CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_table_entry() -> tuple[str, cli.CommandSpec]:
    """Provide a placeholder command table entry for dispatch tests."""

    def execute(context: cli.RuntimeContext, args: argparse.Namespace) -> int:
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


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
