"""Data access layer for stock sheets.

This module provides low-level helpers that read from and write to files on
disk. Business logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Reconciliation persistence: a JSON file acting as a key-value store.
3. Workbook import: reading period rows of a sheet from an Excel worksheet.
4. Workbook export: writing resolved sheet tables and reconciliation results.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter
from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .aggregation import AggregationEngine
from .columns import SheetDefinition, sheet_from_metadata
from .constants import EXPECTED_SCHEMA_VERSION
from .errors import PersistenceError
from .periods import PeriodTable, build_period_table
from .reconciliation import SheetSnapshot
from .resolver import MappingReferenceSource, ReferenceSource, ValueResolver, reference_source_from_arrays


CONFIG_FILE_NAME = "config.ini"

RECONCILIATION_WORKSHEET = "Reconciliation"
RECONCILIATION_HEADERS: Tuple[str, ...] = (
    "Sheet Name",
    "Opening Stock",
    "Recon Opening",
    "Opening Difference",
    "Closing Stock",
    "Recon Closing",
    "Closing Difference",
    "Has Stock Columns",
    "Opening Count",
    "Closing Count",
    "Opening Column",
    "Closing Column",
)
RECONCILIATION_WIDTHS: Tuple[int, ...] = (40, 15, 15, 18, 15, 15, 18, 18, 15, 15, 22, 22)
HIDDEN_RECONCILIATION_COLUMNS = range(8, 13)
VARIANCE_COLUMNS = (4, 7)

HEADER_FONT = Font(bold=True, color="FFFFFFFF")
HEADER_FILL = PatternFill(fill_type="solid", fgColor="FF4472C4")
POSITIVE_FONT = Font(bold=True, color="FF008000")
NEGATIVE_FONT = Font(bold=True, color="FFFF0000")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    store_file: Path
    export_dir: Path
    schema_version: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in the current
            directory or any of its parents.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def _resolve_against(raw: str, base_path: Optional[Path]) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        path = (base_path / path).resolve()
    return path


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into typed :class:`ConfigSettings`.

    Relative paths are expanded against ``base_path`` when provided, or against
    the current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor directory for relative paths, normally
            the directory holding ``config.ini``.

    Returns:
        ConfigSettings: Settings with resolved store and export paths.

    Raises:
        KeyError: If one of the required sections or options is missing.
    """

    try:
        store_raw = parser.get("System", "StoreFile")
        schema_version = parser.get("System", "SchemaVersion")
        export_raw = parser.get("Export", "Directory")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    return ConfigSettings(
        store_file=_resolve_against(store_raw, base_path),
        export_dir=_resolve_against(export_raw, base_path),
        schema_version=schema_version,
    )


def load_settings(config_path: Optional[Path] = None) -> ConfigSettings:
    """Find, read and parse ``config.ini`` in one step."""

    located = Path(find_config_file(config_path)).expanduser().resolve()
    parser = read_config(located)
    settings = parse_settings(parser, base_path=located.parent)
    log.info("Loaded settings from '%s'", located)
    return settings


def ensure_schema_version(settings: ConfigSettings) -> None:
    """Refuse to operate on data written for another schema version.

    Raises:
        RuntimeError: If ``SchemaVersion`` does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """

    if settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            settings.schema_version,
        )
        raise RuntimeError(
            "Schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, settings.schema_version)
        )


class JsonFileStore:
    """Key-value store persisted as a single JSON object on disk.

    Every ``set`` and ``clear`` rewrites the file, so the store always reflects
    the last change.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser().resolve()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError as exc:
            raise PersistenceError(str(self.path), f"Store file is not valid JSON: {exc.msg}") from exc
        if not isinstance(data, dict):
            raise PersistenceError(str(self.path), "Store file does not contain a JSON object")
        return data

    def _dump(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def get(self, key: str) -> Optional[str]:
        value = self._load().get(key)
        return None if value is None else str(value)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._dump(data)

    def clear(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._dump(data)


def load_sheet_metadata(path: Path) -> SheetDefinition:
    """Read a sheet metadata document (JSON) and build its definition."""

    path = Path(path).expanduser().resolve()
    if not path.exists():
        raise FileNotFoundError(f"Sheet metadata not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        meta = json.load(handle)
    sheet = sheet_from_metadata(meta)
    log.debug("Loaded metadata for sheet '%s' with %d columns", sheet.sheet_name, len(sheet.columns))
    return sheet


def open_workbook(data_file: Path) -> Workbook:
    """Open an Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> Path:
    """Persist the workbook, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)
    return dest


def iter_period_rows(workbook: Workbook, worksheet_name: Optional[str] = None) -> Iterable[Tuple[Any, ...]]:
    """Yield the data rows of a worksheet, skipping the header and empty rows."""

    sheet = workbook[worksheet_name] if worksheet_name else workbook.active
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield raw


def read_attribute_data(
    workbook: Workbook,
    sheet: SheetDefinition,
    worksheet_name: Optional[str] = None,
) -> List[List[Any]]:
    """Read a worksheet into one value list per sheet column.

    Headers are matched to the sheet's columns by name; worksheet columns
    with no matching sheet column are ignored, and sheet columns absent from
    the worksheet stay empty.
    """

    worksheet = workbook[worksheet_name] if worksheet_name else workbook.active
    headers = [cell.value for cell in worksheet[1]]
    positions: Dict[int, int] = {}
    for position, header in enumerate(headers):
        if header is None:
            continue
        for index, column in enumerate(sheet.columns):
            if column.name == str(header).strip():
                positions[index] = position
                break

    attribute_data: List[List[Any]] = [[] for _ in sheet.columns]
    for raw in iter_period_rows(workbook, worksheet.title):
        for index in range(len(sheet.columns)):
            position = positions.get(index)
            attribute_data[index].append(raw[position] if position is not None and position < len(raw) else None)
    return attribute_data


def load_period_table(
    workbook: Workbook,
    sheet: SheetDefinition,
    worksheet_name: Optional[str] = None,
) -> PeriodTable:
    """Build a period table from a worksheet whose header row names columns.

    Only stored values are kept: derived cells in the worksheet are
    recomputed, never trusted, and referenced cells are left to
    :func:`load_sheet_data`.
    """

    table, _ = load_sheet_data(workbook, sheet, worksheet_name)
    return table


def load_sheet_data(
    workbook: Workbook,
    sheet: SheetDefinition,
    worksheet_name: Optional[str] = None,
) -> Tuple[PeriodTable, MappingReferenceSource]:
    """Read a worksheet into a period table plus its linked values.

    Cells under referenced columns are the values supplied by the linked
    sheet; they are returned as a reference source keyed by the linked sheet
    id, the column name and the period date.
    """

    attribute_data = read_attribute_data(workbook, sheet, worksheet_name)
    table = build_period_table(sheet.columns, attribute_data)
    references = reference_source_from_arrays(sheet.columns, attribute_data)
    log.info(
        "Loaded %d periods and %d linked values for sheet '%s'",
        len(table),
        len(references),
        sheet.sheet_name,
    )
    return table, references


def export_sheet_table(
    sheet: SheetDefinition,
    table: PeriodTable,
    destination: Path,
    references: Optional[ReferenceSource] = None,
) -> Path:
    """Write the resolved values of a sheet's visible columns to ``destination``.

    One row per period in date order followed by the totals row. Columns that
    cannot be resolved export as zero.

    Args:
        sheet (SheetDefinition): Sheet whose columns drive the layout.
        table (PeriodTable): Stored periods of the sheet.
        destination (Path): Target ``.xlsx`` file.
        references (ReferenceSource | None): Supplier for referenced columns.

    Returns:
        Path: Resolved path of the written workbook.
    """

    resolver = ValueResolver(table, references)
    engine = AggregationEngine(resolver)
    visible = [index for index, column in enumerate(sheet.columns) if column.is_visible]

    workbook = openpyxl.Workbook()
    worksheet = workbook.active
    worksheet.title = (sheet.sheet_name or "Sheet")[:31]

    worksheet.append([sheet.columns[index].name for index in visible])
    for cell in worksheet[1]:
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = Alignment(horizontal="center", vertical="center")

    for row in resolver.resolve_table():
        worksheet.append([row[index] for index in visible])

    totals = engine.totals_row()
    worksheet.append([totals[index] for index in visible])
    for cell in worksheet[worksheet.max_row]:
        cell.font = Font(bold=True)

    if resolver.flagged_columns:
        log.warning(
            "Exported sheet '%s' with corrupt columns: %s",
            sheet.sheet_name,
            sorted(resolver.flagged_columns),
        )
    path = save_workbook(workbook, destination)
    log.info("Exported %d periods of sheet '%s' to '%s'", len(table), sheet.sheet_name, path)
    return path


def reconciliation_file_name(when: Optional[date] = None) -> str:
    when = when or date.today()
    return f"reconcile_{when.isoformat()}.xlsx"


def _variance_font(value: Decimal) -> Optional[Font]:
    if value == 0:
        return None
    return POSITIVE_FONT if value >= 0 else NEGATIVE_FONT


def export_reconciliation(
    sheets: Sequence[SheetSnapshot],
    destination: Path,
    *,
    when: Optional[date] = None,
) -> Path:
    """Write reconciliation results to an Excel workbook.

    ``destination`` may be a directory, in which case the file is named
    ``reconcile_<YYYY-MM-DD>.xlsx``. Variance cells are bold green when
    positive and bold red when negative; bookkeeping columns 8 to 12 are
    hidden. Counts that were never entered export as zero.

    Args:
        sheets (Sequence[SheetSnapshot]): Sheets to export, already filtered
            and ordered by the caller.
        destination (Path): Target file or directory.
        when (date | None): Date used in the generated file name.

    Returns:
        Path: Resolved path of the written workbook.
    """

    destination = Path(destination).expanduser()
    if destination.suffix.lower() != ".xlsx":
        destination = destination / reconciliation_file_name(when)

    workbook = openpyxl.Workbook()
    worksheet = workbook.active
    worksheet.title = RECONCILIATION_WORKSHEET

    worksheet.append(list(RECONCILIATION_HEADERS))
    for cell in worksheet[1]:
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = Alignment(horizontal="center", vertical="center")

    for sheet in sheets:
        worksheet.append(
            [
                sheet.sheet_name,
                sheet.opening_total,
                sheet.counted_opening or Decimal("0"),
                sheet.opening_variance,
                sheet.closing_total,
                sheet.counted_closing or Decimal("0"),
                sheet.closing_variance,
                "Yes" if sheet.has_stock_columns else "No",
                sheet.opening_count,
                sheet.closing_count,
                sheet.opening_column_name,
                sheet.closing_column_name,
            ]
        )
        row_index = worksheet.max_row
        for column_index, variance in zip(VARIANCE_COLUMNS, (sheet.opening_variance, sheet.closing_variance)):
            font = _variance_font(variance)
            if font is not None:
                worksheet.cell(row=row_index, column=column_index).font = font

    for column_index, width in enumerate(RECONCILIATION_WIDTHS, start=1):
        letter = get_column_letter(column_index)
        worksheet.column_dimensions[letter].width = width
    for column_index in HIDDEN_RECONCILIATION_COLUMNS:
        worksheet.column_dimensions[get_column_letter(column_index)].hidden = True

    path = save_workbook(workbook, destination)
    log.info("Exported reconciliation of %d sheets to '%s'", len(sheets), path)
    return path
