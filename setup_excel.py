"""Utility for creating stock sheet entry workbooks.

The module doubles as a script (``python setup_excel.py``) and as a library
used by tests or other tooling. Shared helpers keep the workbook bootstrap
logic consistent regardless of the execution path.

A workbook produced here has one worksheet whose header row holds the sheet's
column names in positional order; each following row is one period.
"""

from __future__ import annotations

import argparse
import configparser
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

DEFAULT_WORKSHEET = "Periods"

CONFIG_FILE = "config.ini"


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    export_dir: Path


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config file's
    directory.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)

    try:
        export_raw = parser.get("Export", "Directory")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    export_dir = Path(export_raw)
    if not export_dir.is_absolute():
        export_dir = (config_path.parent / export_dir).resolve()

    return SetupSettings(export_dir=export_dir)


def column_names_from_metadata(metadata_path: Path) -> List[str]:
    """Return the names of a sheet's non-deleted attributes in order."""

    if not metadata_path.exists():
        raise FileNotFoundError(f"Sheet metadata not found: {metadata_path}")
    with metadata_path.open("r", encoding="utf-8") as handle:
        meta = json.load(handle)
    attributes = meta.get("attributes") or []
    if not attributes:
        raise KeyError(f"Sheet metadata has no attributes: {metadata_path}")
    return [str(attribute.get("name") or "") for attribute in attributes if not attribute.get("isDeleted")]


def create_sheet_workbook(
    destination: Path,
    *,
    column_names: Sequence[str],
    rows: Iterable[Sequence[Any]] = (),
    worksheet_name: str = DEFAULT_WORKSHEET,
    overwrite: bool = False,
) -> Path:
    """Create a period entry workbook at ``destination``.

    Parameters are overridable to facilitate testing. When ``overwrite`` is
    ``False`` (the default) this function raises ``FileExistsError`` if the
    target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()
    worksheet = workbook.active
    worksheet.title = worksheet_name

    bold_font = Font(bold=True)
    for column_index, column_name in enumerate(column_names, start=1):
        cell = worksheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font

    for row in rows:
        worksheet.append(list(row))

    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, metadata_path: Path, *, overwrite: bool = False) -> Path:
    """Create an empty entry workbook for a sheet in the configured export dir."""

    settings = load_settings(config_path)
    column_names = column_names_from_metadata(metadata_path)
    return create_sheet_workbook(
        settings.export_dir / f"{metadata_path.stem}.xlsx",
        column_names=column_names,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Create a stock sheet entry workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--metadata",
        required=True,
        help="Path to the sheet metadata JSON file.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the CLI script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()
    metadata_path = Path(args.metadata).expanduser().resolve()

    print("--- Stock Sheets Setup Script ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, metadata_path, overwrite=args.force)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created entry workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
