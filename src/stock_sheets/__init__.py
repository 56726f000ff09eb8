"""Stock sheets: typed period columns, totals and stock reconciliation.

Importing the package sets up the shared ``stock_sheets`` logger. Records go
to a rotating file under ``.logs/`` (or ``$STOCK_SHEETS_LOG_DIR``) and, from
WARNING upwards, to stderr. The CLI lowers the console threshold with
``--verbose``.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("STOCK_SHEETS_LOG_DIR") or PROJECT_ROOT / ".logs")
LOG_FILE = LOG_DIR / "stock_sheets.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
CONSOLE_LEVEL = logging.WARNING


def _file_handler(formatter: logging.Formatter) -> logging.Handler | None:
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=512_000, backupCount=3, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: stock sheet log file unavailable at '{LOG_FILE}': {exc}", file=sys.stderr)
        return None
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(formatter)
    return handler


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    file_handler = _file_handler(formatter)
    if file_handler is not None:
        logger.addHandler(file_handler)

    console = logging.StreamHandler(sys.stderr)
    console.set_name("console")
    console.setLevel(CONSOLE_LEVEL)
    console.setFormatter(formatter)
    logger.addHandler(console)
    return logger


def set_console_level(level: int) -> None:
    """Change the stderr threshold of the package logger."""

    for handler in log.handlers:
        if handler.get_name() == "console":
            handler.setLevel(level)


log = _configure_logging()
