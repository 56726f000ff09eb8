"""Enumerations shared across the stock sheet modules.

Centralises domain constants so that the column model, the computation
engine, the reconciliation workflow and the presentation layer rely on a
single source of truth for critical identifiers.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating config.ini.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Keys used in the key-value store backing in-progress reconciliation.
PROGRESS_STORE_KEY = "reconciliationProgress"
SOURCE_STORE_KEY = "reconciliationData"

DATE_COLUMN_NAME = "date"
TOTAL_LABEL = "Total"
UNGROUPED_LABEL = "Ungrouped"
ALL_GROUPS = "all"

# Prefix of every payload line in the streamed bulk fetch.
STREAM_DATA_PREFIX = "data: "


class ColumnKind(str, Enum):
    """Enumerate the ways a sheet column obtains its value."""

    INDEPENDENT = "independent"
    DERIVED = "derived"
    RECURRENT = "recurrent"
    REFERENCED = "referenced"


class SubrowFieldType(str, Enum):
    """Enumerate the value types a subrow field may hold."""

    NUMBER = "number"
    TEXT = "text"


class CountField(str, Enum):
    """Enumerate the counted totals captured during reconciliation."""

    OPENING = "opening"
    CLOSING = "closing"


class SessionState(str, Enum):
    """Enumerate the lifecycle states of a reconciliation session."""

    FRESH = "Fresh"
    EDITING = "Editing"
    SAVED_AND_EXITED = "SavedAndExited"
    CLEARED = "Cleared"


class StreamEventType(str, Enum):
    """Enumerate the tagged payload shapes of the streamed bulk fetch."""

    PROGRESS = "progress"
    SHEET = "sheet"
    COMPLETE = "complete"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "PROGRESS_STORE_KEY",
    "SOURCE_STORE_KEY",
    "DATE_COLUMN_NAME",
    "TOTAL_LABEL",
    "UNGROUPED_LABEL",
    "ALL_GROUPS",
    "STREAM_DATA_PREFIX",
    "ColumnKind",
    "SubrowFieldType",
    "CountField",
    "SessionState",
    "StreamEventType",
]
