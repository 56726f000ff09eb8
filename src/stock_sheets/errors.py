"""Error taxonomy for the stock sheet engine.

None of these errors is meant to be fatal to the process. Each one is either
recovered close to where it is raised (a skipped stream line, an empty
reconciliation session, a zero cell) or reported to the user as a retryable
message.
"""

from __future__ import annotations

from typing import Optional


class SheetEngineError(Exception):
    """Base class for every error raised by the stock sheet modules."""


class ValidationError(SheetEngineError):
    """Raised when a column definition or user input breaks a domain rule.

    The ``rule`` attribute carries a stable identifier of the violated rule so
    callers can report it inline next to the offending field.
    """

    def __init__(self, rule: str, message: str) -> None:
        super().__init__(message)
        self.rule = rule
        self.message = message

    def __str__(self) -> str:
        return f"[{self.rule}] {self.message}"


class FormulaError(SheetEngineError):
    """Raised for out-of-range formula indices or cyclic column dependencies."""

    def __init__(self, column_index: Optional[int], message: str) -> None:
        super().__init__(message)
        self.column_index = column_index
        self.message = message


class IngestionParseError(SheetEngineError):
    """Raised when a single line of the bulk fetch stream cannot be decoded."""

    def __init__(self, line: str, message: str) -> None:
        super().__init__(message)
        self.line = line
        self.message = message


class PersistenceError(SheetEngineError):
    """Raised when persisted reconciliation state is missing or corrupt."""

    def __init__(self, key: str, message: str) -> None:
        super().__init__(message)
        self.key = key
        self.message = message


__all__ = [
    "SheetEngineError",
    "ValidationError",
    "FormulaError",
    "IngestionParseError",
    "PersistenceError",
]
