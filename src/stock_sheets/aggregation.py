"""Aggregation engine for stock sheets.

Column totals reuse the resolver's per-kind dispatch: a total is always the
sum of the per-period resolved values. Deriving a total from other columns'
totals would count subtraction terms differently from the rows shown to the
user, so it is deliberately never done.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, List, Sequence, Union

from . import log
from .columns import Column
from .constants import TOTAL_LABEL
from .errors import FormulaError, ValidationError
from .periods import ZERO, SubrowRecord, aggregate_ledger, normalize_subrows, to_number
from .resolver import ValueResolver


TotalsCell = Union[str, Decimal]


class AggregationEngine:
    """Roll up resolved values of one sheet."""

    def __init__(self, resolver: ValueResolver) -> None:
        self.resolver = resolver
        self.table = resolver.table
        self.columns = resolver.columns

    def total(self, column_index: int) -> Decimal:
        """Sum a column's resolved value over every period.

        Raises:
            FormulaError: If any period of the column cannot be resolved.
        """

        return sum(
            (self.resolver.resolve(column_index, period_index) for period_index in range(len(self.table))),
            ZERO,
        )

    def total_by_name(self, column_name: str) -> Decimal:
        for index, column in enumerate(self.columns):
            if column.name == column_name:
                return self.total(index)
        raise KeyError(f"Unknown column: {column_name}")

    def subrow_total(self, column_index: int, period_index: int) -> Decimal:
        """Sum the aggregate field of one cell's subrow ledger."""

        column = self.columns[column_index]
        if column.subrows is None:
            raise ValidationError("subrows_not_supported", f"Column '{column.name}' has no subrows")
        return aggregate_ledger(self.table.ledger(column_index, period_index), column.subrows.aggregate_field)

    def totals(self) -> Dict[int, Decimal]:
        """Strict totals of every non-date column, keyed by column index."""

        return {index: self.total(index) for index, column in enumerate(self.columns) if not column.is_date}

    def totals_row(self) -> List[TotalsCell]:
        """Totals for display, one cell per column.

        The date column is labelled ``Total``. A column whose formula cannot be
        resolved totals to zero and is flagged on the resolver.
        """

        row: List[TotalsCell] = []
        for index, column in enumerate(self.columns):
            if column.is_date:
                row.append(TOTAL_LABEL)
                continue
            try:
                row.append(self.total(index))
            except FormulaError as exc:
                log.warning("Total of column '%s' unavailable: %s", column.name, exc.message)
                self.resolver.flagged_columns.add(index)
                row.append(ZERO)
        return row


def running_subrow_totals(column: Column, records: Sequence[SubrowRecord]) -> List[Decimal]:
    """Cumulative aggregate after each subrow entry of an unsaved ledger.

    Entries are not validated for required fields because the ledger is still
    being typed; blank or non-numeric amounts count as zero.
    """

    if column.subrows is None:
        raise ValidationError("subrows_not_supported", f"Column '{column.name}' has no subrows")
    running: List[Decimal] = []
    total = ZERO
    for record in records:
        total += to_number(record.get(column.subrows.aggregate_field))
        running.append(total)
    return running


def ledger_total(column: Column, records: Sequence[SubrowRecord]) -> Decimal:
    """Validated aggregate of a ledger about to be submitted."""

    if column.subrows is None:
        raise ValidationError("subrows_not_supported", f"Column '{column.name}' has no subrows")
    return aggregate_ledger(normalize_subrows(column, records), column.subrows.aggregate_field)


__all__ = [
    "TotalsCell",
    "AggregationEngine",
    "running_subrow_totals",
    "ledger_total",
]
