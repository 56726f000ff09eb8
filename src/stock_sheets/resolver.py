"""Value resolver for stock sheets.

The resolver computes the effective value of any (column, period) cell from
the period table and the column model. Resolution is a pure function of its
inputs: nothing in the table is mutated, so the same table can be resolved
repeatedly while a user edits, and previews run against a throwaway copy.

Results are memoised per resolver instance. A resolver is meant to live for
one render; build a new one (or call :meth:`ValueResolver.invalidate`) after
the table changes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Set, Tuple, Union, assert_never

from . import log
from .columns import Column
from .constants import ColumnKind
from .errors import FormulaError, ValidationError
from .periods import ZERO, PeriodTable, SubrowRecord, date_column_index, is_blank, parse_period_date, to_number


CellValue = Union[date, Decimal]


class ReferenceSource(Protocol):
    """Supplier of values for columns linked from another sheet."""

    def lookup(self, sheet_id: str, column_name: str, period_date: date) -> Any:
        ...


class MappingReferenceSource:
    """In-memory :class:`ReferenceSource` keyed by sheet, column and date."""

    def __init__(self, values: Optional[Mapping[Tuple[str, str, date], Any]] = None) -> None:
        self._values: Dict[Tuple[str, str, date], Any] = dict(values or {})

    def __len__(self) -> int:
        return len(self._values)

    def set(self, sheet_id: str, column_name: str, period_date: date, value: Any) -> None:
        self._values[(sheet_id, column_name, period_date)] = value

    def lookup(self, sheet_id: str, column_name: str, period_date: date) -> Any:
        return self._values.get((sheet_id, column_name, period_date))


def reference_source_from_arrays(
    columns: Sequence[Column],
    attribute_data: Sequence[Sequence[Any]],
) -> MappingReferenceSource:
    """Collect referenced-column values delivered alongside a sheet's data.

    The sheet service fills linked columns server-side, so their arrays are
    the cross-sheet values for the matching dates.
    """

    source = MappingReferenceSource()
    date_index = date_column_index(columns)
    if date_index >= len(attribute_data):
        return source
    dates = attribute_data[date_index]
    for index, column in enumerate(columns):
        if column.kind is not ColumnKind.REFERENCED or column.reference is None or index >= len(attribute_data):
            continue
        for row, cell in enumerate(attribute_data[index]):
            if row < len(dates) and not is_blank(dates[row]) and not is_blank(cell):
                source.set(column.reference.sheet_id, column.name, parse_period_date(dates[row]), cell)
    return source


class ValueResolver:
    """Compute cell values of one sheet according to each column's kind."""

    def __init__(self, table: PeriodTable, references: Optional[ReferenceSource] = None) -> None:
        self.table = table
        self.columns: Tuple[Column, ...] = table.columns
        self.references: ReferenceSource = references if references is not None else MappingReferenceSource()
        self.flagged_columns: Set[int] = set()
        self._memo: Dict[Tuple[int, int], Decimal] = {}
        self._warmed_periods = 0

    def invalidate(self) -> None:
        self._memo.clear()
        self._warmed_periods = 0
        self.flagged_columns.clear()

    def resolve(self, column_index: int, period_index: int) -> Decimal:
        """Return the value of a cell.

        Args:
            column_index (int): Position of the column.
            period_index (int): Position of the period in date order.

        Returns:
            Decimal: Resolved value; absent raw values count as zero.

        Raises:
            FormulaError: If a formula points outside the sheet or column
                dependencies form a cycle.
            ValidationError: If ``period_index`` is outside the table.
        """

        if not 0 <= period_index < len(self.table):
            raise ValidationError("period_out_of_range", f"No period at index {period_index}")
        self._warm(period_index)
        return self._resolve(column_index, period_index, set())

    def _warm(self, period_index: int) -> None:
        # Fill the memo period by period so recurrent chains never recurse
        # further back than one period. Failing cells stay unmemoised and
        # raise again when they are resolved directly.
        while self._warmed_periods < period_index:
            position = self._warmed_periods
            for index, column in enumerate(self.columns):
                if column.is_date:
                    continue
                try:
                    self._resolve(index, position, set())
                except FormulaError:
                    continue
            self._warmed_periods += 1

    def _resolve(self, column_index: int, period_index: int, visiting: Set[Tuple[int, int]]) -> Decimal:
        key = (column_index, period_index)
        cached = self._memo.get(key)
        if cached is not None:
            return cached
        if key in visiting:
            raise FormulaError(column_index, f"Cycle detected while resolving column {column_index}")
        if not 0 <= column_index < len(self.columns):
            raise FormulaError(column_index, f"Column index {column_index} is out of range")

        visiting.add(key)
        try:
            value = self._dispatch(self.columns[column_index], column_index, period_index, visiting)
        finally:
            visiting.discard(key)
        self._memo[key] = value
        return value

    def _dispatch(
        self,
        column: Column,
        column_index: int,
        period_index: int,
        visiting: Set[Tuple[int, int]],
    ) -> Decimal:
        match column.kind:
            case ColumnKind.INDEPENDENT:
                raw = self.table.raw_value(column_index, period_index)
                return raw if raw is not None else ZERO
            case ColumnKind.DERIVED:
                if column.formula is None:
                    return ZERO
                total = ZERO
                for index in column.formula.additions:
                    total += self._resolve(index, period_index, visiting)
                for index in column.formula.subtractions:
                    total -= self._resolve(index, period_index, visiting)
                return total
            case ColumnKind.RECURRENT:
                if period_index == 0:
                    return ZERO
                override = self.table.raw_value(column_index, period_index)
                if override is not None:
                    return override
                if column.recurrence is None:
                    raise FormulaError(column_index, f"Recurrent column '{column.name}' has no reference")
                return self._resolve(column.recurrence.reference_index, period_index - 1, visiting)
            case ColumnKind.REFERENCED:
                if column.reference is None:
                    return ZERO
                value = self.references.lookup(
                    column.reference.sheet_id,
                    column.name,
                    self.table[period_index].date,
                )
                return ZERO if value is None else to_number(value)
            case _:
                assert_never(column.kind)

    def display_value(self, column_index: int, period_index: int) -> Decimal:
        """Resolve a cell for display, treating formula errors as corruption.

        A failing column resolves to zero and is recorded in
        :attr:`flagged_columns` instead of propagating the error.
        """

        try:
            return self.resolve(column_index, period_index)
        except FormulaError as exc:
            if column_index not in self.flagged_columns:
                log.warning(
                    "Flagging column %d as corrupt: %s",
                    column_index,
                    exc.message,
                )
            self.flagged_columns.add(column_index)
            return ZERO

    def resolve_row(self, period_index: int) -> List[CellValue]:
        """Resolve every column of one period; the date column yields the date."""

        period = self.table[period_index]
        row: List[CellValue] = []
        for index, column in enumerate(self.columns):
            if column.is_date:
                row.append(period.date)
            else:
                row.append(self.display_value(index, period_index))
        return row

    def resolve_table(self) -> List[List[CellValue]]:
        rows = [self.resolve_row(index) for index in range(len(self.table))]
        log.debug("Resolved %d periods (%d memoised cells)", len(rows), len(self._memo))
        return rows


@dataclass(frozen=True)
class PeriodPreview:
    """Resolved values of an unsaved period."""

    date: date
    position: int
    values: Tuple[CellValue, ...]
    flagged_columns: frozenset[int] = field(default_factory=frozenset)

    def value_of(self, column_index: int) -> CellValue:
        return self.values[column_index]


def preview_period(
    table: PeriodTable,
    when: Any,
    raw_values: Optional[Mapping[int, Any]] = None,
    subrows: Optional[Mapping[int, Sequence[SubrowRecord]]] = None,
    references: Optional[ReferenceSource] = None,
) -> PeriodPreview:
    """Show what a new period would look like without storing it.

    The draft is resolved against a copy of ``table``; fed recurrent columns
    therefore carry the reference column's value from the period before the
    draft, which is the last stored period when the draft is the newest one.

    Raises:
        ValidationError: When the draft itself is invalid (duplicate date,
            non-editable column, bad subrow record).
    """

    draft, position = table.with_draft(when, raw_values, subrows)
    resolver = ValueResolver(draft, references)
    values = tuple(resolver.resolve_row(position))
    return PeriodPreview(
        date=draft[position].date,
        position=position,
        values=values,
        flagged_columns=frozenset(resolver.flagged_columns),
    )


__all__ = [
    "CellValue",
    "ReferenceSource",
    "MappingReferenceSource",
    "reference_source_from_arrays",
    "ValueResolver",
    "PeriodPreview",
    "preview_period",
]
