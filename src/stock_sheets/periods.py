"""Period table for stock sheets.

A period is one dated row of a sheet. The table keeps periods ordered by date
ascending with at most one period per date, and stores only what users enter:
raw values of independent columns, manual overrides of recurrent columns, and
the itemised subrow ledgers. Everything else is computed by the resolver.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from . import log
from .columns import Column, SubrowConfig
from .constants import ColumnKind, SubrowFieldType
from .errors import ValidationError


ZERO = Decimal("0")
DISPLAY_DATE_FORMATS = ("%d %b %Y", "%d %B %Y", "%d-%m-%Y", "%d/%m/%Y")

SubrowRecord = Mapping[str, Any]


def to_number(value: Any) -> Decimal:
    """Coerce an entered value into a :class:`~decimal.Decimal`.

    Blank cells, ``None`` and anything that does not parse as a finite number
    become zero, which matches how the entry forms treat empty inputs.
    """

    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        return value if value.is_finite() else ZERO
    text = str(value).replace(",", "").strip()
    if not text:
        return ZERO
    try:
        number = Decimal(text)
    except InvalidOperation:
        return ZERO
    return number if number.is_finite() else ZERO


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def parse_period_date(value: Any) -> date:
    """Normalise a period date given as a date, ISO string or display string."""

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass
    for fmt in DISPLAY_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValidationError("invalid_period_date", f"Unrecognised period date: {value!r}")


def aggregate_ledger(records: Sequence[SubrowRecord], aggregate_field: str) -> Decimal:
    """Sum ``aggregate_field`` across a subrow ledger."""

    return sum((to_number(record.get(aggregate_field)) for record in records), ZERO)


def normalize_subrows(column: Column, records: Sequence[SubrowRecord]) -> Tuple[Dict[str, Any], ...]:
    """Validate subrow records against a column's subrow configuration.

    Number fields are coerced to decimals; text fields are kept as strings.
    Keys outside the configured fields (such as storage identifiers) are
    carried through untouched.

    Raises:
        ValidationError: If the column has no subrows or a required field is
            blank.
    """

    config: Optional[SubrowConfig] = column.subrows
    if config is None:
        raise ValidationError("subrows_not_supported", f"Column '{column.name}' does not accept subrows")

    normalised: List[Dict[str, Any]] = []
    for position, record in enumerate(records):
        entry = dict(record)
        for subrow_field in config.fields:
            value = entry.get(subrow_field.name)
            if is_blank(value):
                if subrow_field.required:
                    raise ValidationError(
                        "subrow_field_required",
                        f"Subrow {position + 1} of '{column.name}' is missing '{subrow_field.name}'",
                    )
                entry[subrow_field.name] = None
            elif subrow_field.type is SubrowFieldType.NUMBER:
                entry[subrow_field.name] = to_number(value)
            else:
                entry[subrow_field.name] = str(value)
        normalised.append(entry)
    return tuple(normalised)


@dataclass(frozen=True)
class Period:
    """One dated row of raw sheet data."""

    date: date
    raw_values: Mapping[int, Decimal] = field(default_factory=dict)
    subrows: Mapping[int, Tuple[Dict[str, Any], ...]] = field(default_factory=dict)


class PeriodTable:
    """Ordered, date-unique sequence of periods for one sheet."""

    def __init__(self, columns: Sequence[Column], periods: Sequence[Period] = ()) -> None:
        self.columns: Tuple[Column, ...] = tuple(columns)
        self._periods: List[Period] = []
        for period in periods:
            self.load_period(period)

    def __len__(self) -> int:
        return len(self._periods)

    def __iter__(self) -> Iterator[Period]:
        return iter(self._periods)

    def __getitem__(self, index: int) -> Period:
        return self._periods[index]

    @property
    def periods(self) -> Tuple[Period, ...]:
        return tuple(self._periods)

    @property
    def dates(self) -> Tuple[date, ...]:
        return tuple(period.date for period in self._periods)

    def copy(self) -> "PeriodTable":
        clone = PeriodTable(self.columns)
        clone._periods = list(self._periods)
        return clone

    def index_of(self, when: date) -> Optional[int]:
        for index, period in enumerate(self._periods):
            if period.date == when:
                return index
        return None

    # -- insertion --------------------------------------------------------

    def load_period(self, period: Period) -> int:
        """Insert a stored period without applying entry-form rules.

        Used when rebuilding a table from persisted or streamed data, where
        values were accepted when they were first recorded.
        """

        if self.index_of(period.date) is not None:
            raise ValidationError(
                "duplicate_period_date",
                f"A period dated {period.date.isoformat()} already exists",
            )
        position = len(self._periods)
        for index, existing in enumerate(self._periods):
            if existing.date > period.date:
                position = index
                break
        self._periods.insert(position, period)
        return position

    def add_period(
        self,
        when: Any,
        raw_values: Optional[Mapping[int, Any]] = None,
        subrows: Optional[Mapping[int, Sequence[SubrowRecord]]] = None,
    ) -> int:
        """Record a new period entered by a user.

        Args:
            when (Any): Period date (date, ISO string or display string).
            raw_values (Mapping[int, Any] | None): Entered values keyed by
                column index. Only editable columns are accepted.
            subrows (Mapping[int, Sequence] | None): Subrow ledgers keyed by
                column index.

        Returns:
            int: Position of the new period in date order.

        Raises:
            ValidationError: On a duplicate date, a non-editable column or an
                invalid subrow record.
        """

        period_date = parse_period_date(when)
        values = {index: self._entry_value(index, value) for index, value in (raw_values or {}).items()}
        ledgers = {
            index: normalize_subrows(self._column(index), records)
            for index, records in (subrows or {}).items()
        }
        position = self.load_period(Period(date=period_date, raw_values=values, subrows=ledgers))
        log.info("Added period %s at position %d", period_date.isoformat(), position)
        return position

    def with_draft(
        self,
        when: Any,
        raw_values: Optional[Mapping[int, Any]] = None,
        subrows: Optional[Mapping[int, Sequence[SubrowRecord]]] = None,
    ) -> Tuple["PeriodTable", int]:
        """Return a copy of the table with an unsaved period added."""

        draft = self.copy()
        position = draft.add_period(when, raw_values, subrows)
        return draft, position

    # -- editing ----------------------------------------------------------

    def _column(self, column_index: int) -> Column:
        if not 0 <= column_index < len(self.columns):
            raise ValidationError("column_not_editable", f"No column at index {column_index}")
        return self.columns[column_index]

    def _period_index(self, period_index: int) -> int:
        if not 0 <= period_index < len(self._periods):
            raise ValidationError("period_out_of_range", f"No period at index {period_index}")
        return period_index

    def _entry_value(self, column_index: int, value: Any) -> Decimal:
        column = self._column(column_index)
        if not column.accepts_entry:
            raise ValidationError(
                "column_not_editable",
                f"Column '{column.name}' ({column.kind.value}) does not accept entered values",
            )
        return to_number(value)

    def set_raw_value(self, period_index: int, column_index: int, value: Any) -> None:
        position = self._period_index(period_index)
        number = self._entry_value(column_index, value)
        period = self._periods[position]
        values = dict(period.raw_values)
        values[column_index] = number
        self._periods[position] = replace(period, raw_values=values)
        log.debug("Set column %d of period %s to %s", column_index, period.date.isoformat(), number)

    def clear_raw_value(self, period_index: int, column_index: int) -> None:
        position = self._period_index(period_index)
        period = self._periods[position]
        values = {index: value for index, value in period.raw_values.items() if index != column_index}
        self._periods[position] = replace(period, raw_values=values)

    def set_subrows(self, period_index: int, column_index: int, records: Sequence[SubrowRecord]) -> None:
        position = self._period_index(period_index)
        ledger = normalize_subrows(self._column(column_index), records)
        period = self._periods[position]
        ledgers = dict(period.subrows)
        ledgers[column_index] = ledger
        self._periods[position] = replace(period, subrows=ledgers)
        log.debug(
            "Stored %d subrows for column %d of period %s",
            len(ledger),
            column_index,
            period.date.isoformat(),
        )

    # -- reading ----------------------------------------------------------

    def ledger(self, column_index: int, period_index: int) -> Tuple[Dict[str, Any], ...]:
        return tuple(self._periods[period_index].subrows.get(column_index, ()))

    def raw_value(self, column_index: int, period_index: int) -> Optional[Decimal]:
        """Return the effective raw value of a cell, or ``None`` when absent.

        A non-empty subrow ledger is authoritative over a directly entered
        scalar.
        """

        column = self.columns[column_index]
        if column.subrows is not None:
            records = self.ledger(column_index, period_index)
            if records:
                return aggregate_ledger(records, column.subrows.aggregate_field)
        return self._periods[period_index].raw_values.get(column_index)


def date_column_index(columns: Sequence[Column]) -> int:
    for index, column in enumerate(columns):
        if column.is_date:
            return index
    return 0


def build_period_table(
    columns: Sequence[Column],
    attribute_data: Sequence[Sequence[Any]],
    subrows: Optional[Sequence[Optional[Mapping[str, Sequence[SubrowRecord]]]]] = None,
) -> PeriodTable:
    """Build a table from per-attribute value arrays.

    The sheet service stores data column-wise: ``attribute_data[i]`` holds the
    values of column ``i`` for every period, in parallel with the date column.
    Recurrent values are kept as manual overrides only when the column is not
    fed automatically; computed and referenced arrays are ignored.

    Args:
        columns (Sequence[Column]): Sheet columns in positional order.
        attribute_data (Sequence[Sequence[Any]]): Value arrays per column.
        subrows (Sequence | None): Optional per-period mapping of column index
            (as a string) to subrow records.

    Returns:
        PeriodTable: Table sorted by date.
    """

    table = PeriodTable(columns)
    date_index = date_column_index(columns)
    dates = attribute_data[date_index] if date_index < len(attribute_data) else []
    subrows = subrows or []

    for row, raw_date in enumerate(dates):
        if is_blank(raw_date):
            log.warning("Skipping period %d with a blank date", row)
            continue
        values: Dict[int, Decimal] = {}
        for index, column in enumerate(columns):
            if index == date_index or index >= len(attribute_data):
                continue
            cells = attribute_data[index]
            cell = cells[row] if row < len(cells) else None
            if is_blank(cell):
                continue
            if column.kind is ColumnKind.INDEPENDENT:
                values[index] = to_number(cell)
            elif column.kind is ColumnKind.RECURRENT and column.accepts_entry:
                values[index] = to_number(cell)
        ledgers: Dict[int, Tuple[Dict[str, Any], ...]] = {}
        row_subrows = subrows[row] if row < len(subrows) and subrows[row] else {}
        for key, records in row_subrows.items():
            index = int(key)
            if 0 <= index < len(columns) and columns[index].subrows is not None and records:
                ledgers[index] = normalize_subrows(columns[index], records)
        table.load_period(Period(date=parse_period_date(raw_date), raw_values=values, subrows=ledgers))

    log.debug("Built period table with %d periods and %d columns", len(table), len(columns))
    return table


__all__ = [
    "ZERO",
    "Period",
    "PeriodTable",
    "to_number",
    "is_blank",
    "parse_period_date",
    "aggregate_ledger",
    "normalize_subrows",
    "date_column_index",
    "build_period_table",
]
