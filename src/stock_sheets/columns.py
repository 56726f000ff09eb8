"""Column model for stock sheets.

Every sheet is an ordered list of attributes (columns). A column's position is
its identity for formulas and recurrence, so columns are append-only: hiding
and deleting are soft flags carried as metadata rather than structural edits.

The module offers three groups of helpers:

1. Typed column definitions and convenience constructors.
2. Conversion from and to the attribute metadata produced by the external
   sheet-definition service.
3. Validation for the admin mutation path, including dependency cycle
   detection across derived columns.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, NoReturn, Optional, Sequence, Tuple

from . import log
from .constants import DATE_COLUMN_NAME, ColumnKind, SubrowFieldType
from .errors import FormulaError, ValidationError


@dataclass(frozen=True)
class DerivedFormula:
    """Signed sum over other columns of the same period, addressed by index."""

    additions: Tuple[int, ...] = ()
    subtractions: Tuple[int, ...] = ()

    @property
    def indices(self) -> Tuple[int, ...]:
        return self.additions + self.subtractions


@dataclass(frozen=True)
class Recurrence:
    """Carry-forward of a referenced column's value from the prior period."""

    reference_index: int
    fed_for_current_period: bool = False


@dataclass(frozen=True)
class SheetReference:
    """Link to the sheet that supplies a referenced column's values."""

    sheet_id: str


@dataclass(frozen=True)
class SubrowField:
    """One field of an itemised subrow record."""

    name: str
    type: SubrowFieldType = SubrowFieldType.NUMBER
    required: bool = False


@dataclass(frozen=True)
class SubrowConfig:
    """Layout of the subrow ledger attached to a column."""

    fields: Tuple[SubrowField, ...]
    aggregate_field: str

    def get_field(self, name: str) -> Optional[SubrowField]:
        for candidate in self.fields:
            if candidate.name == name:
                return candidate
        return None


@dataclass(frozen=True)
class Column:
    """Immutable description of one sheet attribute."""

    name: str
    kind: ColumnKind = ColumnKind.INDEPENDENT
    formula: Optional[DerivedFormula] = None
    recurrence: Optional[Recurrence] = None
    reference: Optional[SheetReference] = None
    subrows: Optional[SubrowConfig] = None
    is_hidden: bool = False
    is_deleted: bool = False

    @property
    def has_subrows(self) -> bool:
        return self.subrows is not None

    @property
    def is_date(self) -> bool:
        return self.name.strip().lower() == DATE_COLUMN_NAME

    @property
    def is_visible(self) -> bool:
        return not (self.is_hidden or self.is_deleted)

    @property
    def accepts_entry(self) -> bool:
        """Whether users may type a value for this column in the entry form."""
        if self.kind is ColumnKind.INDEPENDENT:
            return not self.is_date
        if self.kind is ColumnKind.RECURRENT:
            return self.recurrence is not None and not self.recurrence.fed_for_current_period
        return False


@dataclass(frozen=True)
class SheetDefinition:
    """A sheet's identity plus its ordered columns."""

    sheet_id: str
    sheet_name: str
    columns: Tuple[Column, ...]
    group_name: Optional[str] = None
    _by_name: Dict[str, int] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self) -> None:
        for index, column in enumerate(self.columns):
            self._by_name.setdefault(column.name, index)

    def index_of(self, name: str) -> int:
        try:
            return self._by_name[name]
        except KeyError as exc:
            raise KeyError(f"Unknown column '{name}' in sheet '{self.sheet_name}'") from exc

    def column(self, index: int) -> Column:
        return self.columns[index]


def independent(name: str, *, subrows: Optional[SubrowConfig] = None) -> Column:
    return Column(name=name, kind=ColumnKind.INDEPENDENT, subrows=subrows)


def derived(name: str, additions: Iterable[int] = (), subtractions: Iterable[int] = ()) -> Column:
    formula = DerivedFormula(additions=tuple(additions), subtractions=tuple(subtractions))
    return Column(name=name, kind=ColumnKind.DERIVED, formula=formula)


def recurrent(name: str, reference_index: int, *, fed_for_current_period: bool = False) -> Column:
    recurrence = Recurrence(reference_index=reference_index, fed_for_current_period=fed_for_current_period)
    return Column(name=name, kind=ColumnKind.RECURRENT, recurrence=recurrence)


def referenced(name: str, sheet_id: str) -> Column:
    return Column(name=name, kind=ColumnKind.REFERENCED, reference=SheetReference(sheet_id=sheet_id))


# ---------------------------------------------------------------------------
# Metadata conversion
# ---------------------------------------------------------------------------


def _index_tuple(values: Optional[Iterable[Any]]) -> Tuple[int, ...]:
    if not values:
        return ()
    return tuple(int(value) for value in values)


def _subrows_from_metadata(attribute: Mapping[str, Any]) -> Optional[SubrowConfig]:
    config = attribute.get("subrowsConfig") or {}
    if not (attribute.get("hasSubrows") and config.get("subrowsEnabled")):
        return None
    fields = tuple(
        SubrowField(
            name=str(raw["name"]),
            type=SubrowFieldType(raw.get("type") or SubrowFieldType.NUMBER.value),
            required=bool(raw.get("required", False)),
        )
        for raw in config.get("subrowColumns") or []
    )
    return SubrowConfig(fields=fields, aggregate_field=str(config.get("aggregateField") or ""))


def column_from_metadata(attribute: Mapping[str, Any]) -> Column:
    """Convert one attribute dict from the sheet-definition service.

    Kind precedence matches the service's own interpretation: the ``derived``
    flag wins, then a ``linkedFrom.sheetObjectId`` link, then the recurrence
    check. Anything else is an independent column.

    Args:
        attribute (Mapping[str, Any]): Raw attribute metadata.

    Returns:
        Column: Typed column definition. No validation is performed here so
            stored (possibly corrupt) definitions still load.
    """

    name = str(attribute.get("name") or "")
    linked = attribute.get("linkedFrom") or {}
    recurrent_check = attribute.get("recurrentCheck") or {}
    common = {
        "name": name,
        "subrows": _subrows_from_metadata(attribute),
        "is_hidden": bool(attribute.get("isHidden", False)),
        "is_deleted": bool(attribute.get("isDeleted", False)),
    }

    if attribute.get("derived"):
        formula = attribute.get("formula") or {}
        return Column(
            kind=ColumnKind.DERIVED,
            formula=DerivedFormula(
                additions=_index_tuple(formula.get("additionIndices")),
                subtractions=_index_tuple(formula.get("subtractionIndices")),
            ),
            **common,
        )
    if linked.get("sheetObjectId") is not None:
        return Column(
            kind=ColumnKind.REFERENCED,
            reference=SheetReference(sheet_id=str(linked["sheetObjectId"])),
            **common,
        )
    if recurrent_check.get("isRecurrent"):
        reference_index = recurrent_check.get("recurrentReferenceIndice")
        return Column(
            kind=ColumnKind.RECURRENT,
            recurrence=Recurrence(
                reference_index=int(reference_index) if reference_index is not None else -1,
                fed_for_current_period=bool(recurrent_check.get("recurrenceFedStatus", False)),
            ),
            **common,
        )
    return Column(kind=ColumnKind.INDEPENDENT, **common)


def column_to_metadata(column: Column) -> Dict[str, Any]:
    """Serialise a column into the attribute shape used by the service."""

    formula = column.formula or DerivedFormula()
    recurrence = column.recurrence
    subrows = column.subrows
    return {
        "name": column.name,
        "derived": column.kind is ColumnKind.DERIVED,
        "formula": {
            "additionIndices": list(formula.additions),
            "subtractionIndices": list(formula.subtractions),
        },
        "recurrentCheck": {
            "isRecurrent": column.kind is ColumnKind.RECURRENT,
            "recurrentReferenceIndice": recurrence.reference_index if recurrence else None,
            "recurrenceFedStatus": recurrence.fed_for_current_period if recurrence else False,
        },
        "linkedFrom": {"sheetObjectId": column.reference.sheet_id if column.reference else None},
        "hasSubrows": subrows is not None,
        "subrowsConfig": {
            "subrowsEnabled": subrows is not None,
            "subrowColumns": [
                {"name": item.name, "type": item.type.value, "required": item.required}
                for item in (subrows.fields if subrows else ())
            ],
            "aggregateField": subrows.aggregate_field if subrows else None,
        },
        "isHidden": column.is_hidden,
        "isDeleted": column.is_deleted,
    }


def sheet_from_metadata(meta: Mapping[str, Any]) -> SheetDefinition:
    """Build a :class:`SheetDefinition` from a sheet metadata document."""

    columns = tuple(column_from_metadata(attribute) for attribute in meta.get("attributes") or [])
    group_name = meta.get("groupName")
    return SheetDefinition(
        sheet_id=str(meta.get("_id") or meta.get("sheetId") or ""),
        sheet_name=str(meta.get("sheetName") or ""),
        columns=columns,
        group_name=str(group_name) if group_name else None,
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _reject(rule: str, message: str) -> NoReturn:
    log.error("Column validation failed (%s): %s", rule, message)
    raise ValidationError(rule, message)


def _check_name(column: Column, others: Sequence[Column]) -> None:
    if not column.name.strip():
        _reject("name_required", "Column name must not be empty")
    if any(other.name == column.name for other in others):
        _reject("name_not_unique", f"Column name '{column.name}' already exists")


def _check_kind_metadata(column: Column) -> None:
    mismatched = (
        (column.formula is not None and column.kind is not ColumnKind.DERIVED)
        or (column.recurrence is not None and column.kind is not ColumnKind.RECURRENT)
        or (column.reference is not None and column.kind is not ColumnKind.REFERENCED)
    )
    if mismatched:
        _reject("kind_metadata_mismatch", f"Column '{column.name}' carries metadata of another kind")


def _check_formula(column: Column, own_index: int, column_count: int) -> None:
    formula = column.formula
    if formula is None or not formula.indices:
        _reject("formula_empty", f"Derived column '{column.name}' has no formula terms")
    for values in (formula.additions, formula.subtractions):
        if len(set(values)) != len(values):
            _reject("formula_duplicate_index", f"Derived column '{column.name}' repeats an index")
    if set(formula.additions) & set(formula.subtractions):
        _reject(
            "formula_sets_overlap",
            f"Derived column '{column.name}' both adds and subtracts the same column",
        )
    for index in formula.indices:
        if index == own_index:
            _reject("formula_self_reference", f"Derived column '{column.name}' references itself")
        if not 0 <= index < column_count:
            _reject(
                "formula_index_out_of_range",
                f"Derived column '{column.name}' references missing column index {index}",
            )


def _check_recurrence(column: Column, own_index: int, columns: Sequence[Column]) -> None:
    recurrence = column.recurrence
    if recurrence is None:
        _reject("recurrence_index_out_of_range", f"Recurrent column '{column.name}' has no reference")
    index = recurrence.reference_index
    if index == own_index:
        _reject("recurrence_self_reference", f"Recurrent column '{column.name}' references itself")
    if not 0 <= index < len(columns):
        _reject(
            "recurrence_index_out_of_range",
            f"Recurrent column '{column.name}' references missing column index {index}",
        )
    if columns[index].kind in (ColumnKind.RECURRENT, ColumnKind.REFERENCED):
        _reject(
            "recurrence_chained",
            f"Recurrent column '{column.name}' cannot reference {columns[index].kind.value} column "
            f"'{columns[index].name}'",
        )


def _check_subrows(column: Column) -> None:
    config = column.subrows
    if config is None:
        return
    if column.kind is not ColumnKind.INDEPENDENT or column.is_date:
        _reject("subrows_not_supported", f"Column '{column.name}' cannot carry subrows")
    if not config.fields:
        _reject("subrows_config_missing", f"Column '{column.name}' enables subrows without fields")
    aggregate = config.get_field(config.aggregate_field)
    if aggregate is None:
        _reject(
            "subrows_aggregate_field_unknown",
            f"Aggregate field '{config.aggregate_field}' is not a subrow field of '{column.name}'",
        )
    if aggregate.type is not SubrowFieldType.NUMBER:
        _reject(
            "subrows_aggregate_field_not_numeric",
            f"Aggregate field '{config.aggregate_field}' of '{column.name}' must be numeric",
        )


def _check_column(column: Column, own_index: int, columns: Sequence[Column], formula_span: int) -> None:
    _check_name(column, [other for index, other in enumerate(columns) if index != own_index])
    _check_kind_metadata(column)
    if column.kind is ColumnKind.DERIVED:
        _check_formula(column, own_index, formula_span)
    elif column.kind is ColumnKind.RECURRENT:
        _check_recurrence(column, own_index, columns)
    elif column.kind is ColumnKind.REFERENCED and (column.reference is None or not column.reference.sheet_id):
        _reject("reference_missing", f"Referenced column '{column.name}' has no source sheet")
    _check_subrows(column)


def validate_column_definition(definition: Column | Mapping[str, Any], existing_columns: Sequence[Column]) -> Column:
    """Validate a new column appended after ``existing_columns``.

    Columns are append-only, so at definition time derived formulas may only
    point at columns that already exist. That alone rules out cycles for the
    appended column; edits to existing formulas go through
    :func:`validate_formula_update` instead.

    Args:
        definition (Column | Mapping[str, Any]): Candidate column, either typed
            or as service metadata.
        existing_columns (Sequence[Column]): Columns already on the sheet, in
            positional order.

    Returns:
        Column: The validated column with its name trimmed.

    Raises:
        ValidationError: Naming the first violated rule. Nothing is committed
            on failure.
    """

    column = definition if isinstance(definition, Column) else column_from_metadata(definition)
    column = replace(column, name=column.name.strip())
    own_index = len(existing_columns)
    _check_column(column, own_index, [*existing_columns, column], formula_span=own_index)
    log.info("Validated %s column '%s' at index %d", column.kind.value, column.name, own_index)
    return column


def find_formula_cycle(columns: Sequence[Column]) -> Optional[List[int]]:
    """Return the column indices of the first derived-formula cycle, if any.

    Only same-period edges are followed: a derived column depends on each of
    its formula indices. Recurrent columns read the previous period, so their
    references can never close a loop within one period. Out-of-range indices
    are ignored here; they are reported by validation.
    """

    visiting: set[int] = set()
    done: set[int] = set()
    path: List[int] = []

    def visit(index: int) -> Optional[List[int]]:
        if index in done:
            return None
        if index in visiting:
            return path[path.index(index):] + [index]
        column = columns[index]
        if column.kind is not ColumnKind.DERIVED or column.formula is None:
            done.add(index)
            return None
        visiting.add(index)
        path.append(index)
        for target in column.formula.indices:
            if 0 <= target < len(columns):
                cycle = visit(target)
                if cycle is not None:
                    return cycle
        path.pop()
        visiting.discard(index)
        done.add(index)
        return None

    for start in range(len(columns)):
        cycle = visit(start)
        if cycle is not None:
            return cycle
    return None


def _raise_on_cycle(columns: Sequence[Column]) -> None:
    cycle = find_formula_cycle(columns)
    if cycle is not None:
        names = " -> ".join(columns[index].name for index in cycle)
        log.error("Formula cycle detected: %s", names)
        raise FormulaError(cycle[0], f"Formula cycle detected: {names}")


def validate_sheet_columns(columns: Sequence[Column]) -> Tuple[Column, ...]:
    """Validate a complete column list before it is published.

    Raises:
        ValidationError: For the first column breaking a definition rule.
        FormulaError: When derived formulas form a dependency cycle.
    """

    for index, column in enumerate(columns):
        _check_column(column, index, columns, formula_span=len(columns))
    _raise_on_cycle(columns)
    log.debug("Validated sheet with %d columns", len(columns))
    return tuple(columns)


def validate_formula_update(
    columns: Sequence[Column],
    index: int,
    formula: DerivedFormula,
) -> Tuple[Column, ...]:
    """Replace one derived column's formula and validate the result.

    Unlike appending, an in-place edit may point at later columns, so the
    full dependency graph is checked for cycles.

    Returns:
        tuple[Column, ...]: The updated column list. The input is untouched.
    """

    if not 0 <= index < len(columns):
        _reject("formula_index_out_of_range", f"No column at index {index}")
    target = columns[index]
    if target.kind is not ColumnKind.DERIVED:
        _reject("kind_metadata_mismatch", f"Column '{target.name}' is not a derived column")
    updated = replace(target, formula=formula)
    _check_formula(updated, index, len(columns))
    candidate = tuple(updated if position == index else column for position, column in enumerate(columns))
    _raise_on_cycle(candidate)
    log.info("Updated formula of derived column '%s'", target.name)
    return candidate


__all__ = [
    "DerivedFormula",
    "Recurrence",
    "SheetReference",
    "SubrowField",
    "SubrowConfig",
    "Column",
    "SheetDefinition",
    "independent",
    "derived",
    "recurrent",
    "referenced",
    "column_from_metadata",
    "column_to_metadata",
    "sheet_from_metadata",
    "validate_column_definition",
    "validate_sheet_columns",
    "validate_formula_update",
    "find_formula_cycle",
]
