"""Reconciliation of sheet-reported stock totals against counted stock.

A session freezes the opening and closing totals of every sheet at the moment
it is started, then tracks the counts a user enters and the resulting
variances (``counted - total``). Progress is written to an injected key-value
store on every change so an interrupted session can be resumed later.

Lifecycle::

    Fresh -> Editing -> SavedAndExited | Cleared

``restore`` re-enters ``Editing`` from saved progress. ``Cleared`` is terminal
for a session; starting fresh begins a new one.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from . import log
from .constants import (
    ALL_GROUPS,
    PROGRESS_STORE_KEY,
    SOURCE_STORE_KEY,
    UNGROUPED_LABEL,
    CountField,
    SessionState,
)
from .errors import PersistenceError, ValidationError
from .periods import ZERO, is_blank, parse_period_date, to_number


class KeyValueStore(Protocol):
    """Minimal storage contract for persisted reconciliation blobs."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def clear(self, key: str) -> None:
        ...


class InMemoryStore:
    """Dictionary-backed :class:`KeyValueStore`."""

    def __init__(self, initial: Optional[Mapping[str, str]] = None) -> None:
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def clear(self, key: str) -> None:
        self.data.pop(key, None)


def _decimal_text(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _optional_number(value: Any) -> Optional[Decimal]:
    return None if is_blank(value) else to_number(value)


@dataclass(frozen=True)
class SheetSnapshot:
    """Frozen totals of one sheet plus the counts entered against them."""

    sheet_name: str
    opening_total: Decimal
    closing_total: Decimal
    counted_opening: Optional[Decimal] = None
    counted_closing: Optional[Decimal] = None
    opening_variance: Decimal = ZERO
    closing_variance: Decimal = ZERO
    sheet_id: Optional[str] = None
    group_name: Optional[str] = None
    has_stock_columns: bool = False
    opening_count: Optional[int] = None
    closing_count: Optional[int] = None
    opening_column_name: Optional[str] = None
    closing_column_name: Optional[str] = None

    @property
    def group_label(self) -> str:
        return self.group_name or UNGROUPED_LABEL

    def with_count(self, count_field: CountField, value: Decimal) -> "SheetSnapshot":
        if count_field is CountField.OPENING:
            return replace(self, counted_opening=value, opening_variance=value - self.opening_total)
        return replace(self, counted_closing=value, closing_variance=value - self.closing_total)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "sheetName": self.sheet_name,
            "sheetId": self.sheet_id,
            "groupName": self.group_name,
            "openingStockTotal": str(self.opening_total),
            "closingStockTotal": str(self.closing_total),
            "reconOpeningStock": _decimal_text(self.counted_opening),
            "reconClosingStock": _decimal_text(self.counted_closing),
            "openingDifference": str(self.opening_variance),
            "closingDifference": str(self.closing_variance),
            "hasStockColumns": self.has_stock_columns,
            "openingCount": self.opening_count,
            "closingCount": self.closing_count,
            "openingColumnName": self.opening_column_name,
            "closingColumnName": self.closing_column_name,
        }


def snapshot_from_source(sheet: Mapping[str, Any], group_name: Optional[str] = None) -> SheetSnapshot:
    """Seed a snapshot from a stock-pull sheet with empty counts.

    Accepts both the stream's field names (``openingStockTotal``) and the
    short form (``openingTotal``); ``columnMeta.groupName`` supplies the group
    when no explicit group is given.
    """

    sheet_name = sheet.get("sheetName")
    if not sheet_name:
        raise ValidationError("unknown_sheet", "Reconciliation sheets require a sheetName")
    column_meta = sheet.get("columnMeta") or {}
    opening_count = sheet.get("openingCount")
    closing_count = sheet.get("closingCount")
    return SheetSnapshot(
        sheet_name=str(sheet_name),
        opening_total=to_number(sheet.get("openingStockTotal", sheet.get("openingTotal"))),
        closing_total=to_number(sheet.get("closingStockTotal", sheet.get("closingTotal"))),
        sheet_id=sheet.get("sheetId"),
        group_name=group_name or sheet.get("groupName") or column_meta.get("groupName"),
        has_stock_columns=bool(sheet.get("hasStockColumns", False)),
        opening_count=int(opening_count) if opening_count is not None else None,
        closing_count=int(closing_count) if closing_count is not None else None,
        opening_column_name=sheet.get("openingColumnName"),
        closing_column_name=sheet.get("closingColumnName"),
    )


def snapshot_from_payload(payload: Mapping[str, Any]) -> SheetSnapshot:
    """Restore a snapshot written by :meth:`SheetSnapshot.to_payload` verbatim."""

    if not isinstance(payload, Mapping) or not payload.get("sheetName"):
        raise PersistenceError(PROGRESS_STORE_KEY, "Saved sheet entry has no sheetName")
    base = snapshot_from_source(payload)
    return replace(
        base,
        counted_opening=_optional_number(payload.get("reconOpeningStock")),
        counted_closing=_optional_number(payload.get("reconClosingStock")),
        opening_variance=to_number(payload.get("openingDifference")),
        closing_variance=to_number(payload.get("closingDifference")),
    )


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def to_payload(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class SheetFilter:
    """Which sheets are in view.

    ``sheet_names`` of ``None`` selects every sheet. The group filter uses
    ``all`` for no restriction and the search is a case-insensitive substring
    match on the sheet name.
    """

    sheet_names: Optional[frozenset[str]] = None
    group: str = ALL_GROUPS
    search: str = ""

    def matches(self, snapshot: SheetSnapshot) -> bool:
        if self.search and self.search.lower() not in snapshot.sheet_name.lower():
            return False
        if self.sheet_names is not None and snapshot.sheet_name not in self.sheet_names:
            return False
        if self.group != ALL_GROUPS and snapshot.group_name != self.group:
            return False
        return True


@dataclass(frozen=True)
class VarianceSummary:
    """Sums over the sheets currently in view."""

    sheet_count: int = 0
    opening_total_sum: Decimal = ZERO
    counted_opening_sum: Decimal = ZERO
    opening_variance_sum: Decimal = ZERO
    closing_total_sum: Decimal = ZERO
    counted_closing_sum: Decimal = ZERO
    closing_variance_sum: Decimal = ZERO


SORTABLE_FIELDS = (
    "sheet_name",
    "opening_total",
    "counted_opening",
    "opening_variance",
    "closing_total",
    "counted_closing",
    "closing_variance",
)


@dataclass
class ReconciliationSession:
    """Mutable state of one reconciliation."""

    snapshots: List[SheetSnapshot] = field(default_factory=list)
    date_range: Optional[DateRange] = None
    state: SessionState = SessionState.FRESH
    source: Dict[str, Any] = field(default_factory=dict)

    def find(self, sheet_name: str) -> Optional[int]:
        for index, snapshot in enumerate(self.snapshots):
            if snapshot.sheet_name == sheet_name:
                return index
        return None

    @property
    def is_closed(self) -> bool:
        return self.state in (SessionState.SAVED_AND_EXITED, SessionState.CLEARED)


def _group_map(metadata: Optional[Iterable[Mapping[str, Any]]]) -> Dict[str, str]:
    groups: Dict[str, str] = {}
    for meta in metadata or []:
        name = meta.get("sheetName")
        group = meta.get("groupName")
        if name and group:
            groups[str(name)] = str(group)
    return groups


def _parse_date_range(raw: Any) -> Optional[DateRange]:
    if not isinstance(raw, Mapping) or raw.get("start") is None or raw.get("end") is None:
        return None
    return DateRange(start=parse_period_date(raw["start"]), end=parse_period_date(raw["end"]))


class ReconciliationDiffer:
    """Drive a reconciliation session against a key-value store."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store
        self.session = ReconciliationSession()
        self.filter = SheetFilter()
        self.sort_key: Optional[str] = None
        self.sort_descending = False
        self.last_error: Optional[PersistenceError] = None

    # -- lifecycle ----------------------------------------------------------

    def start_fresh(
        self,
        sheets: Sequence[Mapping[str, Any]],
        date_range: DateRange,
        *,
        metadata: Optional[Sequence[Mapping[str, Any]]] = None,
        summary: Optional[Mapping[str, Any]] = None,
    ) -> ReconciliationSession:
        """Begin a new session from a time-ranged stock pull.

        Counted values start empty. Both the seeded progress and the source
        snapshot are written to the store straight away.

        Args:
            sheets (Sequence[Mapping[str, Any]]): Sheet totals as delivered by
                the stock pull.
            date_range (DateRange): Period covered by the pull.
            metadata (Sequence[Mapping[str, Any]] | None): Sheet metadata
                supplying ``groupName`` per ``sheetName``.
            summary (Mapping[str, Any] | None): Completion summary of the pull.

        Returns:
            ReconciliationSession: The new session in state ``Fresh``.
        """

        groups = _group_map(metadata)
        snapshots = [snapshot_from_source(sheet, groups.get(str(sheet.get("sheetName")))) for sheet in sheets]
        source = {
            "sheets": [dict(sheet) for sheet in sheets],
            "summary": dict(summary) if summary is not None else None,
            "dateRange": date_range.to_payload(),
            "timestamp": datetime.now(UTC).isoformat(),
            "metaData": [dict(meta) for meta in metadata or []],
        }
        self.session = ReconciliationSession(
            snapshots=snapshots,
            date_range=date_range,
            state=SessionState.FRESH,
            source=source,
        )
        self.filter = SheetFilter()
        self.last_error = None
        self.persist()
        log.info(
            "Started reconciliation for %d sheets (%s to %s)",
            len(snapshots),
            date_range.start.isoformat(),
            date_range.end.isoformat(),
        )
        return self.session

    def _decode(self, key: str, blob: Optional[str]) -> Any:
        if blob is None:
            raise PersistenceError(key, f"No saved state under '{key}'")
        try:
            return json.loads(blob)
        except json.JSONDecodeError as exc:
            raise PersistenceError(key, f"Saved state under '{key}' is not valid JSON") from exc

    def _load_source(self, raw_source: Any) -> Dict[str, Any]:
        if raw_source is None:
            return {}
        if not isinstance(raw_source, Mapping):
            raise PersistenceError(SOURCE_STORE_KEY, "Saved source snapshot is not an object")
        return dict(raw_source)

    def _rebuild(self, raw_progress: Any, source: Dict[str, Any]) -> ReconciliationSession:
        groups = _group_map(source.get("metaData"))
        if raw_progress is None:
            sheets = source.get("sheets")
            if not isinstance(sheets, list):
                raise PersistenceError(PROGRESS_STORE_KEY, "No saved progress or source sheets to resume")
            snapshots = [snapshot_from_source(sheet, groups.get(str(sheet.get("sheetName")))) for sheet in sheets]
        else:
            if not isinstance(raw_progress, list):
                raise PersistenceError(PROGRESS_STORE_KEY, "Saved progress is not a list of sheets")
            snapshots = [snapshot_from_payload(entry) for entry in raw_progress]
        try:
            date_range = _parse_date_range(source.get("dateRange"))
        except ValidationError as exc:
            raise PersistenceError(SOURCE_STORE_KEY, f"Saved date range is invalid: {exc.message}") from exc
        return ReconciliationSession(
            snapshots=snapshots,
            date_range=date_range,
            state=SessionState.EDITING,
            source=source,
        )

    def restore(self, blob: Optional[str] = None) -> ReconciliationSession:
        """Resume a saved session without recomputing any totals.

        Args:
            blob (str | None): Output of :meth:`persist`. When omitted the two
                store keys are read instead.

        Returns:
            ReconciliationSession: The restored session in state ``Editing``,
                or an empty ``Fresh`` session when the saved state is missing
                or corrupt. In the latter case :attr:`last_error` holds the
                :class:`PersistenceError` for the caller to surface.
        """

        try:
            if blob is not None:
                document = self._decode(PROGRESS_STORE_KEY, blob)
                if not isinstance(document, Mapping):
                    raise PersistenceError(PROGRESS_STORE_KEY, "Saved session is not an object")
                raw_progress = document.get("progress")
                source = self._load_source(document.get("source"))
            else:
                progress_blob = self.store.get(PROGRESS_STORE_KEY)
                source_blob = self.store.get(SOURCE_STORE_KEY)
                if progress_blob is None and source_blob is None:
                    raise PersistenceError(PROGRESS_STORE_KEY, "No saved reconciliation to resume")
                raw_progress = self._decode(PROGRESS_STORE_KEY, progress_blob) if progress_blob is not None else None
                source = self._load_source(
                    self._decode(SOURCE_STORE_KEY, source_blob) if source_blob is not None else None
                )
            session = self._rebuild(raw_progress, source)
        except (PersistenceError, ValidationError, TypeError, ValueError, AttributeError) as exc:
            error = (
                exc
                if isinstance(exc, PersistenceError)
                else PersistenceError(PROGRESS_STORE_KEY, f"Saved reconciliation is corrupt: {exc}")
            )
            log.warning("Could not restore reconciliation, starting empty: %s", error.message)
            self.session = ReconciliationSession()
            self.last_error = error
            return self.session

        self.session = session
        self.filter = SheetFilter()
        self.last_error = None
        log.info("Restored reconciliation with %d sheets", len(session.snapshots))
        return session

    def persist(self) -> str:
        """Write the session to the store and return it as one JSON document."""

        progress = [snapshot.to_payload() for snapshot in self.session.snapshots]
        source = dict(self.session.source)
        if self.session.date_range is not None:
            source.setdefault("dateRange", self.session.date_range.to_payload())
        self.store.set(PROGRESS_STORE_KEY, json.dumps(progress))
        self.store.set(SOURCE_STORE_KEY, json.dumps(source, default=str))
        log.debug("Persisted reconciliation progress for %d sheets", len(progress))
        return json.dumps({"progress": progress, "source": source}, default=str)

    def save_and_exit(self) -> str:
        self._require_open()
        document = self.persist()
        self.session.state = SessionState.SAVED_AND_EXITED
        log.info("Saved reconciliation and exited")
        return document

    def clear(self) -> None:
        """Discard saved state; the current session becomes terminal."""

        self.store.clear(PROGRESS_STORE_KEY)
        self.store.clear(SOURCE_STORE_KEY)
        self.session.state = SessionState.CLEARED
        log.info("Cleared reconciliation state")

    def has_saved_progress(self) -> bool:
        return self.store.get(SOURCE_STORE_KEY) is not None or self.store.get(PROGRESS_STORE_KEY) is not None

    # -- editing ------------------------------------------------------------

    def _require_open(self) -> None:
        if self.session.is_closed:
            raise ValidationError(
                "session_closed",
                f"Reconciliation session is {self.session.state.value}; restore or start a new one",
            )

    def set_counted(self, sheet_name: str, count_field: CountField | str, value: Any) -> SheetSnapshot:
        """Record a counted total and recompute that sheet's variance.

        Non-numeric input counts as zero, matching how blank cells are treated
        by the entry form.

        Raises:
            ValidationError: For an unknown sheet or field, or a closed session.
        """

        self._require_open()
        try:
            target = CountField(count_field)
        except ValueError as exc:
            raise ValidationError("unknown_count_field", f"Unknown count field: {count_field!r}") from exc
        position = self.session.find(sheet_name)
        if position is None:
            raise ValidationError("unknown_sheet", f"Sheet '{sheet_name}' is not part of this reconciliation")

        updated = self.session.snapshots[position].with_count(target, to_number(value))
        self.session.snapshots[position] = updated
        self.session.state = SessionState.EDITING
        self.persist()
        log.debug("Counted %s for '%s' set to %s", target.value, sheet_name, value)
        return updated

    # -- viewing ------------------------------------------------------------

    def set_filter(
        self,
        *,
        sheet_names: Optional[Iterable[str]] = None,
        group: str = ALL_GROUPS,
        search: str = "",
    ) -> SheetFilter:
        self.filter = SheetFilter(
            sheet_names=frozenset(sheet_names) if sheet_names is not None else None,
            group=group,
            search=search,
        )
        return self.filter

    def set_sort(self, key: Optional[str], *, descending: bool = False) -> None:
        if key is not None and key not in SORTABLE_FIELDS:
            raise ValidationError("unknown_sort_key", f"Cannot sort by {key!r}")
        self.sort_key = key
        self.sort_descending = descending

    def sheet_names(self) -> List[str]:
        return sorted({snapshot.sheet_name for snapshot in self.session.snapshots})

    def groups(self) -> List[str]:
        return sorted({snapshot.group_name for snapshot in self.session.snapshots if snapshot.group_name})

    def visible_sheets(self, sheet_filter: Optional[SheetFilter] = None) -> List[SheetSnapshot]:
        """Sheets matching the filter, grouped, then ordered by the sort key."""

        active = sheet_filter if sheet_filter is not None else self.filter
        visible = [snapshot for snapshot in self.session.snapshots if active.matches(snapshot)]
        if self.sort_key is not None:
            key = self.sort_key

            def sort_value(snapshot: SheetSnapshot) -> Any:
                value = getattr(snapshot, key)
                if key == "sheet_name":
                    return value.lower()
                return value if value is not None else ZERO

            visible.sort(key=sort_value, reverse=self.sort_descending)
        visible.sort(key=lambda snapshot: snapshot.group_label)
        return visible

    def aggregate_variance(self, sheet_filter: Optional[SheetFilter] = None) -> VarianceSummary:
        """Sum totals, counts and variances over the sheets in view."""

        visible = self.visible_sheets(sheet_filter)
        summary = VarianceSummary(
            sheet_count=len(visible),
            opening_total_sum=sum((sheet.opening_total for sheet in visible), ZERO),
            counted_opening_sum=sum((sheet.counted_opening or ZERO for sheet in visible), ZERO),
            opening_variance_sum=sum((sheet.opening_variance for sheet in visible), ZERO),
            closing_total_sum=sum((sheet.closing_total for sheet in visible), ZERO),
            counted_closing_sum=sum((sheet.counted_closing or ZERO for sheet in visible), ZERO),
            closing_variance_sum=sum((sheet.closing_variance for sheet in visible), ZERO),
        )
        log.debug("Aggregated variance over %d visible sheets", summary.sheet_count)
        return summary


__all__ = [
    "KeyValueStore",
    "InMemoryStore",
    "SheetSnapshot",
    "snapshot_from_source",
    "snapshot_from_payload",
    "DateRange",
    "SheetFilter",
    "VarianceSummary",
    "SORTABLE_FIELDS",
    "ReconciliationSession",
    "ReconciliationDiffer",
]
