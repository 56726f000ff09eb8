"""Incremental ingestion of the streamed bulk stock pull.

The stock-pull source answers with a server-sent event style text stream. Each
payload line starts with ``data: `` followed by one JSON object tagged with a
``type`` of ``progress``, ``sheet`` or ``complete``. Records are folded into a
:class:`StockPull` as they arrive, so the partial set is usable at any point.
Stopping early is simply a matter of no longer pulling from the source; the
sheets ingested so far stay valid.
"""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncIterable, AsyncIterator, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from . import log
from .columns import SheetDefinition
from .constants import STREAM_DATA_PREFIX, StreamEventType
from .errors import IngestionParseError
from .periods import PeriodTable, build_period_table, to_number
from .resolver import MappingReferenceSource, reference_source_from_arrays


Chunk = Union[str, bytes]


@dataclass(frozen=True)
class ProgressEvent:
    processed: int
    total: int
    percentage: Optional[float] = None


@dataclass(frozen=True)
class SheetStockRecord:
    """Stock figures of one sheet for the pulled date range."""

    sheet_id: str
    sheet_name: str
    opening_stock_total: Decimal
    closing_stock_total: Decimal
    has_stock_columns: bool = False
    opening_count: Optional[int] = None
    closing_count: Optional[int] = None
    opening_column_name: Optional[str] = None
    closing_column_name: Optional[str] = None
    attribute_data: Tuple[Tuple[Any, ...], ...] = ()
    subrows: Tuple[Any, ...] = ()
    payload: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def period_table(self, sheet: SheetDefinition) -> PeriodTable:
        """Rebuild the sheet's period table from the delivered arrays."""
        return build_period_table(sheet.columns, self.attribute_data, self.subrows)

    def reference_source(self, sheet: SheetDefinition) -> MappingReferenceSource:
        return reference_source_from_arrays(sheet.columns, self.attribute_data)


@dataclass(frozen=True)
class SheetEvent:
    record: SheetStockRecord
    progress: Optional[ProgressEvent] = None


@dataclass(frozen=True)
class CompleteEvent:
    summary: Mapping[str, Any]


StreamEvent = Union[ProgressEvent, SheetEvent, CompleteEvent]


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


def _progress_from_payload(payload: Mapping[str, Any]) -> ProgressEvent:
    total = payload.get("total", payload.get("totalSheets", 0))
    percentage = payload.get("percentage")
    return ProgressEvent(
        processed=int(payload.get("processed") or 0),
        total=int(total or 0),
        percentage=float(percentage) if percentage is not None else None,
    )


def sheet_record_from_payload(payload: Mapping[str, Any]) -> SheetStockRecord:
    """Convert the ``data`` object of a ``sheet`` event."""

    if not isinstance(payload, Mapping) or not payload.get("sheetName"):
        raise ValueError("sheet payload requires a sheetName")
    arrays = payload.get("attributeData") or ()
    return SheetStockRecord(
        sheet_id=str(payload.get("sheetId") or ""),
        sheet_name=str(payload["sheetName"]),
        opening_stock_total=to_number(payload.get("openingStockTotal")),
        closing_stock_total=to_number(payload.get("closingStockTotal")),
        has_stock_columns=bool(payload.get("hasStockColumns", False)),
        opening_count=_optional_int(payload.get("openingCount")),
        closing_count=_optional_int(payload.get("closingCount")),
        opening_column_name=payload.get("openingColumnName"),
        closing_column_name=payload.get("closingColumnName"),
        attribute_data=tuple(tuple(values) for values in arrays),
        subrows=tuple(payload.get("subrows") or ()),
        payload=dict(payload),
    )


def parse_stream_line(line: str) -> Optional[StreamEvent]:
    """Decode one line of the stream.

    Returns:
        StreamEvent | None: The tagged event, or ``None`` for lines that carry
            no payload (blank lines, comments, other SSE fields).

    Raises:
        IngestionParseError: If a payload line is not valid JSON or does not
            match one of the three tagged shapes.
    """

    line = line.rstrip("\r\n")
    if not line.startswith(STREAM_DATA_PREFIX):
        return None
    body = line[len(STREAM_DATA_PREFIX):]
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise IngestionParseError(line, f"Invalid JSON payload: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise IngestionParseError(line, "Payload is not a JSON object")

    try:
        event_type = StreamEventType(payload.get("type"))
    except ValueError as exc:
        raise IngestionParseError(line, f"Unknown event type: {payload.get('type')!r}") from exc

    try:
        match event_type:
            case StreamEventType.PROGRESS:
                return _progress_from_payload(payload)
            case StreamEventType.SHEET:
                progress = payload.get("progress")
                return SheetEvent(
                    record=sheet_record_from_payload(payload.get("data")),
                    progress=_progress_from_payload(progress) if isinstance(progress, Mapping) else None,
                )
            case StreamEventType.COMPLETE:
                summary = payload.get("summary") or {}
                if not isinstance(summary, Mapping):
                    raise ValueError("summary must be an object")
                return CompleteEvent(summary=dict(summary))
    except (TypeError, ValueError, KeyError) as exc:
        raise IngestionParseError(line, f"Malformed {event_type.value} event: {exc}") from exc
    return None


class StockPull:
    """Accumulated state of one bulk stock pull."""

    def __init__(self) -> None:
        self.sheets: List[SheetStockRecord] = []
        self.progress: Optional[ProgressEvent] = None
        self.summary: Optional[Dict[str, Any]] = None
        self.complete = False
        self.skipped_lines = 0

    def __len__(self) -> int:
        return len(self.sheets)

    def apply(self, event: StreamEvent) -> None:
        match event:
            case ProgressEvent():
                self.progress = event
            case SheetEvent(record=record, progress=progress):
                self.sheets.append(record)
                if progress is not None:
                    self.progress = progress
            case CompleteEvent(summary=summary):
                self.summary = dict(summary)
                self.complete = True
                log.info("Stock pull complete with %d sheets", len(self.sheets))

    def feed_line(self, line: str) -> Optional[StreamEvent]:
        """Parse and apply one line, skipping it if it cannot be decoded."""

        try:
            event = parse_stream_line(line)
        except IngestionParseError as exc:
            self.skipped_lines += 1
            log.warning("Skipping unparsable stream line: %s", exc.message)
            return None
        if event is not None:
            self.apply(event)
        return event

    def find_sheet(self, sheet_name: str) -> Optional[SheetStockRecord]:
        for record in self.sheets:
            if record.sheet_name == sheet_name:
                return record
        return None

    def source_sheets(self) -> List[Dict[str, Any]]:
        """Sheet payloads in arrival order, as delivered by the source."""
        return [dict(record.payload) for record in self.sheets]


def iter_chunk_lines(chunks: Iterable[Chunk]) -> Iterator[str]:
    """Split a sequence of text or byte chunks into complete lines.

    Chunk boundaries may fall anywhere, including inside a line or a
    multi-byte character; partial content is buffered until completed.
    """

    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    for chunk in chunks:
        buffer += decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        *lines, buffer = buffer.split("\n")
        yield from lines
    buffer += decoder.decode(b"", final=True)
    if buffer:
        yield buffer


async def aiter_chunk_lines(chunks: AsyncIterable[Chunk]) -> AsyncIterator[str]:
    """Asynchronous counterpart of :func:`iter_chunk_lines`."""

    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for chunk in chunks:
        buffer += decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        *lines, buffer = buffer.split("\n")
        for line in lines:
            yield line
    buffer += decoder.decode(b"", final=True)
    if buffer:
        yield buffer


def ingest_lines(lines: Iterable[str], pull: Optional[StockPull] = None) -> StockPull:
    """Fold already-split stream lines into ``pull`` (or a new pull)."""

    pull = pull if pull is not None else StockPull()
    for line in lines:
        pull.feed_line(line)
    return pull


async def ingest_stream(chunks: AsyncIterable[Chunk], pull: Optional[StockPull] = None) -> StockPull:
    """Consume a raw stream incrementally.

    ``pull`` is updated in place as each line arrives, so a caller that
    cancels the consuming task still holds every sheet received before the
    cancellation.
    """

    pull = pull if pull is not None else StockPull()
    async for line in aiter_chunk_lines(chunks):
        pull.feed_line(line)
    return pull


async def consume_events(events: AsyncIterable[StreamEvent], pull: Optional[StockPull] = None) -> StockPull:
    """Fold an asynchronous sequence of typed events into ``pull``."""

    pull = pull if pull is not None else StockPull()
    async for event in events:
        pull.apply(event)
    return pull


def read_stream_file(path: Path) -> StockPull:
    """Ingest a captured stream saved to disk."""

    path = Path(path).expanduser().resolve()
    if not path.exists():
        raise FileNotFoundError(f"Stream capture not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        pull = ingest_lines(handle)
    log.info(
        "Read %d sheets from '%s' (%d lines skipped)",
        len(pull),
        path,
        pull.skipped_lines,
    )
    return pull


__all__ = [
    "ProgressEvent",
    "SheetStockRecord",
    "SheetEvent",
    "CompleteEvent",
    "StreamEvent",
    "sheet_record_from_payload",
    "parse_stream_line",
    "StockPull",
    "iter_chunk_lines",
    "aiter_chunk_lines",
    "ingest_lines",
    "ingest_stream",
    "consume_events",
    "read_stream_file",
]
