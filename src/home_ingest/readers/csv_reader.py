"""CSV reader supporting single and stacked multi-row headers."""

import csv
import math
import re
from collections.abc import Iterator, Sequence
from datetime import datetime
from pathlib import Path

import structlog

from ..errors import MalformedRecordError, SourceUnreadableError
from ..models import DataPoint, DedupMode, FieldValue, RawRecord
from .base import SourceReader

logger = structlog.get_logger(__name__)

# Header labels recognised as the timestamp column
TIME_COLUMN_NAMES = {"date", "time", "timestamp", "datetime", "fecha", "datum"}

# Formats tried after ISO 8601 when no explicit format is configured
COMMON_TIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y",
    "%d.%m.%Y %H:%M:%S",
    "%d.%m.%Y",
    "%m/%d/%Y",
)

_CURRENCY_RE = re.compile(r"[$€£\s ]")
_THOUSANDS_RE = re.compile(r"^[-+]?\d{1,3}(,\d{3})+(\.\d+)?$")


def clean_header_cell(value: str) -> str:
    """Collapse line breaks and surrounding whitespace in a header cell."""
    return " ".join(value.replace("\r", " ").replace("\n", " ").split())


def header_labels(rows: Sequence[Sequence[str]]) -> list[str]:
    """Concatenate stacked header cells per column.

    Cells are joined top to bottom with a space. An empty cell inherits the
    nearest non-empty cell above it, and an inherited value is not repeated.
    Columns without any header text get an empty label.
    """
    width = max((len(row) for row in rows), default=0)
    labels: list[str] = []
    for col in range(width):
        parts: list[str] = []
        above = ""
        for row in rows:
            cell = clean_header_cell(row[col]) if col < len(row) else ""
            if not cell:
                cell = above
            if cell and cell != above:
                parts.append(cell)
            above = cell
        labels.append(" ".join(parts))
    return labels


def combine_headers(rows: Sequence[Sequence[str]]) -> list[str]:
    """Build column names from one or more stacked header rows.

    Labels come from ``header_labels``. Columns without any header text are
    named ``column_<n>``. Duplicate names get a numeric suffix so every column
    stays addressable.

    Args:
        rows: Header rows as read from the file.

    Returns:
        One name per column.
    """
    names: list[str] = []
    seen: dict[str, int] = {}

    for col, label in enumerate(header_labels(rows)):
        name = label or f"column_{col + 1}"
        count = seen.get(name, 0) + 1
        seen[name] = count
        names.append(name if count == 1 else f"{name}_{count}")

    return names


def parse_timestamp(value: str, time_format: str | None = None) -> datetime:
    """Parse a timestamp cell.

    Args:
        value: Cell text.
        time_format: Explicit ``strptime`` format; when omitted ISO 8601 and
            ``COMMON_TIME_FORMATS`` are tried in order.

    Raises:
        ValueError: If the value matches no format.
    """
    text = value.strip()
    if not text:
        raise ValueError("empty timestamp")
    if time_format:
        return datetime.strptime(text, time_format)
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass
    for fmt in COMMON_TIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    raise ValueError(f"unrecognised timestamp {text!r}")


def parse_number(value: str) -> float:
    """Parse a numeric cell, tolerating currency symbols, thousands separators and ``%``.

    Values are always floats so a column keeps one field type in InfluxDB.

    Raises:
        ValueError: If the cell is not numeric.
    """
    text = value.strip()
    if text.endswith("%"):
        text = text[:-1]
    text = _CURRENCY_RE.sub("", text)
    if _THOUSANDS_RE.match(text):
        text = text.replace(",", "")
    number = float(text)
    if not math.isfinite(number):
        raise ValueError(f"non-finite number {value!r}")
    return number


def is_time_label(name: str) -> bool:
    lowered = name.lower()
    return lowered in TIME_COLUMN_NAMES or any(
        token in TIME_COLUMN_NAMES for token in re.split(r"[\s_.\-/]+", lowered)
    )


def detect_time_column(
    columns: Sequence[str],
    first_row: Sequence[str] | None,
    time_column: str | None = None,
    time_format: str | None = None,
) -> int | None:
    """Locate the timestamp column.

    An explicit ``time_column`` wins (case-insensitive). Otherwise the first
    column with a date/time label is used, then the first column whose first
    data cell parses as a timestamp.

    Returns:
        Column index, or ``None`` when nothing qualifies.
    """
    if time_column:
        wanted = time_column.strip().lower()
        for i, name in enumerate(columns):
            if name.lower() == wanted:
                return i
        return None

    for i, name in enumerate(columns):
        if is_time_label(name):
            return i

    if first_row:
        for i, cell in enumerate(first_row[: len(columns)]):
            try:
                parse_timestamp(cell, time_format)
            except ValueError:
                continue
            return i
    return None


class CsvReader(SourceReader):
    """Reads timestamped rows from a CSV file.

    Every data row becomes one point: the timestamp column provides the time
    and all other non-empty cells become fields.
    """

    def __init__(
        self,
        path: Path | str,
        measurement: str,
        header_rows: int = 1,
        time_column: str | None = None,
        time_format: str | None = None,
        allow_text_fields: bool = False,
        delimiter: str = ",",
        encoding: str = "utf-8",
    ) -> None:
        super().__init__(path)
        if header_rows < 1:
            raise ValueError(f"Header rows must be at least 1, got {header_rows}")
        self._measurement = measurement
        self._header_rows = header_rows
        self._time_column = time_column
        self._time_format = time_format
        self._allow_text_fields = allow_text_fields
        self._delimiter = delimiter
        self._encoding = encoding
        self.columns: list[str] = []
        self.time_index: int | None = None

    @property
    def time_column(self) -> str | None:
        if self.time_index is None:
            return None
        return self.columns[self.time_index]

    def open(self) -> None:
        headers: list[list[str]] = []
        first_row: list[str] | None = None
        try:
            with self._path.open(newline="", encoding=self._encoding) as f:
                reader = csv.reader(f, delimiter=self._delimiter)
                for row in reader:
                    if len(headers) < self._header_rows:
                        headers.append(row)
                    elif _has_content(row):
                        first_row = row
                        break
        except (OSError, UnicodeDecodeError, csv.Error) as e:
            raise SourceUnreadableError(f"cannot read CSV: {e}", source=str(self._path)) from e

        if len(headers) < self._header_rows or not any(_has_content(r) for r in headers):
            raise SourceUnreadableError(
                f"expected {self._header_rows} header row(s)", source=str(self._path)
            )

        self.columns = combine_headers(headers)
        self.time_index = detect_time_column(
            self.columns, first_row, self._time_column, self._time_format
        )
        if self.time_index is None:
            raise SourceUnreadableError(
                "no timestamp column found"
                + (f" named {self._time_column!r}" if self._time_column else ""),
                source=str(self._path),
            )

        logger.info(
            "csv_opened",
            source=str(self._path),
            columns=len(self.columns),
            header_rows=self._header_rows,
            time_column=self.time_column,
        )

    def records(self) -> Iterator[RawRecord]:
        index = 0
        try:
            with self._path.open(newline="", encoding=self._encoding) as f:
                reader = csv.reader(f, delimiter=self._delimiter)
                for row_number, row in enumerate(reader):
                    if row_number < self._header_rows or not _has_content(row):
                        continue
                    yield RawRecord(index=index, position=reader.line_num, values=row)
                    index += 1
        except (OSError, UnicodeDecodeError, csv.Error) as e:
            raise SourceUnreadableError(
                f"cannot read CSV: {e}", source=str(self._path), index=index
            ) from e

    def normalize(self, record: RawRecord) -> DataPoint:
        if not self.columns or self.time_index is None:
            raise RuntimeError("CsvReader.open() must be called before normalize()")

        cells = list(record.values)
        if len(cells) != len(self.columns):
            raise MalformedRecordError(
                f"expected {len(self.columns)} cells, found {len(cells)}",
                index=record.index,
                line=record.position,
            )

        raw_time = cells[self.time_index]
        try:
            timestamp = parse_timestamp(raw_time, self._time_format)
        except ValueError as e:
            raise MalformedRecordError(
                f"unparseable timestamp {raw_time!r}: {e}",
                index=record.index,
                line=record.position,
            ) from e

        fields: dict[str, FieldValue] = {}
        for i, (name, cell) in enumerate(zip(self.columns, cells)):
            if i == self.time_index:
                continue
            text = cell.strip()
            if not text:
                continue
            try:
                fields[name] = parse_number(text)
            except ValueError:
                if not self._allow_text_fields:
                    raise MalformedRecordError(
                        f"non-numeric value {text!r} in column {name!r}",
                        index=record.index,
                        line=record.position,
                    ) from None
                fields[name] = text

        return DataPoint.build(
            measurement=self._measurement,
            timestamp=timestamp,
            fields=fields,
            index=record.index,
        )

    def dedup_mode(self, measurement: str) -> DedupMode:
        return DedupMode.WATERMARK


def _has_content(row: Sequence[str]) -> bool:
    return any(cell.strip() for cell in row)
