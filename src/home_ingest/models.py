"""Record model, run request and run report types."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, NamedTuple

from influxdb_client import Point
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import MalformedRecordError

FieldValue = float | int | bool | str


class SourceKind(str, Enum):
    """Kind of source an import reads from."""

    CSV = "csv"
    HEALTH = "health"


class DedupMode(str, Enum):
    """How already-imported records are recognised for one measurement."""

    WATERMARK = "watermark"
    SEEN_SET = "seen_set"


class PipelineState(str, Enum):
    """Lifecycle of a single import run."""

    INIT = "init"
    READING = "reading"
    FILTERING = "filtering"
    BUFFERING = "buffering"
    FLUSHING = "flushing"
    PERSISTING = "persisting"
    DONE = "done"
    ABORTED = "aborted"


class RecordKey(NamedTuple):
    """Identity of a point as seen by the import state."""

    record_id: str
    timestamp: datetime


@dataclass(frozen=True)
class RawRecord:
    """Source-specific record before normalization.

    ``values`` is the list of cells for a CSV row or a column mapping for a
    health table row. ``position`` locates the record in its source (file
    line number or table row id).
    """

    index: int
    position: int | str
    values: Sequence[str] | Mapping[str, Any]
    metric: str | None = None


class DataPoint(BaseModel):
    """A normalized, timestamped measurement ready for the sink."""

    model_config = ConfigDict(frozen=True)

    measurement: str = Field(min_length=1, description="Measurement name")
    timestamp: datetime = Field(description="Time of the measurement")
    tags: dict[str, str] = Field(default_factory=dict)
    fields: dict[str, FieldValue] = Field(min_length=1)
    record_id: str = Field(default="", description="Stable id for seen-set dedup")

    @field_validator("measurement")
    @classmethod
    def validate_measurement(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("measurement cannot be blank")
        return v

    @field_validator("timestamp")
    @classmethod
    def ensure_timezone(cls, v: datetime) -> datetime:
        """Interpret naive timestamps as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    @model_validator(mode="after")
    def default_record_id(self) -> DataPoint:
        if not self.record_id:
            object.__setattr__(self, "record_id", self.timestamp.isoformat())
        return self

    @classmethod
    def build(
        cls,
        measurement: str,
        timestamp: datetime,
        fields: Mapping[str, FieldValue],
        tags: Mapping[str, str] | None = None,
        record_id: str = "",
        index: int | None = None,
    ) -> DataPoint:
        """Create a point, converting validation problems to ``MalformedRecordError``."""
        try:
            return cls(
                measurement=measurement,
                timestamp=timestamp,
                fields=dict(fields),
                tags=dict(tags or {}),
                record_id=record_id,
            )
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'point'}: {err['msg']}"
                for err in e.errors()
            )
            raise MalformedRecordError(
                f"invalid point: {problems}", measurement=measurement or None, index=index
            ) from e

    @property
    def key(self) -> RecordKey:
        return RecordKey(self.record_id, self.timestamp)

    def to_influx(self) -> Point:
        """Convert to an ``influxdb_client.Point``."""
        point = Point(self.measurement)
        for name, value in sorted(self.tags.items()):
            point.tag(name, value)
        for name, value in self.fields.items():
            point.field(name, value)
        return point.time(self.timestamp)


class ImportRequest(BaseModel):
    """Fully resolved parameters for one import run."""

    model_config = ConfigDict(frozen=True)

    source: Path
    kind: SourceKind
    measurement: str | None = None
    state_file: Path

    # Sink connection
    url: str = "http://localhost:8086"
    org: str = ""
    bucket: str = ""
    token: str = ""
    timeout_ms: int = 10_000

    # Delivery
    batch_size: int = Field(default=1000, ge=1, le=50_000)
    max_retries: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=1.0, ge=0)
    dry_run: bool = False
    force_all: bool = False
    checkpoint_every_batch: bool = True

    # CSV options
    header_rows: int = Field(default=1, ge=1)
    time_column: str | None = None
    time_format: str | None = None
    allow_text_fields: bool = False
    delimiter: str = ","
    encoding: str = "utf-8"

    # Health export options
    metrics: tuple[str, ...] = ()
    weight_unit: str = "g"
    gap_fill_days: int | None = Field(default=None, ge=1)

    @field_validator("metrics", mode="before")
    @classmethod
    def split_metrics(cls, v: Any) -> Any:
        if isinstance(v, str):
            return tuple(m.strip() for m in v.split(",") if m.strip())
        return v

    @model_validator(mode="after")
    def check_kind_options(self) -> ImportRequest:
        if self.kind is SourceKind.CSV and not self.measurement:
            raise ValueError("CSV imports require a measurement name")
        if self.kind is SourceKind.HEALTH and self.metrics:
            from .health import available_metrics

            unknown = sorted(set(self.metrics) - set(available_metrics()))
            if unknown:
                raise ValueError(
                    f"Unknown health metrics: {', '.join(unknown)}. "
                    f"Available: {', '.join(available_metrics())}"
                )
        if self.gap_fill_days is not None:
            from .gap_fill import GAP_FILL_METRIC

            if self.kind is not SourceKind.HEALTH:
                raise ValueError("Gap filling only applies to health exports")
            if self.metrics and self.metrics != (GAP_FILL_METRIC,):
                raise ValueError(f"Gap filling only imports {GAP_FILL_METRIC}")
            if not self.token.strip():
                raise ValueError("InfluxDB token is required for gap filling, even in a dry run")
        if not self.dry_run and not self.token.strip():
            raise ValueError("InfluxDB token is required unless running with dry_run")
        return self

    @property
    def tracks_state(self) -> bool:
        """Whether the run reads and updates the import state file."""
        return not self.dry_run and self.gap_fill_days is None

    @property
    def source_id(self) -> str:
        """Identifier of the source used to key import state."""
        return str(self.source.expanduser().resolve())


@dataclass(frozen=True)
class RecordError:
    """A non-fatal problem with one record or batch."""

    kind: str
    message: str
    index: int | None = None
    measurement: str | None = None

    def describe(self) -> str:
        where = f"record {self.index}" if self.index is not None else "batch"
        prefix = f"[{self.measurement}] " if self.measurement else ""
        return f"{prefix}{where}: {self.kind}: {self.message}"


@dataclass
class ImportReport:
    """Outcome of an import run."""

    source: str
    dry_run: bool = False
    read: int = 0
    skipped_duplicates: int = 0
    written: int = 0
    failed: int = 0
    malformed: int = 0
    outside_window: int = 0
    batches_written: int = 0
    batches_failed: int = 0
    errors: list[RecordError] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    final_state: PipelineState = PipelineState.INIT
    fatal_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.fatal_error is None and not self.errors

    @property
    def exit_code(self) -> int:
        """Process exit code: 0 clean, 1 record/batch errors, 2 fatal."""
        if self.fatal_error is not None or self.final_state is PipelineState.ABORTED:
            return 2
        if self.errors:
            return 1
        return 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "dry_run": self.dry_run,
            "read": self.read,
            "skipped_duplicates": self.skipped_duplicates,
            "written": self.written,
            "failed": self.failed,
            "malformed": self.malformed,
            "outside_window": self.outside_window,
            "batches_written": self.batches_written,
            "batches_failed": self.batches_failed,
            "errors": [e.describe() for e in self.errors],
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "final_state": self.final_state.value,
            "fatal_error": self.fatal_error,
        }


class ValidationIssue(NamedTuple):
    """One structural problem found in a CSV source.

    ``row`` is the 1-based line number in the file; ``column`` is the column
    name when it is known.
    """

    row: int
    column: str | None
    problem: str


@dataclass
class ValidationReport:
    """Result of validating a CSV source."""

    issues: list[ValidationIssue] = field(default_factory=list)
    total_rows: int = 0
    header_rows: int = 1
    columns: list[str] = field(default_factory=list)
    time_column: str | None = None

    @property
    def valid(self) -> bool:
        return not self.issues

    @property
    def data_rows(self) -> int:
        return max(self.total_rows - self.header_rows, 0)
