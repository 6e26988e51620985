"""Persisted import state used to skip records that were already written.

Each (source, measurement) pair is tracked in one of two modes:

* ``watermark``: a single high-water timestamp. Everything at or before it is
  considered imported. Suited to append-only, time-ordered sources.
* ``seen_set``: the set of record ids already written. Suited to sources
  without a reliable monotonic key, such as sleep sessions.

The state file is a small JSON document rewritten atomically (temporary file
plus ``os.replace``), so a crash mid-write leaves the previous version intact.
"""

import os
import tempfile
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import StateCorruptError
from .models import DedupMode, RecordKey

logger = structlog.get_logger(__name__)

STATE_VERSION = 1

_ONE_TICK = timedelta(microseconds=1)


class _EntryDocument(BaseModel):
    """On-disk form of one state entry. Unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore")

    source: str
    measurement: str
    mode: DedupMode
    high_watermark: datetime | None = None
    seen_ids: list[str] = Field(default_factory=list)
    records_imported: int = 0
    updated_at: datetime | None = None


class _StateDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: int = STATE_VERSION
    entries: list[_EntryDocument] = Field(default_factory=list)


class ImportState:
    """Dedup state for one (source, measurement) pair.

    In watermark mode ``is_duplicate`` compares against the watermark as it was
    when the state was loaded, so records confirmed earlier in the same run
    never hide older, not yet written records that arrive later.

    The watermark to persist is derived on demand: the newest written record,
    capped just below the oldest failed one, and never below the loaded
    watermark. A failure therefore pulls the run's progress back no matter in
    which order the batches were written.
    """

    def __init__(
        self,
        source: str,
        measurement: str,
        mode: DedupMode,
        high_watermark: datetime | None = None,
        seen_ids: Iterable[str] = (),
        records_imported: int = 0,
        updated_at: datetime | None = None,
    ) -> None:
        self.source = source
        self.measurement = measurement
        self.mode = mode
        self._baseline = _as_utc(high_watermark)
        self._max_written: datetime | None = None
        self._seen_ids: set[str] = set(seen_ids)
        self._failed_floor: datetime | None = None
        self.records_imported = records_imported
        self.updated_at = updated_at

    @property
    def high_watermark(self) -> datetime | None:
        progress = self._max_written
        if progress is not None and self._failed_floor is not None:
            progress = min(progress, self._failed_floor - _ONE_TICK)
        if self._baseline is None:
            return progress
        if progress is None:
            return self._baseline
        return max(self._baseline, progress)

    @property
    def seen_ids(self) -> frozenset[str]:
        return frozenset(self._seen_ids)

    def is_duplicate(self, key: RecordKey) -> bool:
        """Check whether a record was imported by a previous run."""
        if self.mode is DedupMode.WATERMARK:
            return self._baseline is not None and _as_utc(key.timestamp) <= self._baseline
        return key.record_id in self._seen_ids

    def record(self, key: RecordKey) -> None:
        """Remember a record that was written successfully."""
        if self.mode is DedupMode.WATERMARK:
            ts = _as_utc(key.timestamp)
            if self._max_written is None or ts > self._max_written:
                self._max_written = ts
        else:
            self._seen_ids.add(key.record_id)
        self.records_imported += 1
        self.updated_at = datetime.now(UTC)

    def mark_failed(self, key: RecordKey) -> None:
        """Keep the watermark below a record whose write failed.

        Applies to records already written in this run too, including ones
        from later batches with newer timestamps. Seen-set state needs no
        bookkeeping: the id is simply never added.
        """
        if self.mode is not DedupMode.WATERMARK:
            return
        ts = _as_utc(key.timestamp)
        if self._failed_floor is None or ts < self._failed_floor:
            self._failed_floor = ts
            logger.debug(
                "watermark_capped",
                source=self.source,
                measurement=self.measurement,
                failed_timestamp=ts.isoformat(),
            )

    def _to_document(self) -> _EntryDocument:
        return _EntryDocument(
            source=self.source,
            measurement=self.measurement,
            mode=self.mode,
            high_watermark=self.high_watermark,
            seen_ids=sorted(self._seen_ids),
            records_imported=self.records_imported,
            updated_at=self.updated_at,
        )

    def __repr__(self) -> str:
        marker = (
            f"high_watermark={self.high_watermark}"
            if self.mode is DedupMode.WATERMARK
            else f"seen_ids={len(self._seen_ids)}"
        )
        return f"ImportState({self.source!r}, {self.measurement!r}, {marker})"


class ImportStateStore:
    """Collection of ``ImportState`` entries keyed by (source, measurement)."""

    def __init__(self, entries: Iterable[ImportState] = ()) -> None:
        self._entries: dict[tuple[str, str], ImportState] = {}
        for entry in entries:
            self._entries[(entry.source, entry.measurement)] = entry

    @classmethod
    def load(cls, path: Path | str) -> "ImportStateStore":
        """Load state from ``path``; a missing file yields an empty store.

        Raises:
            StateCorruptError: If the file exists but cannot be read or parsed.
        """
        path = Path(path)
        if not path.exists():
            logger.info("import_state_missing", path=str(path))
            return cls()

        try:
            document = _StateDocument.model_validate_json(path.read_bytes())
        except (OSError, ValidationError) as e:
            raise StateCorruptError(f"cannot parse state file: {e}", path=str(path)) from e

        entries = [
            ImportState(
                source=doc.source,
                measurement=doc.measurement,
                mode=doc.mode,
                high_watermark=doc.high_watermark,
                seen_ids=doc.seen_ids,
                records_imported=doc.records_imported,
                updated_at=doc.updated_at,
            )
            for doc in document.entries
        ]
        logger.info("import_state_loaded", path=str(path), entries=len(entries))
        return cls(entries)

    def get(self, source: str, measurement: str, mode: DedupMode) -> ImportState:
        """Return the state for a pair, creating a fresh one on first use.

        Raises:
            StateCorruptError: If the stored entry uses a different mode.
        """
        entry = self._entries.get((source, measurement))
        if entry is None:
            entry = ImportState(source, measurement, mode)
            self._entries[(source, measurement)] = entry
        elif entry.mode is not mode:
            raise StateCorruptError(
                f"state entry uses mode {entry.mode.value!r}, expected {mode.value!r}",
                source=source,
                measurement=measurement,
            )
        return entry

    def persist(self, path: Path | str) -> None:
        """Atomically write the state document to ``path``."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        document = _StateDocument(entries=[e._to_document() for e in self._entries.values()])
        payload = document.model_dump_json(indent=2)

        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.debug("import_state_persisted", path=str(path), entries=len(self._entries))

    def __iter__(self) -> Iterator[ImportState]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict[str, Any]:
        """Summarize the store for logging."""
        return {
            "entries": len(self._entries),
            "records_imported": sum(e.records_imported for e in self._entries.values()),
            "modes": sorted({e.mode.value for e in self._entries.values()}),
        }


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)

