"""Reader for Health Connect SQLite exports."""

import sqlite3
from collections.abc import Iterable, Iterator
from pathlib import Path

import structlog

from ..errors import MalformedRecordError, SourceUnreadableError
from ..health import HealthMetricReader, create_metric_readers
from ..models import DataPoint, DedupMode, RawRecord
from .base import SourceReader

logger = structlog.get_logger(__name__)


class HealthConnectReader(SourceReader):
    """Reads the requested metric tables from a Health Connect export.

    The database is opened read-only. Each metric is queried lazily in turn;
    a metric whose tables are absent from the export yields nothing.
    """

    def __init__(
        self,
        path: Path | str,
        metrics: Iterable[str] = (),
        weight_unit: str = "g",
    ) -> None:
        super().__init__(path)
        self._metrics: dict[str, HealthMetricReader] = {
            reader.name: reader for reader in create_metric_readers(metrics, weight_unit)
        }
        self._by_measurement = {r.measurement: r for r in self._metrics.values()}
        self._conn: sqlite3.Connection | None = None
        self._tables: set[str] = set()

    @property
    def metrics(self) -> list[str]:
        return list(self._metrics)

    def open(self) -> None:
        if not self._path.is_file():
            raise SourceUnreadableError("health export not found", source=str(self._path))

        uri = f"{self._path.resolve().as_uri()}?mode=ro"
        conn: sqlite3.Connection | None = None
        try:
            conn = sqlite3.connect(uri, uri=True)
            conn.row_factory = sqlite3.Row
            rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
        except sqlite3.Error as e:
            if conn is not None:
                conn.close()
            raise SourceUnreadableError(
                f"cannot open health export: {e}", source=str(self._path)
            ) from e

        self._conn = conn
        self._tables = {row["name"] for row in rows}
        missing = [name for name, r in self._metrics.items() if not r.available(self._tables)]
        for name in missing:
            logger.warning(
                "health_metric_tables_missing",
                metric=name,
                tables=list(self._metrics[name].tables),
            )
        logger.info(
            "health_export_opened",
            source=str(self._path),
            tables=len(self._tables),
            metrics=[m for m in self._metrics if m not in missing],
        )

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def records(self) -> Iterator[RawRecord]:
        if self._conn is None:
            raise RuntimeError("HealthConnectReader.open() must be called before records()")

        index = 0
        for name, reader in self._metrics.items():
            if not reader.available(self._tables):
                continue
            count = 0
            try:
                cursor = self._conn.execute(reader.query(self._conn, self._tables))
                for row in cursor:
                    yield RawRecord(
                        index=index,
                        position=count + 1,
                        values=dict(row),
                        metric=name,
                    )
                    index += 1
                    count += 1
            except sqlite3.Error as e:
                raise SourceUnreadableError(
                    f"cannot read {name}: {e}", source=str(self._path), index=index
                ) from e
            logger.debug("health_metric_read", metric=name, rows=count)

    def normalize(self, record: RawRecord) -> DataPoint:
        reader = self._metrics.get(record.metric or "")
        if reader is None:
            raise MalformedRecordError(
                f"record from unknown metric {record.metric!r}", index=record.index
            )
        return reader.to_point(record.values, record.index)

    def dedup_mode(self, measurement: str) -> DedupMode:
        reader = self._by_measurement.get(measurement)
        if reader is None:
            raise KeyError(measurement)
        return reader.dedup_mode
