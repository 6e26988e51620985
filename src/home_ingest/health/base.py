"""Base class for Health Connect table readers."""

import re
import sqlite3
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import structlog

from ..errors import MalformedRecordError
from ..models import DataPoint, DedupMode, FieldValue

logger = structlog.get_logger(__name__)

APP_INFO_TABLE = "application_info_table"

HealthRow = Mapping[str, Any]


def from_epoch_millis(value: Any) -> datetime:
    """Convert Health Connect epoch milliseconds to an aware UTC datetime.

    Raises:
        ValueError: If the value is missing or not an integer timestamp.
    """
    if value is None:
        raise ValueError("missing timestamp")
    return datetime.fromtimestamp(int(value) / 1000, tz=UTC)


class HealthMetricReader(ABC):
    """Reads one metric type from a Health Connect export.

    Subclasses declare the tables they need and a query returning one row per
    point; ``to_point`` normalizes a row.
    """

    name: str  # metric name used on the command line
    measurement: str  # InfluxDB measurement name
    tables: tuple[str, ...]  # tables that must exist
    dedup_mode: DedupMode = DedupMode.WATERMARK

    def available(self, tables: set[str]) -> bool:
        """Check the export has every table this metric needs."""
        return all(table in tables for table in self.tables)

    def app_join(self, alias: str, tables: set[str]) -> tuple[str, str]:
        """SQL fragments selecting the writing app's name, if the export has it."""
        if APP_INFO_TABLE in tables:
            return (
                "ai.app_name AS app_name",
                f"LEFT JOIN {APP_INFO_TABLE} ai ON {alias}.app_info_id = ai.row_id",
            )
        return "NULL AS app_name", ""

    @abstractmethod
    def query(self, conn: sqlite3.Connection, tables: set[str]) -> str:
        """Build the SELECT statement for this metric."""

    @abstractmethod
    def to_point(self, row: HealthRow, index: int) -> DataPoint:
        """Normalize one row.

        Raises:
            MalformedRecordError: If the row cannot be represented.
        """

    def _point(
        self,
        row: HealthRow,
        index: int,
        timestamp_millis: Any,
        fields: dict[str, FieldValue],
        tags: dict[str, str] | None = None,
        record_id: str = "",
    ) -> DataPoint:
        try:
            timestamp = from_epoch_millis(timestamp_millis)
        except (TypeError, ValueError, OverflowError, OSError) as e:
            raise self._malformed(f"invalid timestamp {timestamp_millis!r}", index) from e

        all_tags = dict(tags or {})
        device = row.get("app_name")
        if device:
            all_tags["source_device"] = self._sanitize_tag(device)

        return DataPoint.build(
            measurement=self.measurement,
            timestamp=timestamp,
            fields=fields,
            tags=all_tags,
            record_id=record_id,
            index=index,
        )

    def _number(self, row: HealthRow, column: str, index: int) -> float:
        value = row.get(column)
        if value is None:
            raise self._malformed(f"missing value in column {column!r}", index)
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise self._malformed(f"non-numeric {column!r}: {value!r}", index) from e

    def _malformed(self, message: str, index: int) -> MalformedRecordError:
        logger.debug("health_row_malformed", metric=self.name, index=index, error=message)
        return MalformedRecordError(message, measurement=self.measurement, index=index)

    def _sanitize_tag(self, value: str, max_length: int = 256) -> str:
        """Sanitize a tag value to prevent injection and cardinality issues.

        Args:
            value: Raw tag value.
            max_length: Maximum allowed length.

        Returns:
            Sanitized tag value with only allowed characters.
        """
        if not value:
            return "unknown"
        # Allow only alphanumeric, underscore, hyphen, and dot
        sanitized = re.sub(r"[^a-zA-Z0-9_.\-]", "_", str(value))
        return sanitized[:max_length]


def table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    """Column names of ``table``."""
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
