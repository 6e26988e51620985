"""Heart rate samples."""

import sqlite3

from ..models import DataPoint
from .base import HealthMetricReader, HealthRow

# Physiological bounds for a single sample
BPM_BOUNDS = (20.0, 300.0)


class HeartRateReader(HealthMetricReader):
    """One point per heart rate sample, field ``bpm``."""

    name = "heart_rate"
    measurement = "heart_rate"
    tables = ("heart_rate_record_series_table", "heart_rate_record_table")

    def query(self, conn: sqlite3.Connection, tables: set[str]) -> str:
        app_column, app_join = self.app_join("r", tables)
        return f"""
            SELECT s.epoch_millis, s.beats_per_minute, {app_column}
            FROM heart_rate_record_series_table s
            JOIN heart_rate_record_table r ON s.heart_rate_record_id = r.row_id
            {app_join}
            ORDER BY s.epoch_millis
        """

    def to_point(self, row: HealthRow, index: int) -> DataPoint:
        bpm = self._number(row, "beats_per_minute", index)
        lo, hi = BPM_BOUNDS
        if not (lo <= bpm <= hi):
            raise self._malformed(f"heart rate {bpm} outside {lo}-{hi} bpm", index)
        return self._point(row, index, row.get("epoch_millis"), {"bpm": bpm})
