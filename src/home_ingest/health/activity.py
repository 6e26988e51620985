"""Activity metrics: steps, total calories and exercise sessions."""

import sqlite3

from ..models import DataPoint, DedupMode, FieldValue
from .base import HealthMetricReader, HealthRow, table_columns


class StepsReader(HealthMetricReader):
    """One point per step interval, stamped at the interval start."""

    name = "steps"
    measurement = "steps"
    tables = ("steps_record_table",)

    def query(self, conn: sqlite3.Connection, tables: set[str]) -> str:
        app_column, app_join = self.app_join("t", tables)
        return f"""
            SELECT t.start_time, t.end_time, t.count, {app_column}
            FROM steps_record_table t
            {app_join}
            ORDER BY t.start_time
        """

    def to_point(self, row: HealthRow, index: int) -> DataPoint:
        count = self._number(row, "count", index)
        if count < 0:
            raise self._malformed(f"negative step count {count}", index)
        return self._point(row, index, row.get("start_time"), {"count": count})


class TotalCaloriesReader(HealthMetricReader):
    """Total energy burned per interval, stored as exported."""

    name = "total_calories"
    measurement = "total_calories"
    tables = ("total_calories_burned_record_table",)

    def query(self, conn: sqlite3.Connection, tables: set[str]) -> str:
        app_column, app_join = self.app_join("t", tables)
        return f"""
            SELECT t.start_time, t.end_time, t.energy, {app_column}
            FROM total_calories_burned_record_table t
            {app_join}
            ORDER BY t.start_time
        """

    def to_point(self, row: HealthRow, index: int) -> DataPoint:
        energy = self._number(row, "energy", index)
        return self._point(row, index, row.get("start_time"), {"kilocalories": energy})


class ExerciseSessionReader(HealthMetricReader):
    """One point per exercise session, deduplicated by session id."""

    name = "exercise_session"
    measurement = "exercise_session"
    tables = ("exercise_session_record_table",)
    dedup_mode = DedupMode.SEEN_SET

    def query(self, conn: sqlite3.Connection, tables: set[str]) -> str:
        app_column, app_join = self.app_join("e", tables)
        title = "e.title" if "title" in table_columns(conn, "exercise_session_record_table") else "NULL"
        return f"""
            SELECT e.row_id, e.start_time, e.end_time, e.exercise_type,
                   {title} AS title, {app_column}
            FROM exercise_session_record_table e
            {app_join}
            ORDER BY e.start_time
        """

    def to_point(self, row: HealthRow, index: int) -> DataPoint:
        start = self._number(row, "start_time", index)
        end = self._number(row, "end_time", index)
        if end < start:
            raise self._malformed("exercise session ends before it starts", index)

        exercise_type = row.get("exercise_type")
        tags = {"exercise_type": "unknown" if exercise_type is None else str(exercise_type)}
        fields: dict[str, FieldValue] = {"duration_seconds": (end - start) / 1000}
        if row.get("title"):
            fields["title"] = str(row["title"])

        return self._point(
            row,
            index,
            row.get("start_time"),
            fields,
            tags=tags,
            record_id=str(row.get("row_id")),
        )
