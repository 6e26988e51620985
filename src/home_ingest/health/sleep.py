"""Sleep stage segments."""

import sqlite3

from ..models import DataPoint, DedupMode
from .base import HealthMetricReader, HealthRow

# Health Connect stage codes. Out-of-bed (7) counts as awake; sleeping (2)
# without a finer classification counts as light sleep.
STAGE_CODES = {
    1: "AWAKE",
    2: "LIGHT",
    3: "AWAKE",
    4: "LIGHT",
    5: "DEEP",
    6: "REM",
    7: "AWAKE",
}

STAGE_NAMES = {
    "awake": "AWAKE",
    "awake_in_bed": "AWAKE",
    "out_of_bed": "AWAKE",
    "sleeping": "LIGHT",
    "light": "LIGHT",
    "deep": "DEEP",
    "rem": "REM",
}


def stage_label(value: object) -> str | None:
    """Map a stage code or name to AWAKE, LIGHT, DEEP or REM."""
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return STAGE_CODES.get(int(text))
        return STAGE_NAMES.get(text.lower().replace(" ", "_"))
    if isinstance(value, int):
        return STAGE_CODES.get(value)
    return None


class SleepStageReader(HealthMetricReader):
    """One point per stage segment.

    Segment boundaries are kept exactly as exported: adjacent segments with
    the same stage are not merged.
    """

    name = "sleep"
    measurement = "sleep"
    tables = ("sleep_stages_table", "sleep_session_record_table")
    dedup_mode = DedupMode.SEEN_SET

    def query(self, conn: sqlite3.Connection, tables: set[str]) -> str:
        app_column, app_join = self.app_join("s", tables)
        return f"""
            SELECT st.parent_key, st.stage_start_time, st.stage_end_time,
                   st.stage_type, {app_column}
            FROM sleep_stages_table st
            JOIN sleep_session_record_table s ON st.parent_key = s.row_id
            {app_join}
            ORDER BY st.stage_start_time
        """

    def to_point(self, row: HealthRow, index: int) -> DataPoint:
        stage = stage_label(row.get("stage_type"))
        if stage is None:
            raise self._malformed(f"unknown sleep stage {row.get('stage_type')!r}", index)

        start = self._number(row, "stage_start_time", index)
        end = self._number(row, "stage_end_time", index)
        if end < start:
            raise self._malformed("sleep stage ends before it starts", index)

        return self._point(
            row,
            index,
            row.get("stage_start_time"),
            {"duration_seconds": (end - start) / 1000},
            tags={"stage": stage},
            record_id=f"{row.get('parent_key')}:{int(start)}",
        )
