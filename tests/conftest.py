"""Pytest configuration and fixtures."""

import sqlite3
import sys
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from home_ingest.errors import SinkTransientError  # noqa: E402
from home_ingest.models import DataPoint, ImportRequest, SourceKind  # noqa: E402
from home_ingest.sinks import Sink  # noqa: E402

# 2024-01-01T00:00:00Z
BASE_MILLIS = 1_704_067_200_000
MINUTE = 60_000
HOUR = 60 * MINUTE


class RecordingSink(Sink):
    """In-memory sink that records every batch it accepts.

    Batch numbers listed in ``fail_batches`` raise ``error`` on every attempt.
    """

    def __init__(
        self,
        fail_batches: Sequence[int] = (),
        error: type[BaseException] = SinkTransientError,
    ) -> None:
        self.fail_batches = set(fail_batches)
        self.error = error
        self.batches: list[list[DataPoint]] = []
        self.attempts = 0
        self._batch_number = 0
        self._last_batch: Sequence[DataPoint] | None = None
        self.entered = False
        self.exited = False

    async def __aenter__(self) -> "RecordingSink":
        self.entered = True
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.exited = True

    @property
    def points(self) -> list[DataPoint]:
        return [p for batch in self.batches for p in batch]

    async def write_batch(self, points: Sequence[DataPoint]) -> None:
        self.attempts += 1
        if points is not self._last_batch:
            self._batch_number += 1
            self._last_batch = points
        if self._batch_number in self.fail_batches:
            raise self.error(f"batch {self._batch_number} refused")
        self.batches.append(list(points))


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def failing_sink() -> Callable[..., RecordingSink]:
    """Factory for sinks that fail selected batches."""

    def make(*batches: int, error: type[BaseException] = SinkTransientError) -> RecordingSink:
        return RecordingSink(fail_batches=batches, error=error)

    return make


@pytest.fixture
def write_csv(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write CSV text to a file under tmp_path."""

    def write(text: str, name: str = "data.csv") -> Path:
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return path

    return write


@pytest.fixture
def stacked_csv(write_csv) -> Path:
    """Two stacked header rows: ``Date`` over nothing and ``Temp`` over ``C``."""
    return write_csv("Date,Temp\n,C\n2024-01-01,21.5\n2024-01-02,22.0\n", "stacked.csv")


@pytest.fixture
def hourly_csv(write_csv) -> Path:
    """Six hourly readings with a single header row."""
    rows = [f"2024-01-01T0{h}:00:00,{20 + h}.5,{40 + h}" for h in range(6)]
    return write_csv("timestamp,temperature,humidity\n" + "\n".join(rows) + "\n", "hourly.csv")


@pytest.fixture
def csv_request(tmp_path: Path) -> Callable[..., ImportRequest]:
    """Factory for CSV import requests with a state file under tmp_path."""

    def make(source: Path, **overrides: Any) -> ImportRequest:
        params: dict[str, Any] = {
            "source": source,
            "kind": SourceKind.CSV,
            "measurement": "home_data",
            "state_file": tmp_path / "state.json",
            "token": "test-token",
            "retry_delay": 0,
        }
        params.update(overrides)
        return ImportRequest(**params)

    return make


@pytest.fixture
def health_request(tmp_path: Path) -> Callable[..., ImportRequest]:
    """Factory for Health Connect import requests."""

    def make(source: Path, **overrides: Any) -> ImportRequest:
        params: dict[str, Any] = {
            "source": source,
            "kind": SourceKind.HEALTH,
            "state_file": tmp_path / "health_state.json",
            "token": "test-token",
            "retry_delay": 0,
        }
        params.update(overrides)
        return ImportRequest(**params)

    return make


HEALTH_SCHEMA = """
CREATE TABLE application_info_table (row_id INTEGER PRIMARY KEY, app_name TEXT);
CREATE TABLE heart_rate_record_table (row_id INTEGER PRIMARY KEY, app_info_id INTEGER);
CREATE TABLE heart_rate_record_series_table (
    heart_rate_record_id INTEGER, epoch_millis INTEGER, beats_per_minute INTEGER
);
CREATE TABLE steps_record_table (
    row_id INTEGER PRIMARY KEY, start_time INTEGER, end_time INTEGER,
    count INTEGER, app_info_id INTEGER
);
CREATE TABLE sleep_session_record_table (
    row_id INTEGER PRIMARY KEY, start_time INTEGER, end_time INTEGER,
    app_info_id INTEGER, title TEXT
);
CREATE TABLE sleep_stages_table (
    parent_key INTEGER, stage_start_time INTEGER, stage_end_time INTEGER, stage_type INTEGER
);
CREATE TABLE weight_record_table (
    row_id INTEGER PRIMARY KEY, time INTEGER, weight REAL, app_info_id INTEGER
);
CREATE TABLE body_fat_record_table (
    row_id INTEGER PRIMARY KEY, time INTEGER, percentage REAL, app_info_id INTEGER
);
CREATE TABLE basal_metabolic_rate_record_table (
    row_id INTEGER PRIMARY KEY, time INTEGER, basal_metabolic_rate REAL, app_info_id INTEGER
);
CREATE TABLE total_calories_burned_record_table (
    row_id INTEGER PRIMARY KEY, start_time INTEGER, end_time INTEGER,
    energy REAL, app_info_id INTEGER
);
CREATE TABLE exercise_session_record_table (
    row_id INTEGER PRIMARY KEY, start_time INTEGER, end_time INTEGER,
    exercise_type INTEGER, title TEXT, app_info_id INTEGER
);
"""


def populate_health_db(conn: sqlite3.Connection) -> None:
    conn.executescript(HEALTH_SCHEMA)
    conn.executemany(
        "INSERT INTO application_info_table VALUES (?, ?)",
        [(1, "Pixel Watch"), (2, "Fitbit")],
    )
    conn.execute("INSERT INTO heart_rate_record_table VALUES (1, 1)")
    conn.executemany(
        "INSERT INTO heart_rate_record_series_table VALUES (1, ?, ?)",
        [(BASE_MILLIS + i * MINUTE, bpm) for i, bpm in enumerate([60, 62, 65])],
    )
    conn.executemany(
        "INSERT INTO steps_record_table VALUES (?, ?, ?, ?, 2)",
        [
            (1, BASE_MILLIS, BASE_MILLIS + HOUR, 500),
            (2, BASE_MILLIS + HOUR, BASE_MILLIS + 2 * HOUR, 750),
        ],
    )
    conn.execute(
        "INSERT INTO sleep_session_record_table VALUES (10, ?, ?, 1, 'Night')",
        (BASE_MILLIS, BASE_MILLIS + 2 * HOUR),
    )
    # 00:00-01:00 LIGHT, 01:00-01:30 DEEP, 01:30-02:00 LIGHT
    conn.executemany(
        "INSERT INTO sleep_stages_table VALUES (10, ?, ?, ?)",
        [
            (BASE_MILLIS, BASE_MILLIS + HOUR, 4),
            (BASE_MILLIS + HOUR, BASE_MILLIS + 90 * MINUTE, 5),
            (BASE_MILLIS + 90 * MINUTE, BASE_MILLIS + 2 * HOUR, 4),
        ],
    )
    conn.execute(
        "INSERT INTO weight_record_table VALUES (1, ?, 75500.0, 2)", (BASE_MILLIS + 8 * HOUR,)
    )
    conn.execute(
        "INSERT INTO body_fat_record_table VALUES (1, ?, 21.5, 2)", (BASE_MILLIS + 8 * HOUR,)
    )
    conn.execute(
        "INSERT INTO basal_metabolic_rate_record_table VALUES (1, ?, 1650.0, 2)",
        (BASE_MILLIS + 8 * HOUR,),
    )
    conn.execute(
        "INSERT INTO total_calories_burned_record_table VALUES (1, ?, ?, 2100.0, 2)",
        (BASE_MILLIS, BASE_MILLIS + 24 * HOUR),
    )
    conn.execute(
        "INSERT INTO exercise_session_record_table VALUES (5, ?, ?, 56, 'Morning run', 1)",
        (BASE_MILLIS + 7 * HOUR, BASE_MILLIS + 7 * HOUR + 45 * MINUTE),
    )
    conn.commit()


@pytest.fixture
def health_db(tmp_path: Path) -> Path:
    """A small Health Connect export covering every supported metric."""
    path = tmp_path / "health_connect_export.db"
    conn = sqlite3.connect(path)
    try:
        populate_health_db(conn)
    finally:
        conn.close()
    return path


@pytest.fixture
def sqlite_db(tmp_path: Path) -> Callable[[str], Path]:
    """Create a database from an SQL script."""

    def make(script: str, name: str = "custom.db") -> Path:
        path = tmp_path / name
        conn = sqlite3.connect(path)
        try:
            conn.executescript(script)
            conn.commit()
        finally:
            conn.close()
        return path

    return make

