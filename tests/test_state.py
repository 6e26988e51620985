"""Tests for import state: watermark and seen-set dedup, persistence."""

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from home_ingest.errors import StateCorruptError
from home_ingest.models import DedupMode, RecordKey
from home_ingest.state import ImportState, ImportStateStore


def key(hour: int, record_id: str = "") -> RecordKey:
    ts = datetime(2024, 1, 1, hour, tzinfo=UTC)
    return RecordKey(record_id or ts.isoformat(), ts)


class TestWatermark:
    def test_fresh_state_has_no_duplicates(self):
        state = ImportState("src", "m", DedupMode.WATERMARK)
        assert not state.is_duplicate(key(0))

    def test_records_at_or_before_loaded_watermark_are_duplicates(self):
        state = ImportState(
            "src", "m", DedupMode.WATERMARK, high_watermark=datetime(2024, 1, 1, 5, tzinfo=UTC)
        )
        assert state.is_duplicate(key(4))
        assert state.is_duplicate(key(5))
        assert not state.is_duplicate(key(6))

    def test_filter_uses_watermark_loaded_at_start(self):
        state = ImportState("src", "m", DedupMode.WATERMARK)
        state.record(key(5))
        # An older record arriving later in the same run is still new
        assert not state.is_duplicate(key(3))

    def test_watermark_never_decreases(self):
        state = ImportState("src", "m", DedupMode.WATERMARK)
        state.record(key(5))
        state.record(key(2))
        assert state.high_watermark == datetime(2024, 1, 1, 5, tzinfo=UTC)
        assert state.records_imported == 2

    def test_failed_record_caps_watermark(self):
        state = ImportState("src", "m", DedupMode.WATERMARK)
        state.record(key(1))
        state.mark_failed(key(3))
        state.record(key(4))
        state.record(key(5))
        assert state.high_watermark < datetime(2024, 1, 1, 3, tzinfo=UTC)
        assert state.high_watermark > datetime(2024, 1, 1, 1, tzinfo=UTC)

    def test_failure_after_newer_records_pulls_watermark_back(self):
        state = ImportState("src", "m", DedupMode.WATERMARK)
        # Newest-first source: the later hours are confirmed before 3:00 fails
        state.record(key(6))
        state.record(key(5))
        assert state.high_watermark == datetime(2024, 1, 1, 6, tzinfo=UTC)

        state.mark_failed(key(3))
        state.record(key(2))

        assert state.high_watermark < datetime(2024, 1, 1, 3, tzinfo=UTC)
        assert not state.is_duplicate(key(3))

    def test_failure_never_lowers_loaded_watermark(self):
        loaded = datetime(2024, 1, 1, 2, tzinfo=UTC)
        state = ImportState("src", "m", DedupMode.WATERMARK, high_watermark=loaded)
        state.mark_failed(key(3))
        assert state.high_watermark == loaded

        state.record(key(8))
        assert loaded < state.high_watermark < datetime(2024, 1, 1, 3, tzinfo=UTC)

    def test_naive_timestamps_treated_as_utc(self):
        state = ImportState("src", "m", DedupMode.WATERMARK, high_watermark=datetime(2024, 1, 1))
        assert state.high_watermark.tzinfo is UTC
        assert state.is_duplicate(RecordKey("x", datetime(2023, 12, 31)))


class TestSeenSet:
    def test_membership(self):
        state = ImportState("src", "sleep", DedupMode.SEEN_SET, seen_ids=["10:1"])
        assert state.is_duplicate(key(0, "10:1"))
        assert not state.is_duplicate(key(0, "10:2"))

    def test_record_adds_id(self):
        state = ImportState("src", "sleep", DedupMode.SEEN_SET)
        state.record(key(9, "a"))
        assert state.seen_ids == frozenset({"a"})
        assert state.high_watermark is None

    def test_mark_failed_leaves_ids_alone(self):
        state = ImportState("src", "sleep", DedupMode.SEEN_SET)
        state.mark_failed(key(1, "a"))
        assert not state.is_duplicate(key(1, "a"))


class TestImportStateStore:
    def test_missing_file_gives_empty_store(self, tmp_path: Path):
        store = ImportStateStore.load(tmp_path / "nope.json")
        assert len(store) == 0

    def test_get_creates_entry(self):
        store = ImportStateStore()
        state = store.get("src", "m", DedupMode.WATERMARK)
        assert store.get("src", "m", DedupMode.WATERMARK) is state
        assert len(store) == 1

    def test_mode_mismatch_is_corrupt(self):
        store = ImportStateStore()
        store.get("src", "m", DedupMode.WATERMARK)
        with pytest.raises(StateCorruptError, match="mode"):
            store.get("src", "m", DedupMode.SEEN_SET)

    def test_persist_and_load(self, tmp_path: Path):
        path = tmp_path / "state.json"
        store = ImportStateStore()
        store.get("a.csv", "home", DedupMode.WATERMARK).record(key(7))
        store.get("export.db", "sleep", DedupMode.SEEN_SET).record(key(1, "10:5"))
        store.persist(path)

        loaded = ImportStateStore.load(path)
        watermark = loaded.get("a.csv", "home", DedupMode.WATERMARK)
        seen = loaded.get("export.db", "sleep", DedupMode.SEEN_SET)
        assert watermark.high_watermark == datetime(2024, 1, 1, 7, tzinfo=UTC)
        assert watermark.records_imported == 1
        assert seen.seen_ids == frozenset({"10:5"})

    def test_document_format(self, tmp_path: Path):
        path = tmp_path / "state.json"
        store = ImportStateStore()
        store.get("a.csv", "home", DedupMode.WATERMARK).record(key(7))
        store.persist(path)

        document = json.loads(path.read_text())
        assert document["version"] == 1
        (entry,) = document["entries"]
        assert entry["source"] == "a.csv"
        assert entry["measurement"] == "home"
        assert entry["mode"] == "watermark"
        assert entry["high_watermark"].startswith("2024-01-01T07:00:00")

    def test_unknown_fields_ignored(self, tmp_path: Path):
        path = tmp_path / "state.json"
        path.write_text(
            json.dumps(
                {
                    "version": 3,
                    "written_by": "future release",
                    "entries": [
                        {
                            "source": "a.csv",
                            "measurement": "home",
                            "mode": "watermark",
                            "high_watermark": "2024-01-01T05:00:00Z",
                            "checksum": "abc",
                        }
                    ],
                }
            )
        )
        store = ImportStateStore.load(path)
        state = store.get("a.csv", "home", DedupMode.WATERMARK)
        assert state.is_duplicate(key(5))

    @pytest.mark.parametrize(
        "content",
        ["not json", '{"entries": [{"source": "a"}]}', '{"entries": [{"source": "a", '
         '"measurement": "m", "mode": "sometimes"}]}'],
    )
    def test_unparseable_file_is_corrupt(self, tmp_path: Path, content: str):
        path = tmp_path / "state.json"
        path.write_text(content)
        with pytest.raises(StateCorruptError):
            ImportStateStore.load(path)

    def test_persist_is_atomic_replace(self, tmp_path: Path):
        path = tmp_path / "nested" / "state.json"
        store = ImportStateStore()
        store.get("a.csv", "home", DedupMode.WATERMARK).record(key(1))
        store.persist(path)
        store.get("a.csv", "home", DedupMode.WATERMARK).record(key(2))
        store.persist(path)

        assert [p.name for p in path.parent.iterdir()] == ["state.json"]
        loaded = ImportStateStore.load(path)
        state = loaded.get("a.csv", "home", DedupMode.WATERMARK)
        assert state.high_watermark == datetime(2024, 1, 1, 2, tzinfo=UTC)

    def test_failed_persist_keeps_previous_file(self, tmp_path: Path, monkeypatch):
        path = tmp_path / "state.json"
        store = ImportStateStore()
        store.get("a.csv", "home", DedupMode.WATERMARK).record(key(1))
        store.persist(path)
        before = path.read_text()

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("home_ingest.state.os.replace", broken_replace)
        store.get("a.csv", "home", DedupMode.WATERMARK).record(key(2))
        with pytest.raises(OSError):
            store.persist(path)

        assert path.read_text() == before
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_stats(self):
        store = ImportStateStore()
        store.get("a", "m", DedupMode.WATERMARK).record(key(1))
        store.get("b", "sleep", DedupMode.SEEN_SET).record(key(1, "x"))
        assert store.get_stats() == {
            "entries": 2,
            "records_imported": 2,
            "modes": ["seen_set", "watermark"],
        }

    def test_watermark_round_trip_precision(self, tmp_path: Path):
        path = tmp_path / "state.json"
        store = ImportStateStore()
        state = store.get("a", "m", DedupMode.WATERMARK)
        ts = datetime(2024, 1, 1, tzinfo=UTC) + timedelta(microseconds=123)
        state.record(RecordKey("x", ts))
        store.persist(path)
        assert ImportStateStore.load(path).get("a", "m", DedupMode.WATERMARK).high_watermark == ts
