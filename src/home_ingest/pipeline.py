"""Import pipeline: read, filter, batch, write and checkpoint."""

import time
from collections.abc import Awaitable, Callable, Hashable
from datetime import UTC, datetime, timedelta

import structlog

from .batch_writer import BatchOutcome, BatchWriter
from .errors import IngestError, MalformedRecordError, StateCorruptError
from .gap_fill import SeriesKey, existing_heart_rate, presence_key
from .models import (
    DataPoint,
    DedupMode,
    ImportReport,
    ImportRequest,
    PipelineState,
    RecordError,
)
from .readers import SourceReader, create_reader
from .sinks import InfluxSink, NullSink, Sink
from .state import ImportState, ImportStateStore

logger = structlog.get_logger(__name__)

GapLookup = Callable[[ImportRequest, datetime], Awaitable[set[SeriesKey]]]


class ImportPipeline:
    """Runs one import from a source reader into a sink.

    Records flow strictly in order: each is normalized, checked against the
    import state, buffered and written in batches. After every batch the state
    is checkpointed, so an aborted run keeps everything up to its last good
    write. Dry runs use ``NullSink`` and never touch the state file.

    With ``gap_fill_days`` set, the import state is ignored: samples inside
    the window are checked against what InfluxDB already holds instead.
    """

    def __init__(
        self,
        request: ImportRequest,
        sink: Sink | None = None,
        state_store: ImportStateStore | None = None,
        reader: SourceReader | None = None,
        gap_lookup: GapLookup | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            request: Resolved run parameters.
            sink: Destination; defaults to ``NullSink`` for dry runs and
                ``InfluxSink`` otherwise.
            state_store: Preloaded state; defaults to loading ``request.state_file``.
            reader: Source reader; defaults to one built from the request.
            gap_lookup: Source of already stored samples for gap filling;
                defaults to querying InfluxDB.
        """
        self._request = request
        self._sink = sink
        self._store = state_store
        self._reader = reader or create_reader(request)
        self._gap_lookup = gap_lookup or existing_heart_rate
        self._gap_start: datetime | None = None
        self._existing: set[SeriesKey] = set()
        self._states: dict[str, ImportState] = {}
        self._pending: set[Hashable] = set()
        self.state = PipelineState.INIT

    def _transition(self, state: PipelineState) -> None:
        logger.debug("pipeline_state", previous=self.state.value, state=state.value)
        self.state = state

    def _build_sink(self) -> Sink:
        if self._sink is not None:
            return self._sink
        if self._request.dry_run:
            return NullSink()
        return InfluxSink(
            url=self._request.url,
            token=self._request.token,
            org=self._request.org,
            bucket=self._request.bucket,
            timeout_ms=self._request.timeout_ms,
        )

    async def run(self) -> ImportReport:
        """Execute the import.

        Returns:
            The run report. A fatal error ends the run in ``ABORTED`` with
            ``fatal_error`` set instead of raising.
        """
        request = self._request
        started = time.monotonic()
        report = ImportReport(source=self._reader.source_id, dry_run=request.dry_run)
        logger.info(
            "import_started",
            source=report.source,
            kind=request.kind.value,
            dry_run=request.dry_run,
            force_all=request.force_all,
            gap_fill_days=request.gap_fill_days,
        )

        try:
            if request.gap_fill_days is not None:
                self._gap_start = datetime.now(UTC) - timedelta(days=request.gap_fill_days)
                self._existing = await self._gap_lookup(request, self._gap_start)
            else:
                if self._store is None:
                    self._store = ImportStateStore.load(request.state_file)
                logger.info("import_state_ready", **self._store.get_stats())

            with self._reader:
                async with self._build_sink() as sink:
                    writer = BatchWriter(
                        sink,
                        batch_size=request.batch_size,
                        max_retries=request.max_retries,
                        retry_delay=request.retry_delay,
                    )
                    await self._stream(writer, report)

                    self._transition(PipelineState.FLUSHING)
                    outcome = await writer.flush()
                    if outcome is not None:
                        self._apply(outcome, report)

            self._transition(PipelineState.PERSISTING)
            self._persist()
            self._transition(PipelineState.DONE)
        except IngestError as e:
            self._transition(PipelineState.ABORTED)
            report.fatal_error = str(e)
            logger.error(
                "import_aborted",
                source=report.source,
                error=str(e),
                error_type=type(e).__name__,
                written=report.written,
            )
        finally:
            report.final_state = self.state
            report.elapsed_seconds = time.monotonic() - started

        logger.info(
            "import_finished",
            source=report.source,
            state=report.final_state.value,
            read=report.read,
            written=report.written,
            skipped_duplicates=report.skipped_duplicates,
            malformed=report.malformed,
            failed=report.failed,
            elapsed_seconds=round(report.elapsed_seconds, 3),
        )
        return report

    async def _stream(self, writer: BatchWriter, report: ImportReport) -> None:
        for record in self._reader.records():
            self.state = PipelineState.READING
            report.read += 1
            try:
                point = self._reader.normalize(record)
            except MalformedRecordError as e:
                report.malformed += 1
                report.errors.append(
                    RecordError(
                        kind="malformed",
                        message=e.message,
                        index=record.index,
                        measurement=e.context.get("measurement") or self._request.measurement,
                    )
                )
                logger.warning("record_malformed", index=record.index, error=str(e))
                continue

            self.state = PipelineState.FILTERING
            if self._gap_start is not None and point.timestamp < self._gap_start:
                report.outside_window += 1
                continue
            run_key = self._run_key(point)
            if run_key in self._pending or self._seen_before(point):
                report.skipped_duplicates += 1
                continue

            self.state = PipelineState.BUFFERING
            self._pending.add(run_key)
            outcome = await writer.add(point)
            if outcome is not None:
                self.state = PipelineState.FLUSHING
                self._apply(outcome, report)

    def _run_key(self, point: DataPoint) -> Hashable:
        """Identity of a point among the records of this run.

        Seen-set measurements carry a stable id. Otherwise only an exact
        repeat (same time, tags and values) counts, so distinct rows sharing
        a timestamp are all written.
        """
        if self._reader.dedup_mode(point.measurement) is DedupMode.SEEN_SET:
            return point.measurement, point.record_id
        return (
            point.measurement,
            point.timestamp,
            tuple(sorted(point.tags.items())),
            tuple(sorted(point.fields.items())),
        )

    def _state_for(self, measurement: str) -> ImportState:
        state = self._states.get(measurement)
        if state is None:
            if self._store is None:
                raise RuntimeError("import state must be loaded before filtering records")
            state = self._store.get(
                self._reader.source_id, measurement, self._reader.dedup_mode(measurement)
            )
            self._states[measurement] = state
        return state

    def _seen_before(self, point: DataPoint) -> bool:
        """Check whether an earlier run (or InfluxDB, when gap filling) has the point."""
        if self._gap_start is not None:
            return presence_key(point.timestamp, point.tags) in self._existing
        state = self._state_for(point.measurement)
        if self._request.force_all:
            return False
        return state.is_duplicate(point.key)

    def _apply(self, outcome: BatchOutcome, report: ImportReport) -> None:
        tracks_state = self._request.tracks_state
        if outcome.written:
            report.written += len(outcome.points)
            report.batches_written += 1
            if tracks_state:
                for point in outcome.points:
                    self._state_for(point.measurement).record(point.key)
        else:
            report.failed += len(outcome.points)
            report.batches_failed += 1
            report.errors.append(
                RecordError(kind="batch_failed", message=outcome.error or "write failed")
            )
            if tracks_state:
                for point in outcome.points:
                    self._state_for(point.measurement).mark_failed(point.key)

        if tracks_state and self._request.checkpoint_every_batch:
            self.state = PipelineState.PERSISTING
            self._persist()

    def _persist(self) -> None:
        if not self._request.tracks_state or self._store is None:
            return
        try:
            self._store.persist(self._request.state_file)
        except OSError as e:
            raise StateCorruptError(
                f"cannot write state file: {e}", path=str(self._request.state_file)
            ) from e


async def run_import(
    request: ImportRequest,
    sink: Sink | None = None,
    state_store: ImportStateStore | None = None,
    gap_lookup: GapLookup | None = None,
) -> ImportReport:
    """Convenience wrapper running a single ``ImportPipeline``."""
    return await ImportPipeline(
        request, sink=sink, state_store=state_store, gap_lookup=gap_lookup
    ).run()
