"""Bounded batching with retry in front of a sink."""

import asyncio
from dataclasses import dataclass

import structlog

from .errors import SinkFatalError, SinkRejectedError, SinkTransientError
from .models import DataPoint
from .sinks import Sink

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BatchOutcome:
    """Result of flushing one batch."""

    sequence: int
    points: list[DataPoint]
    written: bool
    attempts: int
    error: str | None = None


class BatchWriter:
    """Accumulates points and flushes them to a sink in bounded batches.

    Transient failures are retried with linear backoff. A batch that still
    fails is reported through its ``BatchOutcome`` and the writer moves on.
    ``SinkFatalError`` propagates to the caller unchanged.
    """

    def __init__(
        self,
        sink: Sink,
        batch_size: int = 1000,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        """Initialize the writer.

        Args:
            sink: Destination for flushed batches.
            batch_size: Points per batch.
            max_retries: Total write attempts per batch.
            retry_delay: Base delay in seconds; attempt ``n`` waits ``n * retry_delay``.
        """
        if batch_size < 1:
            raise ValueError(f"Batch size must be at least 1, got {batch_size}")
        self._sink = sink
        self._batch_size = batch_size
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay
        self._buffer: list[DataPoint] = []
        self._sequence = 0

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    async def add(self, point: DataPoint) -> BatchOutcome | None:
        """Buffer a point, flushing when the batch is full.

        Returns:
            The outcome of the flush this call triggered, if any.
        """
        self._buffer.append(point)
        if len(self._buffer) >= self._batch_size:
            return await self.flush()
        return None

    async def flush(self) -> BatchOutcome | None:
        """Send the buffered points as one batch.

        Returns:
            The batch outcome, or ``None`` if nothing was buffered.
        """
        if not self._buffer:
            return None

        points = self._buffer
        self._buffer = []
        self._sequence += 1
        return await self._write_with_retry(self._sequence, points)

    async def _write_with_retry(self, sequence: int, points: list[DataPoint]) -> BatchOutcome:
        last_error = ""
        for attempt in range(1, self._max_retries + 1):
            try:
                await self._sink.write_batch(points)
                logger.info("batch_written", batch=sequence, count=len(points), attempt=attempt)
                return BatchOutcome(sequence, points, written=True, attempts=attempt)
            except SinkFatalError:
                logger.error("batch_write_fatal", batch=sequence, count=len(points))
                raise
            except SinkRejectedError as e:
                # Permanent failure - don't retry
                logger.error(
                    "batch_write_rejected",
                    batch=sequence,
                    count=len(points),
                    error=str(e),
                )
                return BatchOutcome(sequence, points, written=False, attempts=attempt, error=str(e))
            except SinkTransientError as e:
                last_error = str(e)
                logger.warning(
                    "batch_write_failed",
                    batch=sequence,
                    attempt=attempt,
                    max_retries=self._max_retries,
                    error=last_error,
                )
                if attempt < self._max_retries:
                    await asyncio.sleep(self._retry_delay * attempt)

        logger.error(
            "batch_write_failed_permanently",
            batch=sequence,
            count=len(points),
            attempts=self._max_retries,
        )
        return BatchOutcome(
            sequence,
            points,
            written=False,
            attempts=self._max_retries,
            error=f"gave up after {self._max_retries} attempts: {last_error}",
        )
