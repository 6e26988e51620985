"""Sinks that receive batches of points: InfluxDB and the dry-run no-op."""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Sequence
from types import TracebackType

import aiohttp
import structlog
from influxdb_client.client.influxdb_client_async import InfluxDBClientAsync
from influxdb_client.client.write_api_async import WriteApiAsync
from influxdb_client.rest import ApiException

from .errors import SinkFatalError, SinkRejectedError, SinkTransientError
from .models import DataPoint

logger = structlog.get_logger(__name__)

# HTTP statuses that mean the credentials or target are wrong for every batch
FATAL_STATUSES = frozenset({401, 403, 404})

# HTTP statuses that mean this payload will never be accepted
REJECTED_STATUSES = frozenset({400, 413, 422})

# Exceptions that should NOT trigger retries (permanent failures)
NON_RETRYABLE_EXCEPTIONS = (
    ValueError,  # Invalid data
    TypeError,   # Type errors
)

# Number of points echoed to the log per dry-run batch
DRY_RUN_SAMPLE = 10


class Sink(ABC):
    """Destination for point batches.

    Sinks are async context managers; connections live for the ``async with``
    block only.
    """

    async def __aenter__(self) -> "Sink":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        return None

    @abstractmethod
    async def write_batch(self, points: Sequence[DataPoint]) -> None:
        """Write one batch.

        Raises:
            SinkTransientError: The write may succeed if retried.
            SinkRejectedError: The payload was refused; do not retry.
            SinkFatalError: The sink cannot be used for the rest of the run.
        """


class InfluxSink(Sink):
    """Writes batches to InfluxDB 2.x with the async client."""

    def __init__(
        self,
        url: str,
        token: str,
        org: str,
        bucket: str,
        timeout_ms: int = 10_000,
    ) -> None:
        """Initialize the sink.

        Args:
            url: InfluxDB base URL.
            token: API token.
            org: Organization name.
            bucket: Target bucket.
            timeout_ms: Per-request timeout.
        """
        self._url = url
        self._token = token
        self._org = org
        self._bucket = bucket
        self._timeout_ms = timeout_ms
        self._client: InfluxDBClientAsync | None = None
        self._write_api: WriteApiAsync | None = None

    async def connect(self) -> None:
        """Connect to InfluxDB and verify it is ready."""
        logger.info("influxdb_connecting", url=self._url, org=self._org, bucket=self._bucket)

        self._client = InfluxDBClientAsync(
            url=self._url,
            token=self._token,
            org=self._org,
            timeout=self._timeout_ms,
        )

        try:
            ready = await self._client.ping()
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            await self.close()
            raise SinkFatalError(f"InfluxDB is unreachable: {e}", url=self._url) from e
        if not ready:
            await self.close()
            raise SinkFatalError("InfluxDB is not ready", url=self._url)

        self._write_api = self._client.write_api()
        logger.info("influxdb_connected")

    async def close(self) -> None:
        if self._client:
            await self._client.close()
            self._client = None
            self._write_api = None
            logger.info("influxdb_disconnected")

    async def __aenter__(self) -> "InfluxSink":
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def write_batch(self, points: Sequence[DataPoint]) -> None:
        if not self._write_api:
            raise SinkFatalError("InfluxDB client not connected", url=self._url)

        records = [p.to_influx() for p in points]
        try:
            await self._write_api.write(bucket=self._bucket, org=self._org, record=records)
        except ApiException as e:
            if e.status in FATAL_STATUSES:
                raise SinkFatalError(
                    f"InfluxDB refused the write: {e.reason}", status=e.status, bucket=self._bucket
                ) from e
            if e.status in REJECTED_STATUSES:
                raise SinkRejectedError(
                    f"InfluxDB rejected the batch: {e.reason}", status=e.status
                ) from e
            raise SinkTransientError(f"InfluxDB write failed: {e.reason}", status=e.status) from e
        except NON_RETRYABLE_EXCEPTIONS as e:
            raise SinkRejectedError(f"invalid batch: {e}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise SinkTransientError(
                f"InfluxDB write failed: {e}", error_type=type(e).__name__
            ) from e


class NullSink(Sink):
    """Dry-run sink: accepts every batch without side effects."""

    def __init__(self) -> None:
        self.batches = 0
        self.points = 0

    async def write_batch(self, points: Sequence[DataPoint]) -> None:
        self.batches += 1
        self.points += len(points)
        logger.info("dry_run_batch", batch=self.batches, count=len(points))
        for i, point in enumerate(points[:DRY_RUN_SAMPLE]):
            logger.debug(
                "dry_run_point",
                position=i + 1,
                total=len(points),
                line=point.to_influx().to_line_protocol(),
            )
