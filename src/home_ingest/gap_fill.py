"""Heart rate gap filling.

A maintenance mode for health imports: instead of consulting the import
state, ask InfluxDB which heart rate samples it already holds over the last
few days and write only the missing ones. The import state is neither read
nor updated.
"""

import asyncio
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta

import aiohttp
import structlog
from influxdb_client.client.influxdb_client_async import InfluxDBClientAsync
from influxdb_client.rest import ApiException

from .errors import SinkFatalError
from .models import ImportRequest

logger = structlog.get_logger(__name__)

GAP_FILL_METRIC = "heart_rate"
GAP_FILL_FIELD = "bpm"

# Flux columns that are not tags
_RESERVED_COLUMNS = frozenset(
    {"result", "table", "_start", "_stop", "_time", "_value", "_field", "_measurement"}
)

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

SeriesKey = tuple[int, tuple[tuple[str, str], ...]]


def presence_key(timestamp: datetime, tags: Mapping[str, str]) -> SeriesKey:
    """Identify a sample by its series (tag set) and millisecond timestamp."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=UTC)
    millis = (timestamp - _EPOCH) // timedelta(milliseconds=1)
    return millis, tuple(sorted(tags.items()))


def build_presence_query(bucket: str, measurement: str, field: str, start: datetime) -> str:
    """Build a Flux query listing every sample of one field since ``start``."""
    start_literal = start.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
    parts = [
        f'from(bucket: "{bucket}")',
        f"  |> range(start: {start_literal})",
        f'  |> filter(fn: (r) => r._measurement == "{measurement}")',
        f'  |> filter(fn: (r) => r._field == "{field}")',
    ]
    return "\n".join(parts)


async def fetch_existing(
    url: str,
    token: str,
    org: str,
    bucket: str,
    measurement: str,
    field: str,
    start: datetime,
    timeout_ms: int = 10_000,
) -> set[SeriesKey]:
    """Return the presence keys of samples already stored since ``start``.

    Raises:
        SinkFatalError: If InfluxDB cannot be queried.
    """
    flux = build_presence_query(bucket, measurement, field, start)
    client = InfluxDBClientAsync(url=url, token=token, org=org, timeout=timeout_ms)
    try:
        tables = await client.query_api().query(flux)
    except ApiException as e:
        raise SinkFatalError(
            f"InfluxDB query failed: {e.reason}", status=e.status, bucket=bucket
        ) from e
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
        raise SinkFatalError(f"InfluxDB is unreachable: {e}", url=url) from e
    finally:
        await client.close()

    keys: set[SeriesKey] = set()
    for table in tables:
        for record in table.records:
            ts = record.get_time()
            if ts is None:
                continue
            tags = {
                k: str(v)
                for k, v in record.values.items()
                if k not in _RESERVED_COLUMNS and v is not None
            }
            keys.add(presence_key(ts, tags))
    return keys


async def existing_heart_rate(request: ImportRequest, start: datetime) -> set[SeriesKey]:
    """Heart rate samples stored in the request's bucket since ``start``."""
    keys = await fetch_existing(
        url=request.url,
        token=request.token,
        org=request.org,
        bucket=request.bucket,
        measurement=GAP_FILL_METRIC,
        field=GAP_FILL_FIELD,
        start=start,
        timeout_ms=request.timeout_ms,
    )
    logger.info("gap_fill_existing_samples", since=start.isoformat(), samples=len(keys))
    return keys
