"""Tests for the InfluxDB sink error mapping and the dry-run sink."""

import asyncio
from datetime import UTC, datetime

import aiohttp
import pytest
from influxdb_client.rest import ApiException

import home_ingest.sinks as sinks
from home_ingest.errors import SinkFatalError, SinkRejectedError, SinkTransientError
from home_ingest.models import DataPoint
from home_ingest.sinks import InfluxSink, NullSink


def make_point(value: float = 1.0) -> DataPoint:
    return DataPoint.build("home", datetime(2024, 1, 1, tzinfo=UTC), {"v": value})


class FakeWriteApi:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[dict] = []

    async def write(self, bucket, org, record):
        self.calls.append({"bucket": bucket, "org": org, "record": record})
        if self.error:
            raise self.error
        return True


class FakeClient:
    """Stand-in for InfluxDBClientAsync."""

    ready = True
    instances: list["FakeClient"] = []

    def __init__(self, url, token, org, timeout):
        self.url = url
        self.timeout = timeout
        self.closed = False
        self.write_api_obj = FakeWriteApi()
        FakeClient.instances.append(self)

    async def ping(self):
        if isinstance(self.ready, Exception):
            raise self.ready
        return self.ready

    def write_api(self):
        return self.write_api_obj

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_client(monkeypatch):
    FakeClient.instances = []
    FakeClient.ready = True
    monkeypatch.setattr(sinks, "InfluxDBClientAsync", FakeClient)
    return FakeClient


def connected_sink(error: Exception | None = None) -> tuple[InfluxSink, FakeWriteApi]:
    sink = InfluxSink(url="http://influx:8086", token="t", org="home", bucket="data")
    api = FakeWriteApi(error)
    sink._write_api = api
    return sink, api


class TestInfluxSink:
    async def test_write_converts_points(self):
        sink, api = connected_sink()
        await sink.write_batch([make_point(1.0), make_point(2.0)])

        (call,) = api.calls
        assert call["bucket"] == "data"
        assert call["org"] == "home"
        lines = [p.to_line_protocol() for p in call["record"]]
        assert len(lines) == 2
        assert lines[0].startswith("home v=1")
        assert lines[1].startswith("home v=2")
        assert all(line.endswith(" 1704067200000000000") for line in lines)

    @pytest.mark.parametrize("status", [401, 403, 404])
    async def test_auth_and_missing_bucket_are_fatal(self, status):
        sink, _ = connected_sink(ApiException(status=status, reason="nope"))
        with pytest.raises(SinkFatalError):
            await sink.write_batch([make_point()])

    @pytest.mark.parametrize("status", [400, 413, 422])
    async def test_bad_payload_is_rejected(self, status):
        sink, _ = connected_sink(ApiException(status=status, reason="bad"))
        with pytest.raises(SinkRejectedError):
            await sink.write_batch([make_point()])

    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_server_errors_are_transient(self, status):
        sink, _ = connected_sink(ApiException(status=status, reason="busy"))
        with pytest.raises(SinkTransientError):
            await sink.write_batch([make_point()])

    @pytest.mark.parametrize(
        "error",
        [aiohttp.ClientConnectionError("reset"), asyncio.TimeoutError(), OSError("unreachable")],
    )
    async def test_network_errors_are_transient(self, error):
        sink, _ = connected_sink(error)
        with pytest.raises(SinkTransientError):
            await sink.write_batch([make_point()])

    async def test_invalid_data_is_rejected(self):
        sink, _ = connected_sink(ValueError("bad field"))
        with pytest.raises(SinkRejectedError):
            await sink.write_batch([make_point()])

    async def test_write_without_connection_is_fatal(self):
        sink = InfluxSink(url="http://influx:8086", token="t", org="home", bucket="data")
        with pytest.raises(SinkFatalError, match="not connected"):
            await sink.write_batch([make_point()])

    async def test_context_manager_connects_and_closes(self, fake_client):
        async with InfluxSink("http://influx:8086", "t", "home", "data", timeout_ms=500) as sink:
            await sink.write_batch([make_point()])

        (client,) = fake_client.instances
        assert client.timeout == 500
        assert client.closed
        assert len(client.write_api_obj.calls) == 1

    async def test_not_ready_is_fatal(self, fake_client):
        fake_client.ready = False
        with pytest.raises(SinkFatalError, match="not ready"):
            async with InfluxSink("http://influx:8086", "t", "home", "data"):
                pass
        assert fake_client.instances[0].closed

    async def test_unreachable_is_fatal(self, fake_client):
        fake_client.ready = aiohttp.ClientConnectionError("refused")
        with pytest.raises(SinkFatalError, match="unreachable"):
            await InfluxSink("http://influx:8086", "t", "home", "data").connect()


class TestNullSink:
    async def test_counts_without_side_effects(self):
        sink = NullSink()
        async with sink:
            await sink.write_batch([make_point(), make_point()])
            await sink.write_batch([make_point()])
        assert sink.batches == 2
        assert sink.points == 3
