"""Tests for telemetry sinks and the SafeTelemetry wrapper."""

import asyncio
import json
from pathlib import Path

import pytest

from querypipe.core.errors import ErrorClassifier, TransportFailure
from querypipe.core.logging import configure_logging
from querypipe.telemetry import LoggingTelemetrySink, NullTelemetrySink, SafeTelemetry

from tests.helpers import RecordingSink


@pytest.fixture
def error():
    return ErrorClassifier().classify(TransportFailure(message="down", status=503))


class _BrokenSink:
    def report_error(self, error) -> None:
        raise RuntimeError("collector offline")

    def report_metrics(self, source, metrics) -> None:
        raise RuntimeError("collector offline")


class _AsyncSink:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.errors = []
        self.gate = asyncio.Event()

    async def report_error(self, error) -> None:
        await self.gate.wait()
        if self.fail:
            raise RuntimeError("collector offline")
        self.errors.append(error)

    async def report_metrics(self, source, metrics) -> None:
        return None


class TestSafeTelemetry:
    """Reporting never raises and never blocks."""

    def test_defaults_to_null_sink(self, error) -> None:
        telemetry = SafeTelemetry()
        assert isinstance(telemetry.sink, NullTelemetrySink)
        telemetry.report_error(error)
        assert telemetry.failures == 0

    def test_sync_sink(self, error, sink: RecordingSink) -> None:
        telemetry = SafeTelemetry(sink)
        telemetry.report_error(error)
        telemetry.report_metrics("batching", {"flushes": 1})

        assert sink.errors == [error]
        assert sink.metrics == [("batching", {"flushes": 1})]

    def test_metrics_are_copied(self, sink: RecordingSink) -> None:
        metrics = {"flushes": 1}
        SafeTelemetry(sink).report_metrics("batching", metrics)
        metrics["flushes"] = 2
        assert sink.metrics[0][1] == {"flushes": 1}

    def test_broken_sync_sink(self, error) -> None:
        telemetry = SafeTelemetry(_BrokenSink())
        telemetry.report_error(error)
        telemetry.report_metrics("cache", {})
        assert telemetry.failures == 2

    @pytest.mark.asyncio
    async def test_async_sink_does_not_block(self, error) -> None:
        async_sink = _AsyncSink()
        telemetry = SafeTelemetry(async_sink)

        telemetry.report_error(error)
        assert async_sink.errors == []

        async_sink.gate.set()
        await telemetry.drain()
        assert async_sink.errors == [error]
        assert telemetry.failures == 0

    @pytest.mark.asyncio
    async def test_failing_async_sink(self, error) -> None:
        async_sink = _AsyncSink(fail=True)
        async_sink.gate.set()
        telemetry = SafeTelemetry(async_sink)

        telemetry.report_error(error)
        await telemetry.drain()
        await asyncio.sleep(0)

        assert telemetry.failures == 1

    def test_async_sink_without_loop(self, error) -> None:
        telemetry = SafeTelemetry(_AsyncSink())
        telemetry.report_error(error)
        assert telemetry.failures == 1

    @pytest.mark.asyncio
    async def test_drain_with_nothing_pending(self) -> None:
        await SafeTelemetry().drain()


class TestLoggingTelemetrySink:
    """Reports written to the structured log."""

    def test_error_is_logged(self, error, tmp_path: Path) -> None:
        log_file = tmp_path / "telemetry.log"
        configure_logging(level="DEBUG", format="json", file_path=log_file)

        sink = LoggingTelemetrySink()
        sink.report_error(error)
        sink.report_metrics("cache", {"hits": 3})

        entries = [json.loads(line) for line in log_file.read_text().splitlines()]
        assert [e["event"] for e in entries] == ["telemetry.error", "telemetry.metrics"]
        assert entries[0]["kind"] == "network"
        assert entries[0]["code"] == "HTTP_503"
        assert entries[1]["hits"] == 3
