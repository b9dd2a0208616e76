import logging

from brickyard_workers.core.config import Settings
from brickyard_workers.core.telemetry import (
    TraceContextFilter,
    WorkerTelemetry,
    build_span_exporter,
    otlp_traces_endpoint,
    parse_otlp_headers,
)


def test_parse_otlp_headers_drops_malformed_entries() -> None:
    assert parse_otlp_headers("authorization=Bearer abc, x-tenant = brickyard,broken,=nokey") == {
        "authorization": "Bearer abc",
        "x-tenant": "brickyard",
    }
    assert parse_otlp_headers(None) == {}


def test_no_exporter_without_endpoint(monkeypatch) -> None:
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", raising=False)
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)

    assert build_span_exporter(Settings(otel_exporter_otlp_endpoint=None)) is None


def test_traces_endpoint_prefers_settings_then_specific_env(monkeypatch) -> None:
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://collector:4318")
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", "http://collector:4318/v1/traces")

    assert otlp_traces_endpoint(Settings(otel_exporter_otlp_endpoint="http://local:4318")) == "http://local:4318"
    assert otlp_traces_endpoint(Settings(otel_exporter_otlp_endpoint=None)) == "http://collector:4318/v1/traces"


def test_disabled_telemetry_is_a_no_op() -> None:
    telemetry = WorkerTelemetry.start(Settings(otel_enabled=False))

    assert telemetry.enabled is False
    telemetry.shutdown()


def test_log_records_carry_worker_id_outside_spans() -> None:
    record = logging.LogRecord("brickyard", logging.INFO, __file__, 1, "claimed", None, None)

    assert TraceContextFilter("worker-7").filter(record) is True
    assert record.worker_id == "worker-7"
    assert record.trace_id == "-"
    assert record.span_id == "-"
