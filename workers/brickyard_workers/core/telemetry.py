from __future__ import annotations

from dataclasses import dataclass
import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from brickyard_workers.core.config import Settings

logger = logging.getLogger(__name__)

LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s worker=%(worker_id)s "
    "trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
)


class TraceContextFilter(logging.Filter):
    """Stamps each record with the worker id and the active span, if any."""

    def __init__(self, worker_id: str) -> None:
        super().__init__()
        self.worker_id = worker_id

    def filter(self, record: logging.LogRecord) -> bool:
        context = trace.get_current_span().get_span_context()
        record.worker_id = self.worker_id
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else "-"
        record.span_id = format(context.span_id, "016x") if context.is_valid else "-"
        return True


def configure_worker_logging(worker_id: str, *, correlate: bool = True) -> None:
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT if correlate else "%(asctime)s %(levelname)s %(name)s %(message)s"))
        root.addHandler(handler)
        root.setLevel(logging.INFO)
    if not correlate:
        return
    for handler in root.handlers:
        if not any(isinstance(existing, TraceContextFilter) for existing in handler.filters):
            handler.addFilter(TraceContextFilter(worker_id))


@dataclass(slots=True)
class WorkerTelemetry:
    provider: TracerProvider | None = None
    httpx_instrumentor: HTTPXClientInstrumentor | None = None

    @classmethod
    def start(cls, settings: Settings) -> WorkerTelemetry:
        if not settings.otel_enabled:
            return cls()

        provider = TracerProvider(
            resource=Resource.create(
                {
                    SERVICE_NAME: settings.otel_service_name,
                    DEPLOYMENT_ENVIRONMENT: settings.environment,
                    "worker.id": settings.worker_id,
                    "worker.stages": ",".join(settings.handled_stages),
                }
            ),
            sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)),
        )
        exporter = build_span_exporter(settings)
        if exporter is not None:
            provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(provider)

        instrumentor = HTTPXClientInstrumentor()
        instrumentor.instrument(tracer_provider=provider)
        return cls(provider=provider, httpx_instrumentor=instrumentor)

    @property
    def enabled(self) -> bool:
        return self.provider is not None

    def shutdown(self) -> None:
        if self.httpx_instrumentor is not None:
            self.httpx_instrumentor.uninstrument()
            self.httpx_instrumentor = None
        if self.provider is not None:
            self.provider.force_flush()
            self.provider.shutdown()
            self.provider = None


def otlp_traces_endpoint(settings: Settings) -> str | None:
    """Settings first, then the standard OTEL_* variables, most specific first."""
    return (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )


def build_span_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = otlp_traces_endpoint(settings)
    if not endpoint:
        logger.info("no OTLP endpoint configured; worker spans stay in-process")
        return None
    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2``; entries without ``=`` or with an empty key are dropped."""
    pairs = (item.partition("=") for item in (raw or "").split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}
