from contextlib import contextmanager
import logging

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = logging.getLogger(__name__)

TRACER_NAME = "comicgen"


def setup_telemetry(app=None, endpoint: str | None = None, service_name: str = "comicgen") -> bool:
    """Export spans over OTLP/HTTP when an endpoint is configured.

    Without an endpoint the global tracer provider stays the no-op default and
    ``trace_span`` costs next to nothing.
    """
    if not endpoint:
        return False

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)

    if app is not None:
        FastAPIInstrumentor.instrument_app(app)
    logger.info("telemetry_enabled endpoint=%s service=%s", endpoint, service_name)
    return True


@contextmanager
def trace_span(name: str, **attributes):
    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        yield span
