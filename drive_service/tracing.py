from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from drive_service.config import settings

tracer = trace.get_tracer("drive_service")
_tracing_initialized = False


def setup_tracing(app) -> bool:
    global _tracing_initialized
    if _tracing_initialized or not settings.tracing_enabled:
        return False

    resource = Resource.create(
        {SERVICE_NAME: settings.tracing_service_name, SERVICE_VERSION: settings.app_version}
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure))
    )

    trace.set_tracer_provider(provider)
    # Health and metrics scrapes would drown the upload spans.
    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider, excluded_urls="health,metrics")
    _tracing_initialized = True
    return True
