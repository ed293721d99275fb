"""
Tracer initialization for OpenTelemetry.

Installs an SDK tracer provider with an OTLP exporter when an endpoint is
configured. Without initialization, spans go to the no-op API tracer.
"""

import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

logger = logging.getLogger(__name__)

_tracer: trace.Tracer | None = None
_is_initialized = False


def initialize_tracing(
    service_name: str = "pg-sync-worker",
    otlp_endpoint: str | None = None,
    console_export: bool = False,
) -> trace.Tracer:
    """
    Initialize distributed tracing with OpenTelemetry.

    Args:
        service_name: Name of the service for identification
        otlp_endpoint: OTLP collector endpoint (default: OTLP_ENDPOINT env var)
        console_export: Also export spans to the console (default: TRACE_CONSOLE env var)

    Returns:
        Configured tracer instance
    """
    global _tracer, _is_initialized

    if _is_initialized:
        logger.warning("Tracing already initialized, returning existing tracer")
        return _tracer

    provider = TracerProvider(resource=Resource(attributes={SERVICE_NAME: service_name}))
    exporters = []

    if otlp_endpoint is None:
        otlp_endpoint = os.getenv("OTLP_ENDPOINT")

    if otlp_endpoint:
        try:
            otlp_exporter = OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True)
            provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
            exporters.append("OTLP")
            logger.info(f"OTLP exporter configured: {otlp_endpoint}")
        except Exception as e:
            logger.warning(f"Failed to configure OTLP exporter: {e}")

    if console_export or os.getenv("TRACE_CONSOLE", "").lower() == "true":
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        exporters.append("Console")

    if not exporters:
        logger.info("No trace exporters configured, tracing stays a no-op")
        _tracer = trace.get_tracer(service_name)
        _is_initialized = True
        return _tracer

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer(service_name)
    _is_initialized = True

    logger.info(f"Tracing initialized: {service_name} (exporters: {', '.join(exporters)})")
    return _tracer


def get_tracer() -> trace.Tracer:
    """Return the configured tracer, or the API tracer when tracing was never initialized."""
    if _tracer is None:
        return trace.get_tracer("pg-sync-worker")
    return _tracer


def shutdown_tracing() -> None:
    """Flush pending spans. Call before process exit."""
    global _tracer, _is_initialized

    if not _is_initialized:
        return

    try:
        provider = trace.get_tracer_provider()
        if hasattr(provider, "shutdown"):
            provider.shutdown()
        logger.info("Tracing shutdown complete")
    except Exception as e:
        logger.error(f"Error during tracing shutdown: {e}")
    finally:
        _tracer = None
        _is_initialized = False
