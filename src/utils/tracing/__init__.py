"""
Distributed tracing using OpenTelemetry.

Instruments source reads, target writes, reconciliation passes and state
writes of the replication worker.
"""

from .context import add_span_attributes, trace_operation
from .tracer import get_tracer, initialize_tracing, shutdown_tracing

__all__ = [
    "initialize_tracing",
    "get_tracer",
    "shutdown_tracing",
    "trace_operation",
    "add_span_attributes",
]
