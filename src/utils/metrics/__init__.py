"""
Prometheus metrics for the sync worker

Usage:
    from src.utils.metrics import initialize_metrics

    metrics = initialize_metrics(port=9091)
    metrics["replication"].record_event("public:orders", "INSERT", "applied")
"""

import logging
from typing import Any

from prometheus_client import CollectorRegistry

from .publisher import ApplicationInfo, MetricsPublisher
from .replication import ReplicationMetrics

logger = logging.getLogger(__name__)


def initialize_metrics(
    port: int | None = None,
    registry: CollectorRegistry | None = None,
    version: str = "0.1.0",
) -> dict[str, Any]:
    """
    Create the worker's metrics objects and start the HTTP server if a port is given

    Args:
        port: Port to expose /metrics on (None disables the server)
        registry: Custom Prometheus registry (default: global REGISTRY)
        version: Version published in the application info metric

    Returns:
        Dictionary with "publisher" (or None), "replication" and "app_info"
    """
    publisher = None
    if port:
        logger.info(f"Initializing metrics on port {port}")
        publisher = MetricsPublisher(port=port, registry=registry)
        publisher.start()

    return {
        "publisher": publisher,
        "replication": ReplicationMetrics(registry=registry),
        "app_info": ApplicationInfo(version=version, registry=registry),
    }


__all__ = [
    "MetricsPublisher",
    "ReplicationMetrics",
    "ApplicationInfo",
    "initialize_metrics",
]
