"""
Prometheus HTTP server and application info metrics.
"""

import logging
import time
from typing import Optional

from prometheus_client import (
    start_http_server,
    Gauge,
    Info,
    CollectorRegistry,
    REGISTRY,
)

logger = logging.getLogger(__name__)


class MetricsPublisher:
    """
    Serves the /metrics endpoint

    Started by the supervisor only when a metrics port is configured.
    """

    def __init__(
        self,
        port: int = 9091,
        registry: Optional[CollectorRegistry] = None,
    ):
        self.port = port
        self.registry = registry or REGISTRY
        self._server_started = False

    def start(self) -> None:
        """Start the metrics HTTP server"""
        if self._server_started:
            logger.warning(f"Metrics server already running on port {self.port}")
            return

        try:
            start_http_server(self.port, registry=self.registry)
        except OSError as e:
            raise RuntimeError(
                f"Metrics server cannot bind port {self.port}: {e}"
            ) from e

        self._server_started = True
        logger.info(f"Metrics server started on port {self.port}")

    def is_started(self) -> bool:
        return self._server_started


class ApplicationInfo:
    """Exposes the worker's name, version and uptime."""

    def __init__(
        self,
        app_name: str = "pg-sync-worker",
        version: str = "0.1.0",
        registry: Optional[CollectorRegistry] = None,
    ):
        self.registry = registry or REGISTRY

        self.info = Info(
            "sync_worker",
            "Sync worker metadata",
            registry=self.registry,
        )
        self.info.info({"name": app_name, "version": version})

        self._start_time = time.time()
        self.uptime_seconds = Gauge(
            "sync_worker_uptime_seconds",
            "Worker uptime in seconds",
            registry=self.registry,
        )
        self.uptime_seconds.set_function(self.get_uptime)

    def get_uptime(self) -> float:
        return time.time() - self._start_time
