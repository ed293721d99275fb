"""
Structured logging for the sync worker

Usage:
    from src.utils.logging import configure_from_env, ContextLogger

    configure_from_env()
    log = ContextLogger(__name__, table_name="public:orders")
    log.warning("Delete skipped", operation="delete")
"""

from .config import configure_from_env, setup_logging, shutdown_logging
from .formatters import ConsoleFormatter, JSONFormatter
from .handlers import ContextLogger

__all__ = [
    "setup_logging",
    "configure_from_env",
    "shutdown_logging",
    "JSONFormatter",
    "ConsoleFormatter",
    "ContextLogger",
]
