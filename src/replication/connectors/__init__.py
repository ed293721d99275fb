"""
Source and target connectors for PostgreSQL stores.
"""

from .source import DeletionLogEntry, NotifyChannel, SourceConnector
from .target import TargetConnector, dedupe_by_key

__all__ = [
    "SourceConnector",
    "TargetConnector",
    "NotifyChannel",
    "DeletionLogEntry",
    "dedupe_by_key",
]
