"""
Realtime + reconciliation replication between two PostgreSQL stores

Main components:
- registry: Configured tables and their resolved replication mode
- state: Durable per-table reconciliation cursors
- connectors: Source reads, LISTEN channels and target writes
- realtime / processor: Change notifications applied in arrival order
- reconciler / deletions: Periodic sweep and deletion log replay
- supervisor: Process lifetime, modes and shutdown
"""

__version__ = "0.1.0"

from .config import Settings, load_settings
from .errors import ConfigurationError, SyncError
from .registry import TableRegistry, TableSpec

__all__ = [
    "Settings",
    "load_settings",
    "SyncError",
    "ConfigurationError",
    "TableRegistry",
    "TableSpec",
]
