"""
Utility modules for the sync worker

Provides:
- db_pool: Thread-safe PostgreSQL connection pools
- logging: Structured logging setup
- metrics: Prometheus metrics publishing
- retry: Linear backoff retry policy
- sql_safety: Identifier validation and SQL composition helpers
- tracing: OpenTelemetry spans
- vault_client: HashiCorp Vault integration for secrets management
"""

__version__ = "0.1.0"
__all__ = ["db_pool", "logging", "metrics", "retry", "sql_safety", "tracing", "vault_client"]
