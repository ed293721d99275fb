"""
Command-line argument parser configuration.

Flags select the run mode; everything else comes from the environment and the
table configuration file.
"""

import argparse


def create_parser() -> argparse.ArgumentParser:
    """
    Create and configure the argument parser for the CLI.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="pg-sync-worker",
        description="Realtime + reconciliation replication worker between two PostgreSQL stores",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Realtime stream plus periodic reconciliation (default mode)
  pg-sync-worker

  # One reconciliation pass, then exit (for cron)
  pg-sync-worker --once

  # Reconciliation loop only, no realtime channels
  pg-sync-worker --no-realtime

  # Fetch credentials from Vault and expose Prometheus metrics
  pg-sync-worker --use-vault --metrics-port 9091
        """
    )

    mode = parser.add_argument_group("mode")
    mode.add_argument(
        '--reconcile-only',
        action='store_true',
        help='Run a single reconciliation pass and exit'
    )
    mode.add_argument(
        '--cron',
        action='store_true',
        help='Alias of --reconcile-only'
    )
    mode.add_argument(
        '--once',
        action='store_true',
        help='Run a single reconciliation pass and exit; also disables the loop'
    )
    mode.add_argument(
        '--default',
        action='store_true',
        help='Force the default mode (realtime + loop), overriding SYNC_MODE'
    )
    mode.add_argument(
        '--no-realtime',
        action='store_true',
        help='Do not open realtime channels'
    )

    parser.add_argument(
        '--use-vault',
        action='store_true',
        help='Fetch source/target credentials from HashiCorp Vault (secret/sync/*)'
    )
    parser.add_argument(
        '--metrics-port',
        type=int,
        help='Expose Prometheus metrics on this port (default: SYNC_METRICS_PORT, off if unset)'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (default: LOG_LEVEL or INFO)'
    )

    return parser
