"""
Command-line interface for the sync worker.

Usage:
    pg-sync-worker [--reconcile-only | --cron | --once | --default]
                   [--no-realtime] [--use-vault] [--metrics-port PORT]
                   [--log-level LEVEL]
"""

import sys
from typing import Optional, Sequence

from .commands import EXIT_FAILURE, EXIT_OK, cmd_run
from .parser import create_parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the pg-sync-worker CLI"""
    parser = create_parser()
    args = parser.parse_args(argv)
    return cmd_run(args)


__all__ = [
    'main',
    'cmd_run',
    'create_parser',
    'EXIT_OK',
    'EXIT_FAILURE',
]


if __name__ == '__main__':
    sys.exit(main())
