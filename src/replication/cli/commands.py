"""
CLI command implementation.

Wires settings, logging, tracing and metrics together and hands control to
the process supervisor.
"""

import argparse
import logging
import os

from src.utils.logging import configure_from_env, shutdown_logging
from src.utils.metrics import initialize_metrics
from src.utils.tracing import initialize_tracing, shutdown_tracing
from src.utils.vault_client import VaultClient

from ..config import load_env_file, load_settings
from ..errors import ConfigurationError
from ..supervisor import ProcessSupervisor, build_context

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


def use_vault(args: argparse.Namespace) -> bool:
    return bool(getattr(args, "use_vault", False)) or os.getenv("SYNC_USE_VAULT", "").lower() == "true"


def cmd_run(args: argparse.Namespace) -> int:
    """
    Run the worker

    Args:
        args: Parsed command-line arguments

    Returns:
        Process exit code
    """
    load_env_file()
    configure_from_env(args.log_level)

    try:
        vault_client = None
        if use_vault(args):
            vault_client = VaultClient()
            if not vault_client.health_check():
                logger.warning(f"Vault at {vault_client.vault_addr} reports unhealthy; trying anyway")
        settings = load_settings(args, vault_client=vault_client)
    except (ConfigurationError, ValueError) as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_FAILURE

    initialize_tracing()

    try:
        metrics = initialize_metrics(port=settings.metrics_port)
    except RuntimeError as e:
        logger.error(f"Failed to start metrics server: {e}")
        shutdown_tracing()
        return EXIT_FAILURE

    try:
        context = build_context(settings, metrics=metrics["replication"])
        return ProcessSupervisor(context).run()
    except Exception as e:
        logger.error(f"Fatal error: {type(e).__name__}: {e}", exc_info=True)
        return EXIT_FAILURE
    finally:
        shutdown_tracing()
        shutdown_logging()
