"""
HashiCorp Vault client for fetching sync credentials

Source and target credentials live in the KV v2 secrets engine under
secret/sync/source and secret/sync/target, each with `url` and
`service_key` fields.
"""

import os
import requests
from typing import Dict, Any, Optional
import logging
import re

from src.utils.retry import retry_with_backoff


logger = logging.getLogger(__name__)

SYNC_ROLES = ("source", "target")
REQUIRED_FIELDS = ("url", "service_key")


class VaultClient:
    """
    HashiCorp Vault client for secrets management

    Reads the KV v2 secrets engine over its HTTP API.
    """

    def __init__(
        self,
        vault_addr: Optional[str] = None,
        vault_token: Optional[str] = None,
        namespace: Optional[str] = None,
        mount_point: str = "secret",
    ):
        """
        Initialize Vault client

        Args:
            vault_addr: Vault server address (default: from VAULT_ADDR env var)
            vault_token: Vault authentication token (default: from VAULT_TOKEN env var)
            namespace: Vault namespace (optional, for Vault Enterprise)
            mount_point: KV v2 mount holding the sync secrets

        Raises:
            ValueError: If vault_addr or vault_token are not provided
        """
        self.vault_addr = vault_addr or os.getenv("VAULT_ADDR")
        self.vault_token = vault_token or os.getenv("VAULT_TOKEN")
        self.namespace = namespace or os.getenv("VAULT_NAMESPACE")
        self.mount_point = mount_point

        if not self.vault_addr:
            raise ValueError(
                "Vault address not provided. Set VAULT_ADDR environment variable "
                "or pass vault_addr parameter."
            )

        if not self.vault_token:
            raise ValueError(
                "Vault token not provided. Set VAULT_TOKEN environment variable "
                "or pass vault_token parameter."
            )

        self.vault_addr = self.vault_addr.rstrip("/")

        self.headers = {
            "X-Vault-Token": self.vault_token,
            "Content-Type": "application/json"
        }

        if self.namespace:
            self.headers["X-Vault-Namespace"] = self.namespace

        logger.info(f"Initialized Vault client for {self.vault_addr}")

    def get_secret(self, secret_path: str) -> Dict[str, Any]:
        """
        Fetch secret from Vault KV v2 secrets engine

        Args:
            secret_path: Path to secret (e.g., "secret/sync/source")

        Returns:
            Dictionary containing secret data

        Raises:
            ValueError: If secret_path is invalid or the secret is missing
            requests.RequestException: If Vault request fails
        """
        if not secret_path or not isinstance(secret_path, str):
            raise ValueError("secret_path must be a non-empty string")

        if '..' in secret_path or secret_path.startswith('//'):
            raise ValueError(
                f"Invalid secret_path: {secret_path}. "
                "Path traversal attempts are not allowed."
            )

        if not re.match(r'^[a-zA-Z0-9/_-]+$', secret_path):
            raise ValueError(
                f"Invalid secret_path: {secret_path}. "
                "Only alphanumeric characters, slashes, underscores, and hyphens are allowed."
            )

        # KV v2 requires /data/ after the mount point
        if "/data/" not in secret_path:
            parts = secret_path.split("/", 1)
            if len(parts) == 2:
                secret_path = f"{parts[0]}/data/{parts[1]}"
            else:
                secret_path = f"{secret_path}/data"

        url = f"{self.vault_addr}/v1/{secret_path}"

        logger.debug(f"Fetching secret from: {url}")

        response = self._get(url)

        if response.status_code == 404:
            raise ValueError(f"Secret not found at path: {secret_path}")

        response.raise_for_status()

        secret_data = response.json().get("data", {}).get("data", {})

        if not secret_data:
            raise ValueError(f"No data found in secret at path: {secret_path}")

        return secret_data

    @retry_with_backoff(attempts=3, base_delay=1.0)
    def _get(self, url: str) -> requests.Response:
        # Transport errors only; HTTP error statuses are returned to the caller
        return requests.get(url, headers=self.headers, timeout=10)

    def get_sync_credentials(self, role: str) -> Dict[str, Any]:
        """
        Fetch the connection URL and service key for one side of the sync

        Args:
            role: "source" or "target"

        Returns:
            Dictionary with at least `url` and `service_key`

        Raises:
            ValueError: If role is invalid or required fields are missing
        """
        if role not in SYNC_ROLES:
            raise ValueError(
                f"Unsupported role: {role!r}. Must be one of: {', '.join(SYNC_ROLES)}."
            )

        secret_data = self.get_secret(f"{self.mount_point}/sync/{role}")

        missing_fields = [f for f in REQUIRED_FIELDS if not secret_data.get(f)]
        if missing_fields:
            raise ValueError(
                f"Missing required fields in {role} secret: {', '.join(missing_fields)}"
            )

        logger.info(f"Fetched {role} credentials from Vault")

        return secret_data

    def health_check(self) -> bool:
        """
        Check if Vault is accessible and unsealed

        Returns:
            True if Vault is healthy, False otherwise
        """
        url = f"{self.vault_addr}/v1/sys/health"

        try:
            response = requests.get(url, timeout=5)
            # 200 active, 429 standby, 472 DR secondary, 473 performance standby
            return response.status_code in [200, 429, 472, 473]
        except requests.RequestException as e:
            logger.error(f"Vault health check failed: {e}")
            return False
