"""
Unit tests for src/utils/vault_client.py

Covers initialization, KV v2 secret retrieval, sync credential fetching,
and health checks.
"""

from unittest.mock import Mock, patch

import pytest
import requests

from src.utils.vault_client import VaultClient


def vault_response(status_code=200, data=None):
    response = Mock()
    response.status_code = status_code
    response.json.return_value = {"data": {"data": data or {}}}
    if status_code >= 400 and status_code != 404:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    return response


@pytest.fixture
def client():
    return VaultClient(vault_addr="https://vault.example.com/", vault_token="test-token-123")


class TestVaultClientInit:
    """Test VaultClient initialization scenarios"""

    def test_init_with_explicit_parameters(self, client):
        """Test initialization with explicitly provided parameters"""
        assert client.vault_addr == "https://vault.example.com"
        assert client.headers == {
            "X-Vault-Token": "test-token-123",
            "Content-Type": "application/json",
        }

    def test_init_with_env_variables(self, monkeypatch):
        monkeypatch.setenv("VAULT_ADDR", "https://vault.env.com")
        monkeypatch.setenv("VAULT_TOKEN", "env-token-456")
        monkeypatch.setenv("VAULT_NAMESPACE", "sync")

        client = VaultClient()

        assert client.vault_addr == "https://vault.env.com"
        assert client.headers["X-Vault-Namespace"] == "sync"

    def test_init_missing_vault_addr_raises_error(self, monkeypatch):
        monkeypatch.delenv("VAULT_ADDR", raising=False)

        with pytest.raises(ValueError, match="Vault address not provided"):
            VaultClient(vault_token="token")

    def test_init_missing_vault_token_raises_error(self, monkeypatch):
        monkeypatch.delenv("VAULT_TOKEN", raising=False)

        with pytest.raises(ValueError, match="Vault token not provided"):
            VaultClient(vault_addr="https://vault.example.com")


class TestGetSecret:
    """Test KV v2 reads"""

    @patch("src.utils.vault_client.requests.get")
    def test_data_segment_inserted(self, mock_get, client):
        mock_get.return_value = vault_response(data={"url": "postgresql://db/app"})

        data = client.get_secret("secret/sync/source")

        assert data == {"url": "postgresql://db/app"}
        assert mock_get.call_args[0][0] == "https://vault.example.com/v1/secret/data/sync/source"
        assert mock_get.call_args[1]["timeout"] == 10

    @patch("src.utils.vault_client.requests.get")
    def test_explicit_data_path_kept(self, mock_get, client):
        mock_get.return_value = vault_response(data={"k": "v"})

        client.get_secret("secret/data/sync/target")

        assert mock_get.call_args[0][0] == "https://vault.example.com/v1/secret/data/sync/target"

    @pytest.mark.parametrize("path", ["", "secret/../sys", "//secret", "secret/sync;rm"])
    def test_invalid_paths(self, client, path):
        with pytest.raises(ValueError):
            client.get_secret(path)

    @patch("src.utils.vault_client.requests.get")
    def test_not_found(self, mock_get, client):
        mock_get.return_value = vault_response(status_code=404)

        with pytest.raises(ValueError, match="Secret not found"):
            client.get_secret("secret/sync/source")

    @patch("src.utils.vault_client.requests.get")
    def test_empty_secret(self, mock_get, client):
        mock_get.return_value = vault_response(data={})

        with pytest.raises(ValueError, match="No data found"):
            client.get_secret("secret/sync/source")

    @patch("src.utils.vault_client.requests.get")
    def test_server_error(self, mock_get, client):
        mock_get.return_value = vault_response(status_code=503)

        with pytest.raises(requests.HTTPError):
            client.get_secret("secret/sync/source")

        assert mock_get.call_count == 1

    @pytest.mark.slow
    @patch("src.utils.vault_client.requests.get")
    def test_transport_error_retried(self, mock_get, client):
        mock_get.side_effect = [
            requests.ConnectionError("reset by peer"),
            vault_response(data={"url": "postgresql://db/app"}),
        ]

        data = client.get_secret("secret/sync/source")

        assert data == {"url": "postgresql://db/app"}
        assert mock_get.call_count == 2


class TestGetSyncCredentials:
    """Test source/target credential fetching"""

    @patch("src.utils.vault_client.requests.get")
    def test_source_credentials(self, mock_get, client):
        mock_get.return_value = vault_response(data={
            "url": "postgresql://source.example/app",
            "service_key": "source-key",
        })

        credentials = client.get_sync_credentials("source")

        assert credentials["service_key"] == "source-key"
        assert mock_get.call_args[0][0].endswith("/v1/secret/data/sync/source")

    @patch("src.utils.vault_client.requests.get")
    def test_custom_mount_point(self, mock_get):
        client = VaultClient(vault_addr="https://vault.example.com", vault_token="t", mount_point="kv")
        mock_get.return_value = vault_response(data={"url": "u", "service_key": "k"})

        client.get_sync_credentials("target")

        assert mock_get.call_args[0][0].endswith("/v1/kv/data/sync/target")

    def test_unknown_role(self, client):
        with pytest.raises(ValueError, match="Unsupported role"):
            client.get_sync_credentials("replica")

    @patch("src.utils.vault_client.requests.get")
    def test_missing_fields(self, mock_get, client):
        mock_get.return_value = vault_response(data={"url": "postgresql://target.example/app"})

        with pytest.raises(ValueError, match="service_key"):
            client.get_sync_credentials("target")


class TestHealthCheck:
    @pytest.mark.parametrize("status_code,healthy", [
        (200, True),
        (429, True),
        (503, False),
    ])
    @patch("src.utils.vault_client.requests.get")
    def test_status_codes(self, mock_get, client, status_code, healthy):
        mock_get.return_value = Mock(status_code=status_code)

        assert client.health_check() is healthy

    @patch("src.utils.vault_client.requests.get")
    def test_connection_error(self, mock_get, client):
        mock_get.side_effect = requests.ConnectionError("refused")

        assert client.health_check() is False
