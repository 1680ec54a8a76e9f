"""Tests for the rate-limit database connection manager."""
import json

import pytest
from unittest.mock import MagicMock, patch

from eduguard.shared.database.connection import (
    DatabaseConfig,
    ConnectionManager,
)


@pytest.fixture
def mock_pool():
    """Patch psycopg2's pool so no server is needed."""
    with patch("eduguard.shared.database.connection.pool.ThreadedConnectionPool") as pool_cls:
        pool_instance = MagicMock()
        pool_cls.return_value = pool_instance
        yield pool_cls, pool_instance


def secrets_client(secret=None, error=None):
    client = MagicMock()
    if error is not None:
        client.get_secret_value.side_effect = error
    else:
        client.get_secret_value.return_value = {"SecretString": json.dumps(secret)}
    return client


class TestDatabaseConfig:
    """Tests for DatabaseConfig."""

    def test_pool_kwargs_carry_statement_timeout(self):
        config = DatabaseConfig(host="db", statement_timeout_ms=500)

        kwargs = config.pool_kwargs()

        assert kwargs["host"] == "db"
        assert kwargs["dbname"] == "eduguard"
        assert kwargs["sslmode"] == "require"
        assert kwargs["options"] == "-c statement_timeout=500"

    def test_from_env(self):
        with patch.dict("os.environ", {
            "DB_HOST": "env-host",
            "DB_PORT": "5434",
            "DB_NAME": "env_db",
            "DB_USER": "env_user",
            "DB_MAX_CONN": "20",
            "DB_STATEMENT_TIMEOUT_MS": "750",
        }, clear=True):
            config = DatabaseConfig.from_env()

        assert config.host == "env-host"
        assert config.port == 5434
        assert config.database == "env_db"
        assert config.username == "env_user"
        assert config.max_connections == 20
        assert config.statement_timeout_ms == 750

    def test_from_secrets_manager_overrides_env(self):
        client = secrets_client({"host": "db.internal", "port": 6543, "username": "svc", "password": "s3cret"})

        with patch.dict("os.environ", {"DB_NAME": "limits", "DB_MAX_CONN": "4"}, clear=True):
            with patch("eduguard.shared.database.connection.boto3.client", return_value=client):
                config = DatabaseConfig.from_secrets_manager("arn:aws:secretsmanager:x")

        assert config.host == "db.internal"
        assert config.port == 6543
        assert config.username == "svc"
        assert config.database == "limits"
        assert config.max_connections == 4

    def test_from_secrets_manager_propagates_errors(self):
        client = secrets_client(error=RuntimeError("access denied"))

        with patch("eduguard.shared.database.connection.boto3.client", return_value=client):
            with pytest.raises(RuntimeError):
                DatabaseConfig.from_secrets_manager("arn:aws:secretsmanager:x")

    def test_load_prefers_secret(self):
        client = secrets_client({"host": "db.internal"})

        with patch.dict("os.environ", {"DB_SECRET_ARN": "arn:x", "DB_HOST": "env-host"}, clear=True):
            with patch("eduguard.shared.database.connection.boto3.client", return_value=client) as factory:
                config = DatabaseConfig.load()

        assert config.host == "db.internal"
        factory.assert_called_once_with("secretsmanager", region_name="us-east-1")

    def test_load_from_env(self):
        with patch.dict("os.environ", {"DB_HOST": "env-host"}, clear=True):
            assert DatabaseConfig.load().host == "env-host"


class TestConnectionManager:
    """Tests for ConnectionManager."""

    def test_pool_opened_lazily(self, mock_pool):
        pool_cls, _ = mock_pool
        manager = ConnectionManager(DatabaseConfig(host="localhost"))

        assert manager.is_open is False
        pool_cls.assert_not_called()

    def test_initialize_once(self, mock_pool):
        pool_cls, _ = mock_pool
        manager = ConnectionManager(DatabaseConfig(host="db", max_connections=4))

        manager.initialize()
        manager.initialize()

        pool_cls.assert_called_once()
        assert pool_cls.call_args.args == (2, 4)
        assert pool_cls.call_args.kwargs["options"] == "-c statement_timeout=2000"

    def test_initialize_failure_propagates(self, mock_pool):
        pool_cls, _ = mock_pool
        pool_cls.side_effect = RuntimeError("connection refused")
        manager = ConnectionManager(DatabaseConfig(host="db"))

        with pytest.raises(RuntimeError):
            manager.initialize()

        assert manager.is_open is False

    def test_get_connection_returns_to_pool(self, mock_pool):
        _, pool_instance = mock_pool
        conn = MagicMock()
        pool_instance.getconn.return_value = conn
        manager = ConnectionManager(DatabaseConfig(host="localhost"))

        with manager.get_connection() as borrowed:
            assert borrowed is conn

        pool_instance.putconn.assert_called_once_with(conn)

    def test_get_connection_rolls_back_on_error(self, mock_pool):
        _, pool_instance = mock_pool
        conn = MagicMock()
        pool_instance.getconn.return_value = conn
        manager = ConnectionManager(DatabaseConfig(host="localhost"))

        with pytest.raises(ValueError):
            with manager.get_connection():
                raise ValueError("boom")

        conn.rollback.assert_called_once()
        pool_instance.putconn.assert_called_once_with(conn)

    def test_health_check_not_initialized(self):
        manager = ConnectionManager(DatabaseConfig(host="localhost"))

        assert manager.health_check() == {"healthy": False, "status": "not_initialized"}

    def test_health_check_connected(self, mock_pool):
        manager = ConnectionManager(DatabaseConfig(host="localhost"))
        manager.initialize()

        health = manager.health_check()

        assert health["healthy"] is True
        assert health["status"] == "connected"
        assert health["latency_ms"] >= 0

    def test_health_check_error(self, mock_pool):
        _, pool_instance = mock_pool
        pool_instance.getconn.side_effect = RuntimeError("pool exhausted")
        manager = ConnectionManager(DatabaseConfig(host="localhost"))
        manager.initialize()

        health = manager.health_check()

        assert health["healthy"] is False
        assert "pool exhausted" in health["error"]

    def test_close(self, mock_pool):
        _, pool_instance = mock_pool
        manager = ConnectionManager(DatabaseConfig(host="localhost"))
        manager.initialize()

        manager.close()
        manager.close()

        pool_instance.closeall.assert_called_once()
        assert manager.is_open is False
