"""PostgreSQL access for the rate-limit store.

The limiter talks to the database on every analytics request, so the
pool is shared across request threads and statements carry a short
server-side timeout. A slow database then surfaces as an error the
limiter can fail open on, instead of a hung request.

Credentials come from the environment, or from AWS Secrets Manager
when DB_SECRET_ARN is set.
"""
import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterator, Optional

import boto3
from psycopg2 import pool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings for the rate-limit database."""
    host: str
    port: int = 5432
    database: str = "eduguard"
    username: str = ""
    password: str = ""
    min_connections: int = 2
    max_connections: int = 10
    connect_timeout: int = 5
    statement_timeout_ms: int = 2000
    ssl_mode: str = "require"

    def pool_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for psycopg2 connections."""
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.database,
            "user": self.username,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
            "sslmode": self.ssl_mode,
            "options": f"-c statement_timeout={self.statement_timeout_ms}",
        }

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Create config from environment variables.

        Environment variables:
            DB_HOST, DB_PORT, DB_NAME, DB_USER, DB_PASSWORD
            DB_MIN_CONN, DB_MAX_CONN: Pool bounds (default 2 and 10)
            DB_STATEMENT_TIMEOUT_MS: Per-statement timeout (default 2000)
            DB_SSL_MODE: libpq sslmode (default require)
        """
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "eduguard"),
            username=os.getenv("DB_USER", ""),
            password=os.getenv("DB_PASSWORD", ""),
            min_connections=int(os.getenv("DB_MIN_CONN", "2")),
            max_connections=int(os.getenv("DB_MAX_CONN", "10")),
            statement_timeout_ms=int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "2000")),
            ssl_mode=os.getenv("DB_SSL_MODE", "require"),
        )

    @classmethod
    def from_secrets_manager(cls, secret_arn: str, region: str = "us-east-1") -> "DatabaseConfig":
        """Environment config with host and credentials from a secret.

        The secret is the standard RDS JSON document (host, port, dbname,
        username, password). Fields it omits keep their environment value.
        """
        try:
            client = boto3.client("secretsmanager", region_name=region)
            secret = json.loads(client.get_secret_value(SecretId=secret_arn)["SecretString"])
        except Exception as e:
            logger.error(
                "DB_SECRET_LOAD_FAILED",
                extra={"secret_arn": secret_arn, "region": region, "error": str(e)}
            )
            raise

        base = cls.from_env()
        return replace(
            base,
            host=secret.get("host", base.host),
            port=int(secret.get("port", base.port)),
            database=secret.get("dbname", base.database),
            username=secret.get("username", base.username),
            password=secret.get("password", base.password),
        )

    @classmethod
    def load(cls) -> "DatabaseConfig":
        """Secrets Manager when DB_SECRET_ARN is set, else the environment."""
        secret_arn = os.getenv("DB_SECRET_ARN")
        if secret_arn:
            return cls.from_secrets_manager(secret_arn, os.getenv("AWS_REGION", "us-east-1"))
        return cls.from_env()


class ConnectionManager:
    """Lazily created ThreadedConnectionPool shared by request threads."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._pool: Optional[pool.ThreadedConnectionPool] = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    def initialize(self) -> None:
        """Open the pool; concurrent first callers open it once.

        Raises:
            psycopg2.Error: If the initial connections cannot be made
        """
        with self._lock:
            if self._pool is not None:
                return
            try:
                self._pool = pool.ThreadedConnectionPool(
                    self.config.min_connections,
                    self.config.max_connections,
                    **self.config.pool_kwargs(),
                )
            except Exception as e:
                logger.error(
                    "DB_POOL_OPEN_FAILED",
                    extra={"host": self.config.host, "error": str(e)}
                )
                raise

        logger.info(
            "DB_POOL_OPENED",
            extra={
                "host": self.config.host,
                "database": self.config.database,
                "max_connections": self.config.max_connections,
            }
        )

    @contextmanager
    def get_connection(self) -> Iterator[Any]:
        """Borrow a connection; it is rolled back if the block raises."""
        if self._pool is None:
            self.initialize()

        conn = self._pool.getconn()
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)

    def health_check(self) -> Dict[str, Any]:
        """Round-trip ``SELECT 1`` for the readiness probe."""
        if self._pool is None:
            return {"healthy": False, "status": "not_initialized"}

        started = time.perf_counter()
        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()
        except Exception as e:
            logger.error("DB_HEALTH_CHECK_FAILED", extra={"error": str(e)})
            return {"healthy": False, "status": "error", "error": str(e)}

        return {
            "healthy": True,
            "status": "connected",
            "latency_ms": round((time.perf_counter() - started) * 1000, 1),
        }

    def close(self) -> None:
        with self._lock:
            if self._pool is None:
                return
            self._pool.closeall()
            self._pool = None
        logger.info("DB_POOL_CLOSED")


_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    """Process-wide manager, configured by DatabaseConfig.load()."""
    global _connection_manager

    if _connection_manager is None:
        _connection_manager = ConnectionManager(DatabaseConfig.load())

    return _connection_manager
