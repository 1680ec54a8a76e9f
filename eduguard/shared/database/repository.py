"""Base repository pattern for database-backed stores.

Repositories translate driver errors into the repository error hierarchy
so that callers can apply their own failure policy (the rate limiter
fails open on StoreUnavailable, for instance).
"""
import logging
from contextlib import contextmanager
from typing import Iterator

import psycopg2

from .connection import ConnectionManager

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class StoreUnavailable(RepositoryError):
    """The backing store could not be reached or did not answer."""
    pass


class BaseRepository:
    """Base repository with shared connection handling.

    Subclasses issue their statements through ``_cursor()``, which
    commits on success and maps psycopg2 failures to StoreUnavailable.
    """

    def __init__(
        self,
        connection_manager: ConnectionManager,
        table_name: str,
    ):
        """Initialize repository.

        Args:
            connection_manager: Database connection manager
            table_name: Name of the database table
        """
        self.connection_manager = connection_manager
        self.table_name = table_name

        logger.info(
            "REPOSITORY_INITIALIZED",
            extra={"table_name": table_name}
        )

    @contextmanager
    def _cursor(self) -> Iterator:
        """Yield a cursor inside a committed transaction.

        Raises:
            StoreUnavailable: If the pool or the statement fails
        """
        try:
            with self.connection_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    yield cur
                conn.commit()
        except psycopg2.Error as e:
            logger.error(
                "REPOSITORY_STATEMENT_FAILED",
                extra={"table_name": self.table_name, "error": str(e)}
            )
            raise StoreUnavailable(f"{self.table_name} unavailable: {e}") from e
