"""Database connection management for eduguard stores.

Provides connection pooling, health checks, and the repository base class
used by the PostgreSQL-backed rate-limit store.
"""

from .connection import (
    DatabaseConfig,
    ConnectionManager,
    get_connection_manager,
)
from .repository import (
    BaseRepository,
    RepositoryError,
    StoreUnavailable,
)

__all__ = [
    "DatabaseConfig",
    "ConnectionManager",
    "get_connection_manager",
    "BaseRepository",
    "RepositoryError",
    "StoreUnavailable",
]
