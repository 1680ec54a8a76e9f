"""Rate limit record storage.

One row is written per accepted request and rows are aggregated with a
count over a time range; there is no incrementing counter column.
Rows are only ever inserted or deleted.

Backends:
- InMemoryRateLimitStore: single-process deployments and tests
- PostgresRateLimitStore: shared ``rate_limits`` table for multi-worker
  deployments

Schema (PostgreSQL):

    CREATE TABLE rate_limits (
        id BIGSERIAL PRIMARY KEY,
        identifier VARCHAR(255) NOT NULL,
        endpoint_class VARCHAR(32) NOT NULL,
        window_start TIMESTAMPTZ NOT NULL
    );
    CREATE INDEX idx_rate_limits_lookup
        ON rate_limits (identifier, endpoint_class, window_start);
"""
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from eduguard.shared.database import BaseRepository, ConnectionManager
from .config import EndpointClass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitRecord:
    """One accepted request."""
    identifier: str
    endpoint_class: EndpointClass
    window_start: datetime


@dataclass(frozen=True)
class WindowCount:
    """Requests found in a window and the oldest of them."""
    count: int
    oldest: Optional[datetime] = None


class RateLimitStore(ABC):
    """Persistence contract used by the sliding window limiter.

    Implementations raise StoreUnavailable (or let a driver error
    escape) when the backend cannot be reached; the limiter owns the
    failure policy.
    """

    @abstractmethod
    def count_since(
        self,
        identifier: str,
        endpoint_class: EndpointClass,
        since: datetime,
    ) -> WindowCount:
        """Count records at or after ``since``."""

    @abstractmethod
    def record(self, record: RateLimitRecord) -> None:
        """Insert one record."""

    @abstractmethod
    def purge_before(
        self,
        identifier: str,
        endpoint_class: EndpointClass,
        cutoff: datetime,
    ) -> int:
        """Delete records of the pair older than ``cutoff``.

        Returns:
            Number of deleted records
        """


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local store.

    The lock only protects the dict itself; count-then-insert in the
    limiter is still two separate calls.
    """

    def __init__(self):
        self._records: Dict[Tuple[str, EndpointClass], List[datetime]] = defaultdict(list)
        self._lock = threading.Lock()

        logger.info("RATE_LIMIT_STORE_INITIALIZED", extra={"backend": "memory"})

    def count_since(self, identifier, endpoint_class, since) -> WindowCount:
        with self._lock:
            in_window = [
                ts for ts in self._records.get((identifier, endpoint_class), [])
                if ts >= since
            ]
        if not in_window:
            return WindowCount(count=0)
        return WindowCount(count=len(in_window), oldest=min(in_window))

    def record(self, record: RateLimitRecord) -> None:
        with self._lock:
            self._records[(record.identifier, record.endpoint_class)].append(
                record.window_start
            )

    def purge_before(self, identifier, endpoint_class, cutoff) -> int:
        key = (identifier, endpoint_class)
        with self._lock:
            existing = self._records.get(key)
            if not existing:
                return 0
            kept = [ts for ts in existing if ts >= cutoff]
            removed = len(existing) - len(kept)
            if kept:
                self._records[key] = kept
            else:
                del self._records[key]
        return removed

    def __len__(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._records.values())


class PostgresRateLimitStore(BaseRepository, RateLimitStore):
    """Store backed by the shared ``rate_limits`` table."""

    def __init__(
        self,
        connection_manager: ConnectionManager,
        table_name: str = "rate_limits",
    ):
        super().__init__(connection_manager, table_name)

    def count_since(self, identifier, endpoint_class, since) -> WindowCount:
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT COUNT(*), MIN(window_start)
                FROM {self.table_name}
                WHERE identifier = %s
                  AND endpoint_class = %s
                  AND window_start >= %s
                """,
                (identifier, endpoint_class.value, since),
            )
            row = cur.fetchone()

        if not row or not row[0]:
            return WindowCount(count=0)
        return WindowCount(count=int(row[0]), oldest=row[1])

    def record(self, record: RateLimitRecord) -> None:
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {self.table_name} (identifier, endpoint_class, window_start)
                VALUES (%s, %s, %s)
                """,
                (record.identifier, record.endpoint_class.value, record.window_start),
            )

    def purge_before(self, identifier, endpoint_class, cutoff) -> int:
        with self._cursor() as cur:
            cur.execute(
                f"""
                DELETE FROM {self.table_name}
                WHERE identifier = %s
                  AND endpoint_class = %s
                  AND window_start < %s
                """,
                (identifier, endpoint_class.value, cutoff),
            )
            deleted = cur.rowcount

        if deleted:
            logger.debug(
                "RATE_LIMIT_RECORDS_PURGED",
                extra={"endpoint_class": endpoint_class.value, "deleted": deleted}
            )
        return deleted
