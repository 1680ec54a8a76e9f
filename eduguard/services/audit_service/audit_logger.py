"""Audit logger - append-only trail of analytics access.

Every analytics request and export emits one JSON line to the audit file.
Entries are never modified or deleted individually; the file is archived
(renamed) on rotation.

Writes take an exclusive advisory lock so concurrent workers cannot
interleave partial lines. Readers do not lock and skip any line they
cannot parse, such as a line truncated by a crash mid-write.

Appending never raises: a failed write is logged and the request carries on.
"""
import fcntl
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Union

from eduguard.shared.models import RequestContext
from eduguard.shared.utils import is_pii_salt_configured, log_safe_identifier

logger = logging.getLogger(__name__)

# One-line mirror of every entry in the general-purpose log
mirror_logger = logging.getLogger("eduguard.audit.mirror")

DEFAULT_AUDIT_LOG_PATH = "/tmp/analytics_audit.log"

# Rotation threshold (10 MB)
ROTATION_BYTES = 10 * 1024 * 1024

MAX_QUERY_LIMIT = 1000

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class AuditAction(Enum):
    """Actions recorded in the analytics audit trail."""
    VIEW = "view"
    QUERY = "query"
    EXPORT = "export"
    ACCESS_DENIED = "access_denied"

    # Operator actions on the trail itself
    VIEW_LOGS = "view_logs"
    ROTATE_LOGS = "rotate_logs"


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit log entry.

    Serialized as one JSON line:
    {timestamp, iso_timestamp, endpoint, action, user_id, user_role,
    client_ip, user_agent, request_method, parameters, success, metadata}
    """
    timestamp: datetime
    endpoint: str
    action: str
    user_id: str
    role: str
    client_ip: str = "unknown"
    user_agent: str = "unknown"
    method: str = "unknown"
    parameters: Dict[str, Any] = field(default_factory=dict)
    success: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the audit line schema."""
        return {
            "timestamp": self.timestamp.strftime(TIMESTAMP_FORMAT),
            "iso_timestamp": self.timestamp.isoformat(),
            "endpoint": self.endpoint,
            "action": self.action,
            "user_id": self.user_id,
            "user_role": self.role,
            "client_ip": self.client_ip,
            "user_agent": self.user_agent,
            "request_method": self.method,
            "parameters": self.parameters,
            "success": self.success,
            "metadata": self.metadata,
        }

    def to_log_line(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        """Rebuild an entry from a parsed audit line.

        Raises:
            ValueError: If the line has no usable timestamp
        """
        if "iso_timestamp" in data:
            timestamp = datetime.fromisoformat(str(data["iso_timestamp"]))
        elif "timestamp" in data:
            timestamp = datetime.strptime(str(data["timestamp"]), TIMESTAMP_FORMAT)
        else:
            raise ValueError("Audit line has no timestamp")
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)

        return cls(
            timestamp=timestamp,
            endpoint=data.get("endpoint", "unknown"),
            action=data.get("action", "unknown"),
            user_id=str(data.get("user_id", "unknown")),
            role=data.get("user_role", "unknown"),
            client_ip=data.get("client_ip", "unknown"),
            user_agent=data.get("user_agent", "unknown"),
            method=data.get("request_method", "unknown"),
            parameters=data.get("parameters") or {},
            success=bool(data.get("success", True)),
            metadata=data.get("metadata") or {},
        )


@dataclass(frozen=True)
class AuditPage:
    """One page of a filtered audit query."""
    entries: List[AuditEntry]
    total_matched: int
    limit: int
    offset: int
    endpoints: Set[str] = field(default_factory=set)
    actions: Set[str] = field(default_factory=set)

    @property
    def has_more(self) -> bool:
        return self.total_matched > self.offset + self.limit


def _days_between(start: Optional[str], end: Optional[str]) -> Optional[int]:
    if not start or not end:
        return None
    try:
        return (datetime.fromisoformat(str(end)) - datetime.fromisoformat(str(start))).days
    except ValueError:
        return None


class AuditLogger:
    """Append-only JSON-lines audit sink with reader and rotation."""

    def __init__(
        self,
        path: str = DEFAULT_AUDIT_LOG_PATH,
        rotation_bytes: int = ROTATION_BYTES,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize audit logger.

        Args:
            path: Audit file location
            rotation_bytes: Size above which rotation is due
            clock: Returns the current aware UTC datetime (injected for testing)
        """
        self.path = path
        self.rotation_bytes = rotation_bytes
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        logger.info(
            "AUDIT_LOGGER_INITIALIZED",
            extra={"audit_path": path, "rotation_bytes": rotation_bytes}
        )

    def append(self, entry: AuditEntry) -> bool:
        """Write one entry.

        Returns:
            True if the line was written

        Logs:
            - AUDIT_LOG_WRITE_FAILED: If the file could not be written
            - ANALYTICS_AUDIT: Mirror line for every entry
        """
        written = False
        try:
            line = entry.to_log_line()
            with open(self.path, "a", encoding="utf-8") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                try:
                    f.write(line + "\n")
                    f.flush()
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
            written = True
        except (OSError, TypeError, ValueError) as e:
            logger.error(
                "AUDIT_LOG_WRITE_FAILED",
                extra={"endpoint": entry.endpoint, "audit_path": self.path, "error": str(e)}
            )

        self._mirror(entry)
        return written

    def record(
        self,
        endpoint: str,
        action: Union[AuditAction, str],
        user_id: str,
        role: str,
        parameters: Optional[Dict[str, Any]] = None,
        success: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
        ctx: Optional[RequestContext] = None,
    ) -> AuditEntry:
        """Build and append an entry.

        Client details (address, user agent, method) come from ``ctx``.

        Returns:
            The appended AuditEntry
        """
        entry = AuditEntry(
            timestamp=self._clock(),
            endpoint=endpoint,
            action=action.value if isinstance(action, AuditAction) else str(action),
            user_id=str(user_id),
            role=role,
            client_ip=ctx.client_ip if ctx else "unknown",
            user_agent=ctx.user_agent if ctx else "unknown",
            method=ctx.method if ctx else "unknown",
            parameters=dict(parameters or {}),
            success=success,
            metadata=dict(metadata or {}),
        )
        self.append(entry)
        return entry

    def log_access(
        self,
        ctx: RequestContext,
        action: Union[AuditAction, str] = AuditAction.VIEW,
        success: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Record an analytics request."""
        return self.record(
            endpoint=ctx.endpoint,
            action=action,
            user_id=ctx.user_id,
            role=ctx.role.value,
            parameters=ctx.parameters,
            success=success,
            metadata=metadata,
            ctx=ctx,
        )

    def log_export(
        self,
        dataset: str,
        format: str,
        user_id: str,
        date_range: Dict[str, Optional[str]],
        record_count: int,
        success: bool = True,
        ctx: Optional[RequestContext] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Record a bulk export.

        Args:
            dataset: Dataset exported
            format: Export format (json, csv)
            user_id: Exporting user
            date_range: {"start": date, "end": date}
            record_count: Number of rows exported
            success: Whether the export succeeded
            ctx: Request context for client details
            metadata: Extra metadata, e.g. the failure reason
        """
        start = date_range.get("start")
        end = date_range.get("end")
        return self.record(
            endpoint="admin_analytics_export",
            action=AuditAction.EXPORT,
            user_id=user_id,
            role=ctx.role.value if ctx else "admin",
            parameters={
                "dataset": dataset,
                "format": format,
                "start_date": start,
                "end_date": end,
            },
            success=success,
            metadata={
                **(metadata or {}),
                "record_count": record_count,
                "date_range_days": _days_between(start, end),
            },
            ctx=ctx,
        )

    def log_access_failure(
        self,
        endpoint: str,
        reason: str,
        user_id: str = "anonymous",
        ctx: Optional[RequestContext] = None,
    ) -> AuditEntry:
        """Record a refused request (rate limited, blocked, unauthorized)."""
        return self.record(
            endpoint=endpoint,
            action=AuditAction.ACCESS_DENIED,
            user_id=user_id,
            role=ctx.role.value if ctx else "unknown",
            parameters=ctx.parameters if ctx else None,
            success=False,
            metadata={"failure_reason": reason},
            ctx=ctx,
        )

    def recent(self, limit: int = 100) -> List[AuditEntry]:
        """Last ``limit`` valid entries, most recent first."""
        if limit <= 0:
            return []

        entries: List[AuditEntry] = []
        for line in reversed(self._read_lines()):
            entry = self._parse(line)
            if entry is not None:
                entries.append(entry)
                if len(entries) >= limit:
                    break
        return entries

    def query(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        endpoint: Optional[str] = None,
        action: Optional[str] = None,
        success: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> AuditPage:
        """Filtered, paginated read in chronological order.

        Args:
            start: Earliest timestamp (inclusive)
            end: Latest timestamp (inclusive)
            endpoint: Exact endpoint label
            action: Exact action
            success: Success flag
            limit: Page size, capped at 1000
            offset: Matches to skip

        Returns:
            AuditPage with the page, total match count and the endpoints
            and actions present in the file
        """
        limit = max(0, min(int(limit), MAX_QUERY_LIMIT))
        offset = max(0, int(offset))

        page: List[AuditEntry] = []
        total = 0
        endpoints: Set[str] = set()
        actions: Set[str] = set()

        for line in self._read_lines():
            entry = self._parse(line)
            if entry is None:
                continue
            endpoints.add(entry.endpoint)
            actions.add(entry.action)

            if start is not None and entry.timestamp < start:
                continue
            if end is not None and entry.timestamp > end:
                continue
            if endpoint and entry.endpoint != endpoint:
                continue
            if action and entry.action != action:
                continue
            if success is not None and entry.success != success:
                continue

            total += 1
            if total > offset and len(page) < limit:
                page.append(entry)

        return AuditPage(
            entries=page,
            total_matched=total,
            limit=limit,
            offset=offset,
            endpoints=endpoints,
            actions=actions,
        )

    def needs_rotation(self) -> bool:
        try:
            return os.path.getsize(self.path) > self.rotation_bytes
        except OSError:
            return False

    def rotate(self) -> Optional[str]:
        """Archive the active file.

        Renames it to ``<path>.<YYYY-mm-dd-HHMMSS>.archive``; the next
        append starts a new file.

        Returns:
            Archive path, or None if there was nothing to rotate or the
            rename failed
        """
        if not os.path.exists(self.path):
            return None

        archive_path = f"{self.path}.{self._clock():%Y-%m-%d-%H%M%S}.archive"
        try:
            os.rename(self.path, archive_path)
        except OSError as e:
            logger.error(
                "AUDIT_LOG_ROTATION_FAILED",
                extra={"audit_path": self.path, "error": str(e)}
            )
            return None

        logger.info("AUDIT_LOG_ROTATED", extra={"archive_path": archive_path})
        return archive_path

    def _read_lines(self) -> List[str]:
        try:
            with open(self.path, "r", encoding="utf-8", errors="replace") as f:
                return [line for line in f.read().splitlines() if line.strip()]
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.error(
                "AUDIT_LOG_READ_FAILED",
                extra={"audit_path": self.path, "error": str(e)}
            )
            return []

    @staticmethod
    def _parse(line: str) -> Optional[AuditEntry]:
        try:
            data = json.loads(line)
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        try:
            return AuditEntry.from_dict(data)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _mirror(entry: AuditEntry) -> None:
        user = log_safe_identifier(entry.user_id) if is_pii_salt_configured() else "redacted"
        mirror_logger.info(
            "ANALYTICS_AUDIT | Endpoint: %s | Action: %s | User: %s (%s) | Success: %s",
            entry.endpoint,
            entry.action,
            user,
            entry.role,
            "YES" if entry.success else "NO",
        )
