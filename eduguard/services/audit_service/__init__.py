"""Audit Service: Append-only trail of analytics access.

All analytics views and exports are logged with the caller, client
details, parameters and outcome. The trail is a JSON-lines file; entries
are never modified, and the file is archived by rotation.

This service provides:
- Locked appends that never fail the caller's request
- Export and access-denied convenience records
- Recent-entries and filtered, paginated reads for the root audit viewer
- Size-based rotation invoked by an operator endpoint
"""

from .audit_logger import (
    DEFAULT_AUDIT_LOG_PATH,
    AuditAction,
    AuditEntry,
    AuditLogger,
    AuditPage,
)

__all__ = [
    "DEFAULT_AUDIT_LOG_PATH",
    "AuditAction",
    "AuditEntry",
    "AuditLogger",
    "AuditPage",
]
