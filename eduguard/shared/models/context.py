"""Per-request context threaded through the analytics gateway.

Each request gets its own RequestContext. Nothing about the caller or
the enforcement state of the request lives in module or process globals,
so the pipeline behaves the same under threaded, multi-process or
async workers.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Role(Enum):
    """Caller roles known to the enforcement layer."""
    ROOT = "root"
    ADMIN = "admin"
    STUDENT = "student"
    ANONYMOUS = "anonymous"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Role":
        """Map a role claim to a Role.

        Unknown non-empty roles are ordinary authenticated users.
        """
        if not value:
            return cls.ANONYMOUS
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.STUDENT


@dataclass(frozen=True)
class Principal:
    """An authenticated caller, taken from a verified token or session."""
    user_id: str
    role: Role = Role.STUDENT


@dataclass
class RequestContext:
    """Everything the enforcement layer knows about one request.

    Attributes:
        endpoint: Endpoint label used in logs and audit entries
        principal: Authenticated caller, None for anonymous requests
        client_ip: Resolved client address
        user_agent: User-Agent header value
        method: HTTP method
        parameters: Request parameters recorded in the audit entry
        headers: Request headers used for identifier resolution
        remote_addr: Peer address of the connection
        explicit_identifier: Rate-limit identifier forced by the route
        rate_limited: Set once the limiter has run for this request
        rate_limit_exempt: Skip rate limiting for this endpoint
        rate_limit_decision: Decision from the limiter run, reused for headers
    """
    endpoint: str
    principal: Optional[Principal] = None
    client_ip: str = "unknown"
    user_agent: str = "unknown"
    method: str = "unknown"
    parameters: Dict[str, Any] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    remote_addr: Optional[str] = None
    explicit_identifier: Optional[str] = None
    rate_limited: bool = False
    rate_limit_exempt: bool = False
    rate_limit_decision: Optional[Any] = None

    @property
    def is_authenticated(self) -> bool:
        return self.principal is not None

    @property
    def role(self) -> Role:
        return self.principal.role if self.principal else Role.ANONYMOUS

    @property
    def user_id(self) -> str:
        """User id for audit entries ('anonymous' when unauthenticated)."""
        return self.principal.user_id if self.principal else "anonymous"
