"""Rate Limit Service: Sliding window request limits for analytics endpoints.

Every analytics request is counted against an (identifier, endpoint class)
pair. Identifiers are user ids for authenticated callers and client IPs
otherwise; the endpoint class follows the caller's role unless the route
pins one (GENERATION endpoints always use the hourly GENERATION profile).

This service provides:
- Static profile table (PUBLIC, AUTHENTICATED, ADMIN, ROOT, GENERATION)
- In-memory and PostgreSQL record stores
- Bearer token verification and identifier resolution
- Fail-open (configurable) sliding window enforcement
"""

from .config import (
    DEFAULT_ENDPOINT_CLASS,
    RATE_LIMIT_PROFILES,
    EndpointClass,
    RateLimitProfile,
    get_profile,
)
from .identity import (
    TokenVerifier,
    client_address,
    profile_for_role,
    resolve_endpoint_class,
    resolve_identifier,
)
from .limiter import (
    RateLimitDecision,
    RateLimitExceeded,
    SlidingWindowLimiter,
)
from .store import (
    InMemoryRateLimitStore,
    PostgresRateLimitStore,
    RateLimitRecord,
    RateLimitStore,
    WindowCount,
)

__all__ = [
    "DEFAULT_ENDPOINT_CLASS",
    "RATE_LIMIT_PROFILES",
    "EndpointClass",
    "RateLimitProfile",
    "get_profile",
    "TokenVerifier",
    "client_address",
    "profile_for_role",
    "resolve_endpoint_class",
    "resolve_identifier",
    "RateLimitDecision",
    "RateLimitExceeded",
    "SlidingWindowLimiter",
    "InMemoryRateLimitStore",
    "PostgresRateLimitStore",
    "RateLimitRecord",
    "RateLimitStore",
    "WindowCount",
]
