"""Rate limit profiles.

Profiles are keyed by endpoint class. Interactive classes share a one
minute window; GENERATION covers the expensive content-generation
endpoints and uses an hourly window.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Union

logger = logging.getLogger(__name__)


class EndpointClass(Enum):
    """Endpoint classes, also stored as ``endpoint_class`` in rate_limits."""
    PUBLIC = "PUBLIC"
    AUTHENTICATED = "AUTHENTICATED"
    ADMIN = "ADMIN"
    ROOT = "ROOT"
    GENERATION = "GENERATION"


@dataclass(frozen=True)
class RateLimitProfile:
    """Request budget for one endpoint class."""
    endpoint_class: EndpointClass
    max_requests: int
    window_seconds: int

    def __post_init__(self):
        if self.max_requests <= 0 or self.window_seconds <= 0:
            raise ValueError(
                f"Invalid profile {self.endpoint_class.value}: "
                f"{self.max_requests}/{self.window_seconds}s"
            )

    @property
    def name(self) -> str:
        return self.endpoint_class.value

    @property
    def cleanup_horizon_seconds(self) -> int:
        """Rows older than this are purged opportunistically."""
        return self.window_seconds * 2


RATE_LIMIT_PROFILES: Dict[EndpointClass, RateLimitProfile] = {
    EndpointClass.PUBLIC: RateLimitProfile(EndpointClass.PUBLIC, 60, 60),
    EndpointClass.AUTHENTICATED: RateLimitProfile(EndpointClass.AUTHENTICATED, 120, 60),
    EndpointClass.ADMIN: RateLimitProfile(EndpointClass.ADMIN, 300, 60),
    EndpointClass.ROOT: RateLimitProfile(EndpointClass.ROOT, 600, 60),
    EndpointClass.GENERATION: RateLimitProfile(EndpointClass.GENERATION, 10, 3600),
}

# Fallback for unknown profile names (most restrictive interactive profile)
DEFAULT_ENDPOINT_CLASS = EndpointClass.PUBLIC

ProfileRef = Union[str, EndpointClass, RateLimitProfile]


def get_profile(ref: ProfileRef) -> RateLimitProfile:
    """Look up a profile by name, endpoint class or profile.

    Unknown names fall back to PUBLIC and are logged.
    """
    if isinstance(ref, RateLimitProfile):
        return ref
    if isinstance(ref, EndpointClass):
        return RATE_LIMIT_PROFILES[ref]

    try:
        return RATE_LIMIT_PROFILES[EndpointClass(str(ref).upper())]
    except ValueError:
        logger.warning(
            "RATE_LIMIT_PROFILE_UNKNOWN",
            extra={"profile": str(ref), "fallback": DEFAULT_ENDPOINT_CLASS.value}
        )
        return RATE_LIMIT_PROFILES[DEFAULT_ENDPOINT_CLASS]
