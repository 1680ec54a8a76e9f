"""Caller identity for rate limiting.

Resolves who is calling (principal from a verified Bearer token) and
which key the limiter counts against.
"""
import logging
from typing import Mapping, Optional

import jwt

from eduguard.shared.models import Principal, RequestContext, Role
from eduguard.shared.utils import log_safe_identifier
from .config import EndpointClass

logger = logging.getLogger(__name__)

USER_ID_CLAIMS = ("user_id", "userId", "sub")
DEFAULT_ROLE_CLAIM = "student"


class TokenVerifier:
    """Verifies ``Authorization: Bearer <jwt>`` headers with PyJWT.

    Invalid, expired or unsigned tokens resolve to no principal; the
    request is then treated as anonymous (or falls back to the session).
    """

    def __init__(self, secret: Optional[str], algorithm: str = "HS256"):
        self.secret = secret
        self.algorithm = algorithm

    @property
    def enabled(self) -> bool:
        return bool(self.secret)

    def verify(self, token: str) -> Optional[Principal]:
        """Decode a token into a Principal.

        Args:
            token: Encoded JWT

        Returns:
            Principal, or None if the token is invalid or has no user claim
        """
        if not self.enabled or not token:
            return None

        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            logger.info("AUTH_TOKEN_EXPIRED")
            return None
        except jwt.InvalidTokenError as e:
            logger.warning("AUTH_TOKEN_INVALID", extra={"error": str(e)})
            return None

        user_id = next(
            (claims[c] for c in USER_ID_CLAIMS if claims.get(c) not in (None, "")),
            None,
        )
        if user_id is None:
            logger.warning("AUTH_TOKEN_MISSING_USER_CLAIM")
            return None

        return Principal(
            user_id=str(user_id),
            role=Role.parse(claims.get("role") or DEFAULT_ROLE_CLAIM),
        )

    def from_headers(self, headers: Mapping[str, str]) -> Optional[Principal]:
        """Extract and verify a Bearer token from request headers."""
        auth = headers.get("Authorization") or ""
        scheme, _, token = auth.partition(" ")
        if scheme.lower() != "bearer":
            return None
        return self.verify(token.strip())


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        # Plain dicts in tests are case-sensitive
        value = next(
            (v for k, v in headers.items() if k.lower() == name.lower()),
            None,
        )
    return value.strip() if value and value.strip() else None


def client_address(headers: Mapping[str, str], remote_addr: Optional[str]) -> Optional[str]:
    """First X-Forwarded-For entry, X-Real-IP, then the peer address."""
    forwarded = _header(headers, "X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = _header(headers, "X-Real-IP")
    if real_ip:
        return real_ip

    return remote_addr or None


def resolve_identifier(ctx: RequestContext) -> str:
    """Key the limiter counts requests against.

    Precedence: explicit identifier, authenticated principal id, first
    X-Forwarded-For entry, X-Real-IP, peer address, then "unknown".
    """
    if ctx.explicit_identifier:
        return ctx.explicit_identifier

    if ctx.principal is not None:
        return ctx.principal.user_id

    address = client_address(ctx.headers, ctx.remote_addr)
    if address:
        return address

    logger.warning(
        "RATE_LIMIT_IDENTIFIER_UNKNOWN",
        extra={"endpoint": ctx.endpoint}
    )
    return "unknown"


def profile_for_role(role: Role) -> EndpointClass:
    """Map a caller role to its interactive endpoint class."""
    if role is Role.ROOT:
        return EndpointClass.ROOT
    if role is Role.ADMIN:
        return EndpointClass.ADMIN
    if role is Role.ANONYMOUS:
        return EndpointClass.PUBLIC
    return EndpointClass.AUTHENTICATED


def resolve_endpoint_class(
    ctx: RequestContext,
    endpoint_class: Optional[EndpointClass] = None,
) -> EndpointClass:
    """Endpoint class for a request.

    GENERATION endpoints always use the GENERATION profile. Other
    explicit classes pin the profile; otherwise it follows the role.
    """
    if endpoint_class is not None:
        return endpoint_class

    detected = profile_for_role(ctx.role)
    logger.debug(
        "RATE_LIMIT_PROFILE_DETECTED",
        extra={
            "endpoint": ctx.endpoint,
            "endpoint_class": detected.value,
            "caller": log_safe_identifier(ctx.principal.user_id if ctx.principal else None),
        }
    )
    return detected
