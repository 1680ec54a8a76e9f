"""Sliding window rate limiter.

Counts accepted requests for an (identifier, endpoint class) pair over
the trailing window, recomputed on every call.

Failure policy: if the store cannot be reached the request is allowed
(fail-open) unless the limiter is configured fail-closed. Either way the
decision is marked ``degraded``.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from eduguard.shared.utils import log_safe_identifier
from .config import ProfileRef, RateLimitProfile, get_profile
from .store import RateLimitRecord, RateLimitStore

logger = logging.getLogger(__name__)

# Written to RATE_LIMIT_LOG when configured
violation_logger = logging.getLogger("eduguard.ratelimit.violations")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one limiter call.

    Attributes:
        allowed: Whether the request may proceed
        profile: Endpoint class name the request was counted against
        limit: Maximum requests in the window
        remaining: Requests left in the window, never negative
        reset_at: When the oldest counted request leaves the window
        retry_after_seconds: Seconds to wait when denied, 0 when allowed
        window_seconds: Window length
        degraded: Decided without the store
    """
    allowed: bool
    profile: str
    limit: int
    remaining: int
    reset_at: datetime
    retry_after_seconds: int
    window_seconds: int
    degraded: bool = False

    @property
    def reset_timestamp(self) -> int:
        return int(self.reset_at.timestamp())

    def headers(self) -> Dict[str, str]:
        """X-RateLimit-* headers (plus Retry-After when denied)."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_timestamp),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers

    def to_response(self) -> Dict[str, Any]:
        """429 body."""
        return {
            "error": "Rate limit exceeded",
            "retry_after_seconds": self.retry_after_seconds,
            "limit": self.limit,
            "window_seconds": self.window_seconds,
        }


class RateLimitExceeded(Exception):
    """Raised when a request is over its rate limit. Not retried internally."""

    def __init__(self, decision: RateLimitDecision):
        self.decision = decision
        super().__init__(
            f"Rate limit exceeded for {decision.profile}: "
            f"retry after {decision.retry_after_seconds}s"
        )

    @property
    def retry_after_seconds(self) -> int:
        return self.decision.retry_after_seconds

    def to_response(self) -> Dict[str, Any]:
        return self.decision.to_response()


class SlidingWindowLimiter:
    """Allows or denies requests against a RateLimitProfile.

    Count-then-insert is two store calls without a transaction, so
    concurrent requests for the same pair can admit slightly more than
    ``max_requests`` (soft limit).
    """

    def __init__(
        self,
        store: RateLimitStore,
        fail_open: bool = True,
        clock: Optional[Clock] = None,
    ):
        """Initialize limiter.

        Args:
            store: Rate limit record store
            fail_open: Allow requests when the store fails
            clock: Returns the current aware UTC datetime (injected for testing)
        """
        self.store = store
        self.fail_open = fail_open
        self._clock = clock or utc_now

        logger.info(
            "RATE_LIMITER_INITIALIZED",
            extra={"store": type(store).__name__, "fail_open": fail_open}
        )

    def enforce(
        self,
        profile: ProfileRef,
        identifier: str,
        label: str = "unknown",
    ) -> RateLimitDecision:
        """Count and record one request.

        Args:
            profile: Profile, endpoint class or profile name
            identifier: Key the request is counted against
            label: Endpoint label for logs

        Returns:
            RateLimitDecision (denied decisions are not recorded)
        """
        limits = get_profile(profile)
        window = timedelta(seconds=limits.window_seconds)
        now = self._clock()

        try:
            self.store.purge_before(
                identifier,
                limits.endpoint_class,
                now - timedelta(seconds=limits.cleanup_horizon_seconds),
            )
            current = self.store.count_since(identifier, limits.endpoint_class, now - window)

            if current.count >= limits.max_requests:
                oldest = current.oldest or now
                retry_after = max(1, math.ceil((oldest + window - now).total_seconds()))
                self._log_violation(limits, identifier, label, current.count)
                return RateLimitDecision(
                    allowed=False,
                    profile=limits.name,
                    limit=limits.max_requests,
                    remaining=0,
                    reset_at=oldest + window,
                    retry_after_seconds=retry_after,
                    window_seconds=limits.window_seconds,
                )

            self.store.record(RateLimitRecord(identifier, limits.endpoint_class, now))
        except Exception as e:
            return self._degraded(limits, identifier, label, now, e)

        return RateLimitDecision(
            allowed=True,
            profile=limits.name,
            limit=limits.max_requests,
            remaining=max(0, limits.max_requests - current.count - 1),
            reset_at=(current.oldest or now) + window,
            retry_after_seconds=0,
            window_seconds=limits.window_seconds,
        )

    def check(self, profile: ProfileRef, identifier: str, label: str = "unknown") -> RateLimitDecision:
        """Like enforce(), but raises RateLimitExceeded when denied."""
        decision = self.enforce(profile, identifier, label)
        if not decision.allowed:
            raise RateLimitExceeded(decision)
        return decision

    def status(self, profile: ProfileRef, identifier: str) -> Dict[str, int]:
        """Current quota without recording a request.

        Returns:
            {"limit", "remaining", "reset_at"} with reset_at in unix seconds
        """
        limits = get_profile(profile)
        window = timedelta(seconds=limits.window_seconds)
        now = self._clock()

        try:
            current = self.store.count_since(identifier, limits.endpoint_class, now - window)
        except Exception as e:
            logger.error(
                "RATE_LIMIT_STATUS_UNAVAILABLE",
                extra={"profile": limits.name, "error": str(e)}
            )
            return {
                "limit": limits.max_requests,
                "remaining": limits.max_requests,
                "reset_at": int((now + window).timestamp()),
            }

        return {
            "limit": limits.max_requests,
            "remaining": max(0, limits.max_requests - current.count),
            "reset_at": int(((current.oldest or now) + window).timestamp()),
        }

    def _degraded(
        self,
        limits: RateLimitProfile,
        identifier: str,
        label: str,
        now: datetime,
        error: Exception,
    ) -> RateLimitDecision:
        logger.error(
            "RATE_LIMIT_STORE_UNAVAILABLE",
            extra={
                "profile": limits.name,
                "endpoint": label,
                "identifier": log_safe_identifier(identifier),
                "fail_open": self.fail_open,
                "error": str(error),
            }
        )
        window = timedelta(seconds=limits.window_seconds)

        if self.fail_open:
            return RateLimitDecision(
                allowed=True,
                profile=limits.name,
                limit=limits.max_requests,
                remaining=limits.max_requests,
                reset_at=now + window,
                retry_after_seconds=0,
                window_seconds=limits.window_seconds,
                degraded=True,
            )

        return RateLimitDecision(
            allowed=False,
            profile=limits.name,
            limit=limits.max_requests,
            remaining=0,
            reset_at=now + window,
            retry_after_seconds=limits.window_seconds,
            window_seconds=limits.window_seconds,
            degraded=True,
        )

    def _log_violation(
        self,
        limits: RateLimitProfile,
        identifier: str,
        label: str,
        count: int,
    ) -> None:
        safe_identifier = log_safe_identifier(identifier)
        violation_logger.warning(
            "RATE_LIMIT_EXCEEDED | Profile: %s | Identifier: %s | Endpoint: %s | Count: %d/%d",
            limits.name,
            safe_identifier,
            label,
            count,
            limits.max_requests,
            extra={
                "profile": limits.name,
                "identifier": safe_identifier,
                "endpoint": label,
                "count": count,
                "limit": limits.max_requests,
            }
        )
