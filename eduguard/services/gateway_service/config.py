"""Gateway Service configuration.

Everything is read from the environment once at startup. The PII salt
must be configured before any identifier reaches a log line.
"""
import logging
import os
import secrets
from dataclasses import dataclass
from typing import Optional

from eduguard.shared.utils import configure_pii_salt
from eduguard.services.audit_service import DEFAULT_AUDIT_LOG_PATH
from eduguard.services.privacy_service.config import K_ANONYMITY_THRESHOLD, PrivacyConfig

logger = logging.getLogger(__name__)

RATE_LIMIT_BACKENDS = ("memory", "postgres")


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class GatewayConfig:
    """Configuration for the analytics gateway."""

    environment: str = "development"
    audit_log_path: str = DEFAULT_AUDIT_LOG_PATH

    # Optional file for RATE_LIMIT_EXCEEDED lines
    rate_limit_log: Optional[str] = None
    rate_limit_backend: str = "memory"
    rate_limit_fail_open: bool = True

    # Block the response when a privacy check itself errors
    privacy_fail_closed: bool = True
    k_threshold: int = K_ANONYMITY_THRESHOLD

    jwt_secret: Optional[str] = None
    jwt_algorithm: str = "HS256"
    pii_hash_salt: Optional[str] = None
    secret_key: Optional[str] = None
    log_level: str = "INFO"

    def __post_init__(self):
        if self.rate_limit_backend not in RATE_LIMIT_BACKENDS:
            raise ValueError(
                f"rate_limit_backend must be one of {RATE_LIMIT_BACKENDS}, "
                f"got {self.rate_limit_backend!r}"
            )

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        """Create config from environment variables.

        Environment variables:
            APP_ENV: "production" switches client errors to terse
            AUDIT_LOG_PATH: Audit file (default /tmp/analytics_audit.log)
            RATE_LIMIT_LOG: File for rate limit violations (optional)
            RATE_LIMIT_BACKEND: memory or postgres (default memory)
            RATE_LIMIT_FAIL_OPEN: Allow requests on store errors (default true)
            PRIVACY_FAIL_CLOSED: Block responses on privacy errors (default true)
            K_ANONYMITY_THRESHOLD: Minimum cohort size (default 5)
            JWT_SECRET: Shared secret for Bearer tokens
            JWT_ALGORITHM: Token algorithm (default HS256)
            PII_HASH_SALT: Salt for identifier hashing in logs
            SECRET_KEY: Flask session key
            LOG_LEVEL: Root log level (default INFO)
        """
        return cls(
            environment=os.getenv("APP_ENV", "development").strip().lower(),
            audit_log_path=os.getenv("AUDIT_LOG_PATH", DEFAULT_AUDIT_LOG_PATH),
            rate_limit_log=os.getenv("RATE_LIMIT_LOG") or None,
            rate_limit_backend=os.getenv("RATE_LIMIT_BACKEND", "memory").strip().lower(),
            rate_limit_fail_open=_env_flag("RATE_LIMIT_FAIL_OPEN", True),
            privacy_fail_closed=_env_flag("PRIVACY_FAIL_CLOSED", True),
            k_threshold=int(os.getenv("K_ANONYMITY_THRESHOLD", str(K_ANONYMITY_THRESHOLD))),
            jwt_secret=os.getenv("JWT_SECRET") or None,
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            pii_hash_salt=os.getenv("PII_HASH_SALT") or None,
            secret_key=os.getenv("SECRET_KEY") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def privacy_config(self) -> PrivacyConfig:
        return PrivacyConfig(k_threshold=self.k_threshold, production=self.is_production)


def configure_pii_salt_from_config(config: GatewayConfig) -> None:
    """Configure identifier hashing for this process.

    Outside production a missing salt is replaced by a random one, so
    hashes do not correlate across restarts.

    Raises:
        ValueError: If the salt is missing in production, or too short
    """
    if config.pii_hash_salt:
        configure_pii_salt(config.pii_hash_salt)
        return

    if config.is_production:
        logger.critical("PII_SALT_MISSING", extra={"environment": config.environment})
        raise ValueError("PII_HASH_SALT must be set in production")

    logger.warning("PII_SALT_EPHEMERAL", extra={"environment": config.environment})
    configure_pii_salt(secrets.token_hex(32))


def configure_logging(config: GatewayConfig) -> None:
    """Set the root level and route rate limit violations to their file."""
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if config.rate_limit_log:
        violations = logging.getLogger("eduguard.ratelimit.violations")
        handler = logging.FileHandler(config.rate_limit_log)
        handler.setFormatter(logging.Formatter("[%(asctime)s] %(message)s"))
        violations.addHandler(handler)

        logger.info("RATE_LIMIT_LOG_CONFIGURED", extra={"path": config.rate_limit_log})
