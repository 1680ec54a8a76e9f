"""Identifier hashing for application logs.

User ids and client IP addresses must never appear in clear text in the
general-purpose logs. The analytics audit file is the only sink that records
them, and it is access-controlled separately.
"""
import hashlib
import logging
from typing import Optional

logger = logging.getLogger(__name__)


# Loaded from PII_HASH_SALT (or Secrets Manager) at startup
_PII_SALT: Optional[str] = None

MIN_SALT_LENGTH = 32


def configure_pii_salt(salt: str) -> None:
    """Configure the identifier hashing salt.

    Must be called during application startup before any identifier
    reaches a log line.

    Args:
        salt: Secret salt value

    Raises:
        ValueError: If salt is empty or too short
    """
    global _PII_SALT
    if not salt or len(salt) < MIN_SALT_LENGTH:
        logger.critical(
            "PII_SALT_CONFIGURATION_FAILED",
            extra={"reason": "Salt too short or empty", "min_length": MIN_SALT_LENGTH}
        )
        raise ValueError(f"PII salt must be at least {MIN_SALT_LENGTH} characters")

    _PII_SALT = salt
    logger.info("PII_SALT_CONFIGURED", extra={"salt_length": len(salt)})


def is_pii_salt_configured() -> bool:
    return _PII_SALT is not None


def hash_pii(value: str) -> str:
    """Hash an identifier for safe logging.

    Uses SHA-256 with the configured salt so the same user or IP address
    can be correlated across log lines without being readable.

    Args:
        value: The identifier to hash (user id, IP address, ...)

    Returns:
        64-char hex digest

    Raises:
        RuntimeError: If the salt has not been configured

    Example:
        >>> hash_pii("203.0.113.7")
        'a1b2c3d4e5f6...'
    """
    if _PII_SALT is None:
        logger.critical(
            "PII_HASH_FAILED",
            extra={"reason": "Salt not configured", "remedy": "call configure_pii_salt()"}
        )
        raise RuntimeError("PII salt not configured. Call configure_pii_salt() first.")

    salted = f"{_PII_SALT}{value}"
    return hashlib.sha256(salted.encode()).hexdigest()


def log_safe_identifier(value: Optional[str]) -> str:
    """Short hashed form of an identifier for the ``extra`` dict of a log call.

    The literal ``"unknown"`` carries no information and is passed through.
    """
    if value is None or value == "unknown":
        return "unknown"
    return hash_pii(str(value))[:16]
