"""Shared utilities for the eduguard enforcement layer."""
from .pii import (
    configure_pii_salt,
    hash_pii,
    is_pii_salt_configured,
    log_safe_identifier,
)

__all__ = [
    "configure_pii_salt",
    "hash_pii",
    "is_pii_salt_configured",
    "log_safe_identifier",
]
