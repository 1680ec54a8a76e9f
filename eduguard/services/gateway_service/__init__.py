"""Gateway Service: Enforcement pipeline for analytics endpoints.

Every analytics response passes through the same sequence: rate limit,
domain handler, cohort suppression, PII scan, audit entry. Bulk exports
are additionally checked by the export guard before rows are fetched.

This service provides:
- Framework-neutral AnalyticsGateway and GatewayResponse
- Environment configuration, PII salt and logging setup
- Flask decorators and root-only audit endpoints (handler.py)
"""

from .config import (
    GatewayConfig,
    configure_logging,
    configure_pii_salt_from_config,
)
from .gateway import (
    AnalyticsGateway,
    GatewayResponse,
)

__all__ = [
    "GatewayConfig",
    "configure_logging",
    "configure_pii_salt_from_config",
    "AnalyticsGateway",
    "GatewayResponse",
]
