"""Privacy Service: PII and small-cohort protection for analytics responses.

Every analytics payload passes two checks before it is sent:
- CohortSuppressor nulls sensitive metrics backed by fewer than k = 5
  individuals (k-anonymity)
- PIIScanner blocks payloads containing identifying fields, deep
  nesting or per-row record lists

Both are pure in-memory transforms with no external dependency, so any
internal error blocks the response (fail-closed).
"""

from .config import (
    COHORT_SIZE_FIELDS,
    FORBIDDEN_KEYS,
    K_ANONYMITY_THRESHOLD,
    SENSITIVE_METRICS,
    SUSPICIOUS_RECORD_FIELDS,
    PrivacyConfig,
)
from .cohort_suppressor import (
    CohortSuppressionEvent,
    CohortSuppressor,
    SuppressionResult,
    extract_cohort_size,
)
from .pii_scanner import (
    PIIScanner,
    PrivacyViolation,
    Violation,
    ViolationRule,
)

__all__ = [
    "COHORT_SIZE_FIELDS",
    "FORBIDDEN_KEYS",
    "K_ANONYMITY_THRESHOLD",
    "SENSITIVE_METRICS",
    "SUSPICIOUS_RECORD_FIELDS",
    "PrivacyConfig",
    "CohortSuppressionEvent",
    "CohortSuppressor",
    "SuppressionResult",
    "extract_cohort_size",
    "PIIScanner",
    "PrivacyViolation",
    "Violation",
    "ViolationRule",
]
