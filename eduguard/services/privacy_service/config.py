"""Privacy Service configuration and field-name tables.

Both checks are name based. A new metric or identifying field that is
not registered here passes through unchecked, so responses that add
fields must update these tables.
"""
from dataclasses import dataclass
from typing import FrozenSet, Tuple


# Minimum cohort size for disclosing an aggregate metric (k-anonymity)
K_ANONYMITY_THRESHOLD = 5

# Containers at this depth or deeper are rejected (root is depth 1)
MAX_PAYLOAD_DEPTH = 3


@dataclass(frozen=True)
class PrivacyConfig:
    """Configuration for the PII scanner and cohort suppressor."""

    k_threshold: int = K_ANONYMITY_THRESHOLD
    max_depth: int = MAX_PAYLOAD_DEPTH

    # Terse client errors and no per-event log detail
    production: bool = False

    # First element of a list with this many suspicious fields marks the
    # list as per-row data
    record_like_min_fields: int = 3

    def __post_init__(self):
        if self.k_threshold < 1:
            raise ValueError(f"k_threshold must be >= 1, got {self.k_threshold}")
        if self.max_depth < 1:
            raise ValueError(f"max_depth must be >= 1, got {self.max_depth}")


# Keys never allowed anywhere in an analytics response (compared lowercased)
FORBIDDEN_KEYS: FrozenSet[str] = frozenset({
    # Account identifiers
    "user_id",
    "email",
    "username",
    "session_id",
    "session_token",
    "auth_token",
    "password",

    # Names
    "name",
    "first_name",
    "last_name",
    "full_name",

    # Contact and location
    "phone",
    "phone_number",
    "address",
    "street",
    "city",
    "zip",
    "postal_code",
    "ip",
    "ip_address",

    # Government and birth data
    "ssn",
    "date_of_birth",
    "dob",
    "birthdate",
})

# Typical columns of a database row; aggregates rarely carry several
SUSPICIOUS_RECORD_FIELDS: Tuple[str, ...] = (
    "id",
    "created_at",
    "updated_at",
    "status",
    "role",
)

# Fields carrying the number of individuals behind a node, in lookup order
COHORT_SIZE_FIELDS: Tuple[str, ...] = (
    "total_enrolled",
    "total_students",
    "unique_students",
    "student_count",
    "total",
    "active_students",
    "unique_users",
    "unique_users_served",
)

# Nested cohort size: node["studentSummary"]["total"]
NESTED_COHORT_SIZE_FIELD: Tuple[str, str] = ("studentSummary", "total")

# Metrics nulled when the cohort is below threshold, in reporting order
SENSITIVE_METRICS: Tuple[str, ...] = (
    "avg_mastery_score",
    "avg_completion_time_days",
    "avg_study_time_hours",
    "completion_rate",
    "avg_mastery",
    "avg_session_duration_minutes",
    "avg_response_time_ms",
    "avg_response_length_chars",
    "avg_interactions_per_user",
    "retry_rate",
    "avg_lessons_per_student",
    "avg_quiz_attempts",
    "avg_student_mastery",
    "students_improved_count",
)

INSUFFICIENT_DATA_REASON = "Cohort size below minimum threshold for privacy protection"
