"""Tests for minimum cohort size enforcement."""
import copy

import pytest

from eduguard.services.privacy_service.config import (
    INSUFFICIENT_DATA_REASON,
    K_ANONYMITY_THRESHOLD,
    PrivacyConfig,
)
from eduguard.services.privacy_service.cohort_suppressor import (
    CohortSuppressor,
    extract_cohort_size,
)


@pytest.fixture
def suppressor():
    """Create a CohortSuppressor with the default threshold."""
    return CohortSuppressor()


class TestThreshold:
    """Tests for k-anonymity threshold enforcement."""

    def test_default_threshold_is_five(self, suppressor):
        assert K_ANONYMITY_THRESHOLD == 5
        assert suppressor.threshold == 5

    def test_small_cohort_suppressed(self, suppressor):
        """Metrics backed by fewer than k students are nulled."""
        result = suppressor.enforce({"total_students": 3, "avg_mastery_score": 0.8})

        assert result.payload["avg_mastery_score"] is None
        assert result.payload["insufficient_data"] is True
        assert result.payload["insufficient_data_reason"] == INSUFFICIENT_DATA_REASON
        assert result.payload["total_students"] == 3
        assert result.suppressed is True

    def test_large_cohort_unchanged(self, suppressor):
        payload = {"total_students": 10, "avg_mastery_score": 0.8}

        result = suppressor.enforce(payload)

        assert result.payload == payload
        assert result.events == []

    def test_cohort_at_threshold_passes(self, suppressor):
        result = suppressor.enforce({"total_students": 5, "completion_rate": 0.4})

        assert result.payload["completion_rate"] == 0.4

    def test_custom_threshold_respected(self):
        suppressor = CohortSuppressor(PrivacyConfig(k_threshold=10))

        result = suppressor.enforce({"unique_students": 7, "retry_rate": 0.2})

        assert result.payload["retry_rate"] is None
        assert result.events[0].threshold == 10

    def test_invalid_threshold_rejected(self):
        with pytest.raises(ValueError):
            PrivacyConfig(k_threshold=0)


class TestSuppressionDetail:
    """Tests for what is and is not suppressed."""

    def test_only_sensitive_metrics_nulled(self, suppressor):
        result = suppressor.enforce({
            "total_students": 2,
            "avg_mastery_score": 0.9,
            "completion_rate": 0.5,
            "course_title": "Algebra I",
            "lesson_count": 12,
        })

        assert result.payload["course_title"] == "Algebra I"
        assert result.payload["lesson_count"] == 12
        assert result.events[0].suppressed_fields == ("avg_mastery_score", "completion_rate")

    def test_no_sensitive_fields_left_untouched(self, suppressor):
        payload = {"total_students": 2, "lesson_count": 12}

        result = suppressor.enforce(payload)

        assert result.payload == payload
        assert result.events == []

    def test_null_metric_not_reported(self, suppressor):
        result = suppressor.enforce({
            "total_students": 2,
            "avg_mastery_score": None,
            "completion_rate": 0.5,
        })

        assert result.events[0].suppressed_fields == ("completion_rate",)

    def test_input_not_mutated(self, suppressor):
        payload = {
            "total_students": 3,
            "avg_mastery_score": 0.8,
            "courses": [{"total_enrolled": 2, "completion_rate": 0.5}],
        }
        original = copy.deepcopy(payload)

        suppressor.enforce(payload)

        assert payload == original

    def test_event_records_root_path(self, suppressor):
        result = suppressor.enforce({"total_students": 3, "avg_mastery_score": 0.8})

        event = result.events[0]
        assert event.path == "root"
        assert event.cohort_size == 3
        assert event.to_dict()["suppressed_fields"] == ["avg_mastery_score"]


class TestNestedPayloads:
    """Tests for propagation through nested structures."""

    def test_child_map_of_suppressed_parent(self, suppressor):
        """Nested maps inherit the parent's cohort size."""
        result = suppressor.enforce({
            "total_students": 3,
            "avg_mastery_score": 0.8,
            "engagement": {"avg_session_duration_minutes": 14.2},
        })

        engagement = result.payload["engagement"]
        assert engagement["avg_session_duration_minutes"] is None
        assert engagement["insufficient_data"] is True
        assert [e.path for e in result.events] == ["root", "engagement"]
        assert result.events[1].cohort_size == 3

    def test_cascade_is_one_level(self, suppressor):
        """Grandchildren are judged by their own cohort size."""
        result = suppressor.enforce({
            "total_students": 3,
            "engagement": {
                "weekly": {"unique_users": 40, "avg_interactions_per_user": 6.1},
            },
        })

        weekly = result.payload["engagement"]["weekly"]
        assert weekly["avg_interactions_per_user"] == 6.1

    def test_grandchild_with_own_small_cohort(self, suppressor):
        result = suppressor.enforce({
            "total_students": 30,
            "engagement": {
                "weekly": {"unique_users": 2, "avg_interactions_per_user": 6.1},
            },
        })

        assert result.payload["engagement"]["weekly"]["avg_interactions_per_user"] is None
        assert result.events[0].path == "engagement.weekly"

    def test_list_items_judged_individually(self, suppressor):
        result = suppressor.enforce({
            "total_students": 50,
            "courses": [
                {"total_enrolled": 40, "completion_rate": 0.7},
                {"total_enrolled": 4, "completion_rate": 0.25},
            ],
        })

        courses = result.payload["courses"]
        assert courses[0]["completion_rate"] == 0.7
        assert courses[1]["completion_rate"] is None
        assert result.events[0].path == "courses[1]"

    def test_list_sized_by_first_element(self, suppressor):
        """A list whose first item is below k suppresses all items."""
        result = suppressor.enforce([
            {"total_enrolled": 2, "avg_mastery": 0.5},
            {"total_enrolled": 80, "avg_mastery": 0.6},
        ])

        assert result.payload[0]["avg_mastery"] is None
        assert result.payload[1]["avg_mastery"] is None
        assert result.events[1].cohort_size == 2

    def test_student_summary_total(self, suppressor):
        result = suppressor.enforce({
            "studentSummary": {"total": 4},
            "avg_student_mastery": 0.71,
        })

        assert result.payload["avg_student_mastery"] is None

    def test_scalar_payload_passthrough(self, suppressor):
        assert suppressor.enforce(42).payload == 42
        assert suppressor.enforce(None).payload is None


class TestExtractCohortSize:
    """Tests for cohort size extraction."""

    def test_field_order(self):
        assert extract_cohort_size({"total": 9, "total_enrolled": 3}) == 3

    def test_numeric_string(self):
        assert extract_cohort_size({"student_count": "4"}) == 4

    def test_boolean_is_not_a_size(self):
        assert extract_cohort_size({"total": True}) is None

    def test_unknown_shape(self):
        assert extract_cohort_size({"lessons": 3}) is None
        assert extract_cohort_size([]) is None
        assert extract_cohort_size("x") is None

    def test_unsupported_node_fails_closed(self, suppressor):
        with pytest.raises(TypeError):
            suppressor.enforce({"total_students": 30, "extra": object()})
