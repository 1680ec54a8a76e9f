"""Tests for Gateway Service HTTP handler.

Covers the Flask decorators and the root-only audit endpoints.
"""
import json

import jwt
import pytest
from flask import Flask, g, request

from eduguard.shared.models import Principal, RequestContext, Role
from eduguard.shared.utils import configure_pii_salt
from eduguard.services.audit_service import AuditLogger
from eduguard.services.gateway_service.gateway import AnalyticsGateway
from eduguard.services.ratelimit_service import (
    EndpointClass,
    InMemoryRateLimitStore,
    RateLimitProfile,
    SlidingWindowLimiter,
    TokenVerifier,
)

SECRET = "jwt_secret_that_is_long_enough_for_hs256_tests"

ROWS = [
    {"course": "Algebra", "total_students": 12, "completion_rate": 0.5},
    {"course": "Biology", "total_students": 30, "completion_rate": 0.8},
]

TWO_PER_MINUTE = RateLimitProfile(EndpointClass.PUBLIC, 2, 60)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    """Configure PII salt before each test."""
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


def bearer(user_id="42", role="admin"):
    token = jwt.encode({"user_id": user_id, "role": role}, SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def store():
    return InMemoryRateLimitStore()


@pytest.fixture
def gateway(tmp_path, store):
    """Install a gateway with an in-memory store and a temp audit file."""
    from eduguard.services.gateway_service import handler

    gateway = AnalyticsGateway(
        limiter=SlidingWindowLimiter(store),
        audit=AuditLogger(path=str(tmp_path / "analytics_audit.log")),
    )
    handler.set_gateway(gateway, TokenVerifier(SECRET))
    yield gateway
    handler.set_gateway(None)


@pytest.fixture
def analytics_client(gateway):
    """Flask test client for an app with protected analytics routes."""
    from eduguard.services.gateway_service.handler import (
        protected_analytics,
        protected_export,
    )

    app = Flask("analytics_test")
    app.secret_key = "test_secret_key_for_sessions"
    app.config["TESTING"] = True

    @app.route("/overview")
    @protected_analytics("admin_analytics_overview")
    def overview():
        return {"total_students": 40, "completion_rate": 0.7}

    @app.route("/context")
    @protected_analytics("context_echo")
    def context_echo():
        return {"endpoint": g.analytics_context.endpoint}

    @app.route("/leaky")
    @protected_analytics("leaky")
    def leaky():
        return {"total_students": 40, "email": "a@example.com"}

    @app.route("/limited")
    @protected_analytics("limited", profile=TWO_PER_MINUTE)
    def limited():
        return {}

    @app.route("/generate")
    @protected_analytics("generate_course", endpoint_class=EndpointClass.GENERATION)
    def generate():
        return {}

    @app.route("/exempt")
    @protected_analytics("health_summary", profile=TWO_PER_MINUTE, exempt=True)
    def exempt():
        return {}

    @app.route("/shared")
    @protected_analytics("shared_quota", profile=TWO_PER_MINUTE, identifier="course-catalog")
    def shared():
        return {}

    @app.route("/tenant")
    @protected_analytics(
        "tenant_quota",
        profile=TWO_PER_MINUTE,
        identifier=lambda: request.args.get("tenant"),
    )
    def tenant():
        return {}

    @app.route("/export")
    @protected_export(
        "admin_analytics_export",
        fetch_rows=lambda r: ROWS,
        estimate_rows=lambda r: 20000 if r.dataset == "large" else len(ROWS),
        default_dataset="course_progress",
    )
    def export(export_request):
        return None

    @app.route("/export/unmetered")
    @protected_export("nightly_export", fetch_rows=lambda r: ROWS, exempt=True)
    def unmetered_export(export_request):
        return None

    with app.test_client() as client:
        yield client


@pytest.fixture
def client(gateway):
    """Create Flask test client for the gateway service app."""
    from eduguard.services.gateway_service.handler import app
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client


class TestHealthEndpoint:
    """Tests for /health and /ready."""

    def test_health_returns_200(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["status"] == "healthy"
        assert data["service"] == "analytics-gateway"

    def test_ready_returns_200(self, client):
        response = client.get("/ready")

        assert response.status_code == 200
        assert json.loads(response.data)["status"] == "ready"


class TestProtectedAnalytics:
    """Tests for the protected_analytics decorator."""

    def test_success_with_headers(self, analytics_client):
        response = analytics_client.get("/overview", headers=bearer())

        assert response.status_code == 200
        assert json.loads(response.data) == {"total_students": 40, "completion_rate": 0.7}
        assert response.headers["X-RateLimit-Limit"] == "300"
        assert response.headers["X-RateLimit-Remaining"] == "299"
        assert "X-RateLimit-Reset" in response.headers

    def test_anonymous_uses_public_profile(self, analytics_client):
        response = analytics_client.get("/overview")

        assert response.headers["X-RateLimit-Limit"] == "60"

    def test_invalid_token_is_anonymous(self, analytics_client):
        response = analytics_client.get(
            "/overview",
            headers={"Authorization": "Bearer not-a-token"},
        )

        assert response.headers["X-RateLimit-Limit"] == "60"

    def test_session_principal(self, analytics_client):
        with analytics_client.session_transaction() as session:
            session["user_id"] = 7
            session["role"] = "root"

        response = analytics_client.get("/overview")

        assert response.headers["X-RateLimit-Limit"] == "600"

    def test_context_available_to_view(self, analytics_client):
        response = analytics_client.get("/context")

        assert json.loads(response.data) == {"endpoint": "context_echo"}

    def test_pii_blocked(self, analytics_client):
        response = analytics_client.get("/leaky")

        assert response.status_code == 403
        data = json.loads(response.data)
        assert data["error"] == "privacy_violation"
        assert "a@example.com" not in response.get_data(as_text=True)

    def test_rate_limited(self, analytics_client):
        for _ in range(2):
            assert analytics_client.get("/limited").status_code == 200

        response = analytics_client.get("/limited")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert json.loads(response.data)["error"] == "Rate limit exceeded"

    def test_forwarded_addresses_counted_separately(self, analytics_client):
        for _ in range(2):
            analytics_client.get("/limited", headers={"X-Forwarded-For": "198.51.100.1"})

        response = analytics_client.get("/limited", headers={"X-Forwarded-For": "198.51.100.2"})

        assert response.status_code == 200

    def test_generation_profile(self, analytics_client):
        response = analytics_client.get("/generate", headers=bearer(role="root"))

        assert response.headers["X-RateLimit-Limit"] == "10"

    def test_exempt_route_not_counted(self, analytics_client, store):
        for _ in range(3):
            response = analytics_client.get("/exempt")
            assert response.status_code == 200

        assert "X-RateLimit-Limit" not in response.headers
        assert len(store) == 0

    def test_explicit_identifier_shared_across_callers(self, analytics_client):
        analytics_client.get("/shared", headers=bearer(user_id="1"))
        analytics_client.get("/shared", headers=bearer(user_id="2"))

        response = analytics_client.get("/shared", headers=bearer(user_id="3"))

        assert response.status_code == 429

    def test_identifier_callable_per_request(self, analytics_client):
        for _ in range(2):
            analytics_client.get("/tenant?tenant=north", headers=bearer())

        assert analytics_client.get("/tenant?tenant=north", headers=bearer()).status_code == 429
        assert analytics_client.get("/tenant?tenant=south", headers=bearer()).status_code == 200

    def test_request_audited(self, analytics_client, gateway):
        analytics_client.get("/overview?range=30d", headers=bearer())

        [entry] = gateway.audit.recent(1)
        assert entry.endpoint == "admin_analytics_overview"
        assert entry.user_id == "42"
        assert entry.role == "admin"
        assert entry.method == "GET"
        assert entry.parameters == {"range": "30d"}


class TestProtectedExport:
    """Tests for the protected_export decorator."""

    def test_json_export(self, analytics_client):
        response = analytics_client.get(
            "/export?startDate=2026-01-01&endDate=2026-01-31",
            headers=bearer(),
        )

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["dataset"] == "course_progress"
        assert data["recordCount"] == 2

    def test_csv_export(self, analytics_client):
        response = analytics_client.get(
            "/export?format=csv&startDate=2026-01-01&endDate=2026-01-31",
            headers=bearer(),
        )

        assert response.status_code == 200
        assert response.mimetype == "text/csv"
        assert response.get_data(as_text=True).splitlines()[0] == "course,total_students,completion_rate"
        assert "attachment" in response.headers["Content-Disposition"]

    def test_large_export_needs_confirmation(self, analytics_client):
        response = analytics_client.get("/export?dataset=large", headers=bearer())

        assert response.status_code == 400
        data = json.loads(response.data)
        assert data["requires_confirmation"] is True
        assert data["confirmation_token"]

    def test_large_export_confirmed(self, analytics_client):
        response = analytics_client.get("/export?dataset=large&confirmed=1", headers=bearer())

        assert response.status_code == 200

    def test_exempt_export_not_counted(self, analytics_client, store):
        response = analytics_client.get(
            "/export/unmetered?startDate=2026-01-01&endDate=2026-01-31",
            headers=bearer(),
        )

        assert response.status_code == 200
        assert len(store) == 0


class TestRateLimitStatus:
    """Tests for /rate-limit/status."""

    def test_status_does_not_count(self, client, store):
        response = client.get("/rate-limit/status", headers=bearer())

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data == {
            "success": True,
            "profile": "ADMIN",
            "limit": 300,
            "remaining": 300,
            "reset_at": data["reset_at"],
        }
        assert len(store) == 0


class TestAuditEndpoints:
    """Tests for the root-only audit endpoints."""

    @pytest.fixture
    def populated(self, gateway):
        for endpoint, payload in (
            ("admin_analytics_overview", {"total_students": 40}),
            ("leaky", {"total_students": 40, "email": "a@example.com"}),
        ):
            ctx = RequestContext(endpoint=endpoint, principal=Principal("42", Role.ADMIN))
            gateway.handle(ctx, lambda ctx, payload=payload: payload)
        return gateway

    def test_requires_authentication(self, client):
        response = client.get("/audit/logs")

        assert response.status_code == 401

    def test_requires_root(self, client, gateway):
        response = client.get("/audit/logs", headers=bearer(role="admin"))

        assert response.status_code == 403
        [entry] = gateway.audit.recent(1)
        assert entry.action == "access_denied"
        assert entry.metadata == {"failure_reason": "insufficient_role"}

    def test_logs_hide_user_details(self, client, populated):
        response = client.get("/audit/logs", headers=bearer(role="root"))

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["pagination"]["total"] == 2
        for log in data["logs"]:
            assert "user_id" not in log
            assert "user_agent" not in log
        assert data["filters"]["endpoints"] == ["admin_analytics_overview", "leaky"]

    def test_logs_filtered(self, client, populated):
        response = client.get("/audit/logs?success=0", headers=bearer(role="root"))

        data = json.loads(response.data)
        assert [log["endpoint"] for log in data["logs"]] == ["leaky"]

    def test_viewing_is_audited(self, client, populated):
        client.get("/audit/logs", headers=bearer(role="root"))

        [entry] = populated.audit.recent(1)
        assert entry.action == "view_logs"
        assert entry.metadata["result_count"] == 2

    def test_invalid_date(self, client):
        response = client.get("/audit/logs?startDate=yesterday", headers=bearer(role="root"))

        assert response.status_code == 400

    def test_invalid_limit(self, client):
        response = client.get("/audit/logs?limit=all", headers=bearer(role="root"))

        assert response.status_code == 400

    def test_recent(self, client, populated):
        response = client.get("/audit/recent?limit=1", headers=bearer(role="root"))

        data = json.loads(response.data)
        assert [log["endpoint"] for log in data["logs"]] == ["leaky"]

    def test_rotate_not_due(self, client, populated):
        response = client.post("/audit/rotate", headers=bearer(role="root"))

        assert json.loads(response.data) == {"success": True, "rotated": False, "archive": None}

    def test_rotate_forced(self, client, populated):
        response = client.post("/audit/rotate?force=1", headers=bearer(role="root"))

        data = json.loads(response.data)
        assert data["rotated"] is True
        assert data["archive"].endswith(".archive")
        # the rotation itself is the first entry of the new file
        assert [e.action for e in populated.audit.recent(10)] == ["rotate_logs"]
