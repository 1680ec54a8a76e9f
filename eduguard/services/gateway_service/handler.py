"""Gateway Service HTTP handler - Flask integration and operator endpoints.

Analytics routes are wrapped with ``protected_analytics`` or
``protected_export``; the decorators build a RequestContext from the
Flask request and run the view through the AnalyticsGateway.

Operator endpoints (root only) read and rotate the audit trail.
"""
import logging
import os
import secrets
from datetime import timedelta
from functools import wraps
from typing import Any, Callable, Dict, Optional, Tuple, Union

from flask import Flask, Response, g, jsonify, request, session

from eduguard.shared.database import get_connection_manager
from eduguard.shared.models import Principal, RequestContext, Role
from eduguard.services.audit_service import AuditAction
from eduguard.services.export_service import ExportRequest, parse_export_date
from eduguard.services.ratelimit_service import (
    EndpointClass,
    TokenVerifier,
    client_address,
    resolve_endpoint_class,
    resolve_identifier,
)
from eduguard.services.ratelimit_service.config import ProfileRef
from .config import GatewayConfig, configure_logging, configure_pii_salt_from_config
from .gateway import AnalyticsGateway, GatewayResponse, RowEstimator, RowFetcher

logger = logging.getLogger(__name__)

# Audit entries returned by the viewer omit these fields
HIDDEN_AUDIT_FIELDS = ("user_id", "user_agent")

DEFAULT_AUDIT_PAGE_SIZE = 100

IdentifierRef = Union[str, Callable[[], Optional[str]]]

# Initialize Flask app
app = Flask(__name__)

config = GatewayConfig.from_env()
configure_pii_salt_from_config(config)
app.secret_key = config.secret_key or secrets.token_hex(32)

_gateway: Optional[AnalyticsGateway] = None
_token_verifier = TokenVerifier(config.jwt_secret, config.jwt_algorithm)


def get_gateway() -> AnalyticsGateway:
    """Get or create the process gateway."""
    global _gateway

    if _gateway is None:
        _gateway = AnalyticsGateway.from_config(config)

    return _gateway


def set_gateway(
    gateway: Optional[AnalyticsGateway],
    token_verifier: Optional[TokenVerifier] = None,
) -> None:
    """Replace the process gateway (and token verifier)."""
    global _gateway, _token_verifier

    _gateway = gateway
    if token_verifier is not None:
        _token_verifier = token_verifier


def _session_principal() -> Optional[Principal]:
    user_id = session.get("user_id")
    if user_id in (None, ""):
        return None
    return Principal(str(user_id), Role.parse(session.get("role") or "student"))


def build_request_context(
    endpoint: str,
    parameters: Optional[Dict[str, Any]] = None,
    identifier: Optional[IdentifierRef] = None,
    exempt: bool = False,
) -> RequestContext:
    """Build the context for the current Flask request.

    The principal comes from a Bearer token, then from the session.

    Args:
        endpoint: Endpoint label
        parameters: Audit parameters, defaults to the query string
        identifier: Rate-limit key, or a callable computing it per request
        exempt: Skip rate limiting for this endpoint
    """
    if callable(identifier):
        identifier = identifier()
    headers = dict(request.headers)
    principal = _token_verifier.from_headers(request.headers) or _session_principal()

    return RequestContext(
        endpoint=endpoint,
        principal=principal,
        client_ip=client_address(headers, request.remote_addr) or "unknown",
        user_agent=request.headers.get("User-Agent", "unknown"),
        method=request.method,
        parameters=parameters if parameters is not None else request.args.to_dict(),
        headers=headers,
        remote_addr=request.remote_addr,
        explicit_identifier=identifier or None,
        rate_limit_exempt=exempt,
    )


def to_flask_response(result: GatewayResponse) -> Response:
    """Convert a GatewayResponse into a Flask response."""
    if result.mimetype == "application/json":
        response = jsonify(result.body)
    else:
        response = Response(result.body, mimetype=result.mimetype)

    response.status_code = result.status
    for name, value in result.headers.items():
        response.headers[name] = value
    return response


def protected_analytics(
    label: str,
    endpoint_class: Optional[EndpointClass] = None,
    profile: Optional[ProfileRef] = None,
    action: AuditAction = AuditAction.VIEW,
    identifier: Optional[IdentifierRef] = None,
    exempt: bool = False,
) -> Callable:
    """Run a view through the analytics gateway.

    The view returns the raw payload; the request context is available
    as ``flask.g.analytics_context``.

    Args:
        label: Endpoint label for rate limiting, logs and audit
        endpoint_class: Pin the rate limit class (e.g. GENERATION)
        profile: Explicit profile, overrides the class
        action: Audit action recorded for the request
        identifier: Rate-limit key instead of the caller (str or callable)
        exempt: Skip rate limiting for this endpoint
    """
    def decorator(view: Callable) -> Callable:
        @wraps(view)
        def wrapper(*args, **kwargs):
            ctx = build_request_context(label, identifier=identifier, exempt=exempt)
            g.analytics_context = ctx
            result = get_gateway().handle(
                ctx,
                lambda _ctx: view(*args, **kwargs),
                endpoint_class=endpoint_class,
                profile=profile,
                action=action,
            )
            return to_flask_response(result)
        return wrapper
    return decorator


def protected_export(
    label: str,
    fetch_rows: RowFetcher,
    estimate_rows: Optional[RowEstimator] = None,
    default_dataset: str = "overview",
    identifier: Optional[IdentifierRef] = None,
    exempt: bool = False,
) -> Callable:
    """Run a bulk export through the gateway.

    The view receives the parsed ExportRequest and may return a
    replacement (for example to pin the dataset) or None to keep it.

    Args:
        label: Endpoint label for rate limiting, logs and audit
        fetch_rows: Returns the rows for a request
        estimate_rows: Returns the estimated row count before fetching
        default_dataset: Dataset when the request names none
        identifier: Rate-limit key instead of the caller (str or callable)
        exempt: Skip rate limiting for this endpoint
    """
    def decorator(view: Callable) -> Callable:
        @wraps(view)
        def wrapper(*args, **kwargs):
            ctx = build_request_context(label, identifier=identifier, exempt=exempt)
            g.analytics_context = ctx
            export_request = ExportRequest.from_args(request.args, default_dataset)
            export_request = view(export_request, *args, **kwargs) or export_request
            result = get_gateway().handle_export(
                ctx,
                export_request,
                fetch_rows,
                estimate_rows=estimate_rows,
            )
            return to_flask_response(result)
        return wrapper
    return decorator


def _require_root(ctx: RequestContext) -> Optional[Tuple[Response, int]]:
    """Error response unless the caller is root."""
    gateway = get_gateway()

    if not ctx.is_authenticated:
        gateway.audit.log_access_failure(ctx.endpoint, "unauthenticated", ctx.user_id, ctx)
        return jsonify({"success": False, "message": "Authentication required"}), 401

    if ctx.role is not Role.ROOT:
        gateway.audit.log_access_failure(ctx.endpoint, "insufficient_role", ctx.user_id, ctx)
        return jsonify({"success": False, "message": "Root access required"}), 403

    decision = gateway.rate_limit(ctx, EndpointClass.ROOT)
    if decision is not None and not decision.allowed:
        return to_flask_response(gateway.rate_limited_response(ctx, decision)), 429

    return None


def _visible_entry(entry) -> Dict[str, Any]:
    data = entry.to_dict()
    for name in HIDDEN_AUDIT_FIELDS:
        data.pop(name, None)
    return data


def _int_arg(name: str, default: int) -> int:
    value = request.args.get(name)
    if value in (None, ""):
        return default
    return int(value)


def _bool_arg(name: str) -> Optional[bool]:
    value = (request.args.get(name) or "").strip().lower()
    if value in ("1", "true"):
        return True
    if value in ("0", "false"):
        return False
    return None


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({
        "status": "healthy",
        "service": "analytics-gateway",
    }), 200


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check.

    A failing PostgreSQL store only blocks readiness when the limiter
    is configured fail-closed.
    """
    try:
        gateway = get_gateway()
    except Exception as e:
        logger.error("GATEWAY_NOT_READY", extra={"error": str(e)})
        return jsonify({"status": "not_ready"}), 503

    if config.rate_limit_backend != "postgres":
        return jsonify({"status": "ready", "rate_limit_store": "memory"}), 200

    manager = get_connection_manager()
    try:
        manager.initialize()
        store_health = manager.health_check()
    except Exception as e:
        store_health = {"healthy": False, "status": "error", "error": str(e)}

    if not store_health["healthy"] and not gateway.limiter.fail_open:
        return jsonify({"status": "not_ready", "rate_limit_store": store_health["status"]}), 503
    return jsonify({"status": "ready", "rate_limit_store": store_health["status"]}), 200


@app.route("/rate-limit/status", methods=["GET"])
def rate_limit_status():
    """Current quota for the caller, without counting the request.

    Response:
        {
            "success": true,
            "profile": "authenticated",
            "limit": 120,
            "remaining": 118,
            "reset_at": 1767225600
        }
    """
    try:
        ctx = build_request_context("rate_limit_status")
        endpoint_class = resolve_endpoint_class(ctx)
        status = get_gateway().limiter.status(endpoint_class, resolve_identifier(ctx))
        return jsonify({"success": True, "profile": endpoint_class.value, **status}), 200
    except Exception as e:
        logger.error("RATE_LIMIT_STATUS_ERROR", extra={"error": str(e)})
        return jsonify({"success": False, "message": "Failed to load rate limit status"}), 500


@app.route("/audit/logs", methods=["GET"])
def audit_logs():
    """Filtered, paginated audit trail (root only).

    Query Parameters:
        startDate, endDate: YYYY-MM-DD or ISO-8601 (endDate date is inclusive)
        endpoint, action: Exact match filters
        success: 1/0 or true/false
        limit: Page size (default 100, max 1000)
        offset: Entries to skip
    """
    ctx = build_request_context("admin_audit_logs")
    denied = _require_root(ctx)
    if denied is not None:
        return denied

    start_raw = request.args.get("startDate")
    end_raw = request.args.get("endDate")
    start = parse_export_date(start_raw)
    end = parse_export_date(end_raw)
    if (start_raw and start is None) or (end_raw and end is None):
        return jsonify({"success": False, "message": "Invalid date format. Use YYYY-MM-DD."}), 400
    if end is not None and len(end_raw.strip()) == 10:
        end = end + timedelta(days=1) - timedelta(seconds=1)

    try:
        limit = _int_arg("limit", DEFAULT_AUDIT_PAGE_SIZE)
        offset = _int_arg("offset", 0)
    except ValueError:
        return jsonify({"success": False, "message": "limit and offset must be integers"}), 400

    try:
        gateway = get_gateway()
        page = gateway.audit.query(
            start=start,
            end=end,
            endpoint=request.args.get("endpoint") or None,
            action=request.args.get("action") or None,
            success=_bool_arg("success"),
            limit=limit,
            offset=max(0, offset),
        )
        gateway.audit.log_access(
            ctx,
            AuditAction.VIEW_LOGS,
            metadata={"result_count": len(page.entries), "total_matched": page.total_matched},
        )
    except Exception as e:
        logger.error("AUDIT_LOGS_ERROR", extra={"error": str(e)})
        return jsonify({"success": False, "message": "Failed to load audit logs"}), 500

    return jsonify({
        "success": True,
        "logs": [_visible_entry(e) for e in page.entries],
        "pagination": {
            "total": page.total_matched,
            "limit": page.limit,
            "offset": page.offset,
            "has_more": page.has_more,
        },
        "filters": {
            "endpoints": sorted(page.endpoints),
            "actions": sorted(page.actions),
        },
    }), 200


@app.route("/audit/recent", methods=["GET"])
def audit_recent():
    """Most recent audit entries, newest first (root only)."""
    ctx = build_request_context("admin_audit_recent")
    denied = _require_root(ctx)
    if denied is not None:
        return denied

    try:
        limit = min(_int_arg("limit", 50), 1000)
    except ValueError:
        return jsonify({"success": False, "message": "limit must be an integer"}), 400

    try:
        gateway = get_gateway()
        entries = gateway.audit.recent(limit)
        gateway.audit.log_access(ctx, AuditAction.VIEW_LOGS, metadata={"result_count": len(entries)})
    except Exception as e:
        logger.error("AUDIT_RECENT_ERROR", extra={"error": str(e)})
        return jsonify({"success": False, "message": "Failed to load audit logs"}), 500

    return jsonify({"success": True, "logs": [_visible_entry(e) for e in entries]}), 200


@app.route("/audit/rotate", methods=["POST"])
def audit_rotate():
    """Archive the audit file when it is due, or when force=1 (root only).

    Response:
        {
            "success": true,
            "rotated": true,
            "archive": "/tmp/analytics_audit.log.2026-03-01-120000.archive"
        }
    """
    ctx = build_request_context("admin_audit_rotate")
    denied = _require_root(ctx)
    if denied is not None:
        return denied

    try:
        audit = get_gateway().audit
        force = request.args.get("force") == "1"
        archive = audit.rotate() if force or audit.needs_rotation() else None
        audit.log_access(
            ctx,
            AuditAction.ROTATE_LOGS,
            metadata={"forced": force, "rotated": archive is not None},
        )
    except Exception as e:
        logger.error("AUDIT_ROTATE_ERROR", extra={"error": str(e)})
        return jsonify({"success": False, "message": "Failed to rotate audit log"}), 500

    return jsonify({"success": True, "rotated": archive is not None, "archive": archive}), 200


if __name__ == "__main__":
    configure_logging(config)

    # Run development server
    port = int(os.getenv("PORT", "8005"))
    app.run(host="0.0.0.0", port=port, debug=False)
