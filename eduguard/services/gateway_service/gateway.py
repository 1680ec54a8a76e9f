"""Analytics gateway - composes the enforcement pipeline around a handler.

Order for every analytics request:
    1. Rate limit (once per request context)
    2. Domain handler builds the payload
    3. Cohort suppression (k-anonymity)
    4. PII scan; a violation discards the payload
    5. Audit entry
    6. Response with X-RateLimit-* headers

The gateway returns framework-neutral GatewayResponse objects; the Flask
layer in handler.py converts them.
"""
import csv
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from eduguard.shared.database import get_connection_manager
from eduguard.shared.models import RequestContext, normalize_payload
from eduguard.shared.utils import log_safe_identifier
from eduguard.services.audit_service import AuditAction, AuditLogger
from eduguard.services.export_service import (
    EXPORT_FORMATS,
    ExportGuard,
    ExportParameterInvalid,
    ExportRequest,
    UnknownDataset,
)
from eduguard.services.privacy_service import (
    CohortSuppressor,
    PIIScanner,
    PrivacyViolation,
    SuppressionResult,
)
from eduguard.services.ratelimit_service import (
    EndpointClass,
    InMemoryRateLimitStore,
    PostgresRateLimitStore,
    RateLimitDecision,
    RateLimitStore,
    SlidingWindowLimiter,
    resolve_endpoint_class,
    resolve_identifier,
)
from eduguard.services.ratelimit_service.config import ProfileRef
from .config import GatewayConfig

logger = logging.getLogger(__name__)

PayloadBuilder = Callable[[RequestContext], Any]
RowFetcher = Callable[[ExportRequest], List[Dict[str, Any]]]
RowEstimator = Callable[[ExportRequest], int]
FailureAudit = Callable[[Dict[str, Any]], Any]

PROCESSING_ERROR = {"success": False, "message": "Analytics processing error"}


@dataclass
class GatewayResponse:
    """HTTP response independent of the web framework."""
    status: int
    body: Any
    headers: Dict[str, str] = field(default_factory=dict)
    mimetype: str = "application/json"


class AnalyticsGateway:
    """Runs analytics handlers behind rate limiting, privacy checks and audit."""

    def __init__(
        self,
        limiter: SlidingWindowLimiter,
        audit: AuditLogger,
        suppressor: Optional[CohortSuppressor] = None,
        scanner: Optional[PIIScanner] = None,
        export_guard: Optional[ExportGuard] = None,
        production: bool = False,
        privacy_fail_closed: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize gateway.

        Args:
            limiter: Sliding window limiter
            audit: Audit trail
            suppressor: Cohort suppressor (default k=5)
            scanner: PII scanner
            export_guard: Export parameter guard
            production: Terse client errors
            privacy_fail_closed: Block responses when a privacy check errors
            clock: Returns the current aware UTC datetime (injected for testing)
        """
        self.limiter = limiter
        self.audit = audit
        self.suppressor = suppressor or CohortSuppressor()
        self.scanner = scanner or PIIScanner()
        self.export_guard = export_guard or ExportGuard()
        self.production = production
        self.privacy_fail_closed = privacy_fail_closed
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        logger.info(
            "ANALYTICS_GATEWAY_INITIALIZED",
            extra={
                "production": production,
                "privacy_fail_closed": privacy_fail_closed,
                "k_threshold": self.suppressor.threshold,
            }
        )

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        store: Optional[RateLimitStore] = None,
    ) -> "AnalyticsGateway":
        """Build a gateway and its components from configuration."""
        if store is None:
            if config.rate_limit_backend == "postgres":
                store = PostgresRateLimitStore(get_connection_manager())
            else:
                store = InMemoryRateLimitStore()

        privacy = config.privacy_config()
        return cls(
            limiter=SlidingWindowLimiter(store, fail_open=config.rate_limit_fail_open),
            audit=AuditLogger(path=config.audit_log_path),
            suppressor=CohortSuppressor(privacy),
            scanner=PIIScanner(privacy),
            export_guard=ExportGuard(),
            production=config.is_production,
            privacy_fail_closed=config.privacy_fail_closed,
        )

    def rate_limit(
        self,
        ctx: RequestContext,
        endpoint_class: Optional[EndpointClass] = None,
        profile: Optional[ProfileRef] = None,
    ) -> Optional[RateLimitDecision]:
        """Run the limiter at most once for a request.

        Args:
            ctx: Request context
            endpoint_class: Class pinned by the route
            profile: Explicit profile, overrides the class

        Returns:
            The request's decision, or None for exempt requests
        """
        if ctx.rate_limit_exempt:
            logger.info("RATE_LIMIT_EXEMPT", extra={"endpoint": ctx.endpoint})
            return None

        if ctx.rate_limited:
            return ctx.rate_limit_decision

        ref = profile if profile is not None else resolve_endpoint_class(ctx, endpoint_class)
        identifier = resolve_identifier(ctx)

        decision = self.limiter.enforce(ref, identifier, ctx.endpoint)
        ctx.rate_limited = True
        ctx.rate_limit_decision = decision
        return decision

    def handle(
        self,
        ctx: RequestContext,
        build_payload: PayloadBuilder,
        endpoint_class: Optional[EndpointClass] = None,
        profile: Optional[ProfileRef] = None,
        action: Union[AuditAction, str] = AuditAction.VIEW,
    ) -> GatewayResponse:
        """Serve one analytics request.

        Args:
            ctx: Request context
            build_payload: Domain handler producing the payload
            endpoint_class: Class pinned by the route
            profile: Explicit profile, overrides the class
            action: Audit action for the entry

        Returns:
            GatewayResponse (200, 403, 429 or 500)
        """
        decision = self.rate_limit(ctx, endpoint_class, profile)
        if decision is not None and not decision.allowed:
            return self.rate_limited_response(ctx, decision)
        headers = decision.headers() if decision else {}

        try:
            payload = build_payload(ctx)
        except Exception as e:
            logger.error(
                "ANALYTICS_HANDLER_FAILED",
                extra={"endpoint": ctx.endpoint, "error": str(e)}
            )
            self.audit.log_access(ctx, action, success=False, metadata={"error": "handler_failed"})
            return GatewayResponse(
                500,
                {"success": False, "message": "Failed to load analytics"},
                headers,
            )

        sanitized = self._sanitize(
            ctx,
            payload,
            headers,
            lambda metadata: self.audit.log_access(ctx, action, success=False, metadata=metadata),
        )
        if isinstance(sanitized, GatewayResponse):
            return sanitized

        self.audit.log_access(
            ctx,
            action,
            success=True,
            metadata={"cohort_suppressions": len(sanitized.events)},
        )
        return GatewayResponse(200, sanitized.payload, headers)

    def handle_export(
        self,
        ctx: RequestContext,
        export_request: ExportRequest,
        fetch_rows: RowFetcher,
        estimate_rows: Optional[RowEstimator] = None,
        endpoint_class: Optional[EndpointClass] = None,
    ) -> GatewayResponse:
        """Serve one bulk export.

        The export guard runs before any rows are fetched; the envelope
        then passes through the same privacy checks as views.
        """
        decision = self.rate_limit(ctx, endpoint_class)
        if decision is not None and not decision.allowed:
            return self.rate_limited_response(ctx, decision)
        headers = decision.headers() if decision else {}

        if export_request.format not in EXPORT_FORMATS:
            self.audit.log_access_failure(ctx.endpoint, "invalid_format", ctx.user_id, ctx)
            return GatewayResponse(
                400,
                {"success": False, "message": f"Invalid format. Use one of: {', '.join(EXPORT_FORMATS)}"},
                headers,
            )

        try:
            estimated = estimate_rows(export_request) if estimate_rows else 0
            self.export_guard.check(export_request, estimated)
            rows = fetch_rows(export_request)
        except UnknownDataset as e:
            self.audit.log_access_failure(ctx.endpoint, "invalid_dataset", ctx.user_id, ctx)
            logger.warning(
                "EXPORT_INVALID_DATASET",
                extra={"endpoint": ctx.endpoint, "dataset": e.dataset}
            )
            return GatewayResponse(400, {"success": False, "message": "Invalid dataset"}, headers)
        except ExportParameterInvalid as e:
            self.audit.log_access_failure(
                ctx.endpoint,
                "Validation failed: " + ", ".join(e.validation.errors),
                ctx.user_id,
                ctx,
            )
            return GatewayResponse(400, e.to_response(self.production), headers)
        except Exception as e:
            logger.error(
                "EXPORT_FAILED",
                extra={
                    "endpoint": ctx.endpoint,
                    "dataset": export_request.dataset,
                    "error": str(e),
                }
            )
            self._log_export(ctx, export_request, 0, success=False)
            return GatewayResponse(500, {"success": False, "message": "Failed to generate export"}, headers)

        if not self.export_guard.is_within_limits(export_request.date_range, len(rows)):
            logger.warning(
                "EXPORT_LIMIT_EXCEEDED_AFTER_FETCH",
                extra={
                    "dataset": export_request.dataset,
                    "estimated_rows": estimated,
                    "row_count": len(rows),
                }
            )
            self._log_export(ctx, export_request, len(rows), success=False)
            return GatewayResponse(
                400,
                {
                    "success": False,
                    "message": "Export validation failed",
                    "errors": [
                        f"Export too large. Maximum {self.export_guard.limits.max_rows:,} "
                        f"rows allowed (actual: {len(rows):,} rows)."
                    ],
                },
                headers,
            )

        envelope = {
            "success": True,
            "dataset": export_request.dataset,
            "dateRange": export_request.date_range,
            "recordCount": len(rows),
            "data": rows,
        }
        sanitized = self._sanitize(
            ctx,
            envelope,
            headers,
            lambda metadata: self._log_export(
                ctx, export_request, len(rows), success=False, metadata=metadata
            ),
        )
        if isinstance(sanitized, GatewayResponse):
            return sanitized

        self._log_export(ctx, export_request, len(rows), success=True)
        logger.info(
            "EXPORT_COMPLETED",
            extra={
                "dataset": export_request.dataset,
                "user": log_safe_identifier(ctx.user_id),
                **self.export_guard.export_metadata(
                    export_request.date_range,
                    len(rows),
                    export_request.format,
                ),
            }
        )

        if export_request.format == "csv":
            return self._csv_response(export_request, sanitized.payload["data"], headers)
        return GatewayResponse(200, sanitized.payload, headers)

    def _sanitize(
        self,
        ctx: RequestContext,
        payload: Any,
        headers: Dict[str, str],
        audit_failure: FailureAudit,
    ) -> Union[SuppressionResult, GatewayResponse]:
        """Cohort suppression, then the PII scan.

        ``audit_failure`` records a blocked response with the given metadata.

        Returns:
            SuppressionResult, or the error response to send instead
        """
        try:
            result = self.suppressor.enforce(normalize_payload(payload), ctx.endpoint)
            self.scanner.validate(result.payload, ctx.endpoint)
        except PrivacyViolation as e:
            audit_failure({
                "failure_reason": "privacy_violation",
                "violations": [v.path for v in e.violations],
            })
            return GatewayResponse(403, e.to_response(self.production), headers)
        except Exception as e:
            logger.error(
                "PRIVACY_CHECK_FAILED",
                extra={
                    "endpoint": ctx.endpoint,
                    "fail_closed": self.privacy_fail_closed,
                    "error": str(e),
                }
            )
            if not self.privacy_fail_closed:
                return SuppressionResult(payload=payload, events=[])
            audit_failure({"failure_reason": "privacy_check_failed"})
            return GatewayResponse(500, dict(PROCESSING_ERROR), headers)
        return result

    def rate_limited_response(self, ctx: RequestContext, decision: RateLimitDecision) -> GatewayResponse:
        self.audit.log_access_failure(ctx.endpoint, "rate_limited", ctx.user_id, ctx)
        return GatewayResponse(429, decision.to_response(), decision.headers())

    def _log_export(
        self,
        ctx: RequestContext,
        export_request: ExportRequest,
        record_count: int,
        success: bool,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.audit.log_export(
            dataset=export_request.dataset,
            format=export_request.format,
            user_id=ctx.user_id,
            date_range=export_request.date_range,
            record_count=record_count,
            success=success,
            ctx=ctx,
            metadata=metadata,
        )

    def _csv_response(
        self,
        export_request: ExportRequest,
        rows: List[Dict[str, Any]],
        headers: Dict[str, str],
    ) -> GatewayResponse:
        if not rows:
            return GatewayResponse(404, {"success": False, "message": "No data to export"}, headers)

        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=list(rows[0].keys()), extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)

        filename = f"{export_request.dataset}_export_{self._clock():%Y%m%d}.csv"
        return GatewayResponse(
            200,
            buffer.getvalue(),
            {**headers, "Content-Disposition": f'attachment; filename="{filename}"'},
            mimetype="text/csv",
        )
