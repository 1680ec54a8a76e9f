"""Export safeguards for bulk analytics exports.

Exports have soft limits on date range and row count. Requests close to
a limit need explicit confirmation (``confirmed=1`` or a confirmation
token); requests over a limit are refused outright.

The confirmation token is base64-encoded JSON and is not signed. It is
checked for shape and expiry only.
"""
import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("json", "csv")

CONFIRMATION_REQUIRED_ERROR = (
    "This export requires confirmation due to size or date range. "
    "Add confirmed=1 parameter."
)


@dataclass(frozen=True)
class ExportLimits:
    """Soft limits for a single export."""
    max_rows: int = 50000
    row_warning_threshold: int = 10000
    max_range_days: int = 365
    range_warning_ratio: float = 0.8
    token_ttl_seconds: int = 300


@dataclass(frozen=True)
class ExportValidation:
    """Result of export pre-flight validation."""
    valid: bool
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    requires_confirmation: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "requires_confirmation": self.requires_confirmation,
        }


@dataclass(frozen=True)
class ExportRequest:
    """Parameters of one export request."""
    dataset: str
    start_date: Optional[str]
    end_date: Optional[str]
    format: str = "json"
    confirmed: bool = False
    confirmation_token: Optional[str] = None

    @property
    def date_range(self) -> Dict[str, Optional[str]]:
        return {"start": self.start_date, "end": self.end_date}

    def parameters(self) -> Dict[str, Any]:
        """Parameters bound into a confirmation token."""
        return {
            "format": self.format,
            "startDate": self.start_date,
            "endDate": self.end_date,
        }

    @classmethod
    def from_args(
        cls,
        args: Mapping[str, str],
        default_dataset: str,
        today: Optional[date] = None,
        default_days: int = 90,
    ) -> "ExportRequest":
        """Build from query parameters.

        Defaults: the last ``default_days`` days, JSON format.
        """
        today = today or datetime.now(timezone.utc).date()
        return cls(
            dataset=args.get("dataset") or default_dataset,
            start_date=args.get("startDate") or (today - timedelta(days=default_days)).isoformat(),
            end_date=args.get("endDate") or today.isoformat(),
            format=(args.get("format") or "json").lower(),
            confirmed=args.get("confirmed") == "1",
            confirmation_token=args.get("confirmation_token") or None,
        )


class UnknownDataset(Exception):
    """Raised by row providers for a dataset they do not serve."""

    def __init__(self, dataset: str):
        self.dataset = dataset
        super().__init__(f"Invalid dataset: {dataset}")


class ExportParameterInvalid(Exception):
    """Raised when an export fails validation.

    The client must resubmit corrected or confirmed parameters.
    """

    def __init__(
        self,
        validation: ExportValidation,
        dataset: str,
        confirmation_token: Optional[str] = None,
    ):
        self.validation = validation
        self.dataset = dataset
        self.confirmation_token = confirmation_token
        super().__init__("Export validation failed: " + ", ".join(validation.errors))

    def to_response(self, production: bool = False) -> Dict[str, Any]:
        """400 body; warnings and token only outside production."""
        response: Dict[str, Any] = {
            "success": False,
            "message": "Export validation failed",
            "errors": list(self.validation.errors),
            "requires_confirmation": self.validation.requires_confirmation,
        }
        if not production:
            response["warnings"] = list(self.validation.warnings)
            if self.confirmation_token:
                response["confirmation_token"] = self.confirmation_token
        return response


def parse_export_date(value: Any) -> Optional[datetime]:
    """Parse YYYY-MM-DD or an ISO-8601 timestamp into an aware datetime."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _range_days(date_range: Mapping[str, Any]) -> Optional[float]:
    start = parse_export_date(date_range.get("start"))
    end = parse_export_date(date_range.get("end"))
    if start is None or end is None:
        return None
    return (end - start).total_seconds() / 86400


class ExportGuard:
    """Pre-flight validator and confirmation tokens for bulk exports."""

    def __init__(
        self,
        limits: Optional[ExportLimits] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.limits = limits or ExportLimits()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        logger.info(
            "EXPORT_GUARD_INITIALIZED",
            extra={
                "max_rows": self.limits.max_rows,
                "max_range_days": self.limits.max_range_days,
            }
        )

    def validate(
        self,
        dataset: str,
        date_range: Mapping[str, Any],
        estimated_rows: int = 0,
        confirmed: bool = False,
    ) -> ExportValidation:
        """Validate export parameters against the soft limits.

        Args:
            dataset: Dataset being exported
            date_range: {"start": date, "end": date}
            estimated_rows: Estimated row count
            confirmed: Whether the caller confirmed a large export

        Returns:
            ExportValidation; any warning without confirmation is an error
        """
        warnings: List[str] = []
        errors: List[str] = []
        limits = self.limits

        start_raw = date_range.get("start")
        end_raw = date_range.get("end")
        start = parse_export_date(start_raw)
        end = parse_export_date(end_raw)

        if not start_raw or not end_raw:
            errors.append("Start and end dates are required.")
        elif start is None or end is None:
            errors.append("Invalid date format. Use YYYY-MM-DD.")
        elif end < start:
            errors.append("End date must be after start date.")
        else:
            range_days = (end - start).total_seconds() / 86400
            if range_days > limits.max_range_days:
                errors.append(
                    f"Date range too large. Maximum {limits.max_range_days} days "
                    f"allowed (requested: {int(range_days)} days)."
                )
            elif range_days > limits.max_range_days * limits.range_warning_ratio:
                warnings.append(
                    f"Large date range: {int(range_days)} days "
                    f"(max: {limits.max_range_days} days)"
                )

        if estimated_rows > limits.max_rows:
            errors.append(
                f"Export too large. Maximum {limits.max_rows:,} rows allowed "
                f"(estimated: {estimated_rows:,} rows)."
            )
        elif estimated_rows > limits.row_warning_threshold:
            warnings.append(
                f"Large export: {estimated_rows:,} rows (limit: {limits.max_rows:,} rows)"
            )

        requires_confirmation = bool(warnings) and not confirmed
        if requires_confirmation:
            errors.append(CONFIRMATION_REQUIRED_ERROR)

        validation = ExportValidation(
            valid=not errors,
            warnings=warnings,
            errors=errors,
            requires_confirmation=requires_confirmation,
        )

        if not validation.valid:
            logger.warning(
                "EXPORT_VALIDATION_FAILED",
                extra={
                    "dataset": dataset,
                    "estimated_rows": estimated_rows,
                    "errors": len(errors),
                    "requires_confirmation": requires_confirmation,
                }
            )
        return validation

    def check(self, request: ExportRequest, estimated_rows: int) -> ExportValidation:
        """Validate a request, treating a live token as confirmation.

        Raises:
            ExportParameterInvalid: If validation fails; carries a fresh
                confirmation token when confirmation is what is missing
        """
        confirmed = request.confirmed
        if not confirmed and request.confirmation_token:
            confirmed = self.validate_confirmation_token(request.confirmation_token) is not None

        validation = self.validate(
            request.dataset,
            request.date_range,
            estimated_rows,
            confirmed,
        )
        if validation.valid:
            return validation

        token = None
        if validation.requires_confirmation:
            token = self.create_confirmation_token(request.dataset, request.parameters())
        raise ExportParameterInvalid(validation, request.dataset, token)

    def is_within_limits(self, date_range: Mapping[str, Any], row_count: int) -> bool:
        """Hard limits only; warnings and confirmation are ignored."""
        range_days = _range_days(date_range)
        if range_days is not None and range_days > self.limits.max_range_days:
            return False
        return row_count <= self.limits.max_rows

    def export_metadata(
        self,
        date_range: Mapping[str, Any],
        row_count: int,
        format: str,
    ) -> Dict[str, Any]:
        """Metadata describing an export, for logs and the response."""
        metadata: Dict[str, Any] = {
            "row_count": row_count,
            "format": format,
            "timestamp": self._clock().strftime("%Y-%m-%d %H:%M:%S"),
        }
        range_days = _range_days(date_range)
        if range_days is not None:
            metadata["date_range_days"] = round(range_days, 1)
            metadata["start_date"] = date_range.get("start")
            metadata["end_date"] = date_range.get("end")
        return metadata

    def create_confirmation_token(self, dataset: str, parameters: Dict[str, Any]) -> str:
        """Token confirming an export for the next few minutes."""
        expires_at = int(self._clock().timestamp()) + self.limits.token_ttl_seconds
        data = {"dataset": dataset, "parameters": parameters, "expires_at": expires_at}
        return base64.b64encode(json.dumps(data).encode("utf-8")).decode("ascii")

    def validate_confirmation_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Decode a token.

        Returns:
            Decoded token data, or None if malformed or expired
        """
        try:
            raw = base64.b64decode(token.encode("ascii"), validate=True)
            data = json.loads(raw.decode("utf-8"))
        except (binascii.Error, UnicodeError, ValueError):
            return None

        if not isinstance(data, dict):
            return None

        expires_at = data.get("expires_at")
        if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)):
            return None
        if expires_at < self._clock().timestamp():
            return None
        return data
