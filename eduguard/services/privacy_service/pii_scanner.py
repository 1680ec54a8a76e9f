"""PII leakage scanner for analytics responses.

Analytics endpoints must return aggregates. A response is blocked when:
- any map key is a known identifying field (user_id, email, ...)
- a container is nested 4 or more levels deep (root is level 1)
- a list looks like database rows (first element carries 3+ of
  id/created_at/updated_at/status/role)

A blocked payload is never sent. Only field names and paths are ever
logged or reported, never values.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from eduguard.shared.models import (
    PayloadKind,
    PayloadVisitor,
    ROOT_PATH,
    child_path,
    index_path,
    kind_of,
)
from .config import FORBIDDEN_KEYS, SUSPICIOUS_RECORD_FIELDS, PrivacyConfig

logger = logging.getLogger(__name__)

PRODUCTION_MESSAGE = "Analytics response blocked: privacy policy violation"


class ViolationRule(Enum):
    """Why a payload was rejected."""
    FORBIDDEN_KEY = "forbidden_key"
    EXCESSIVE_NESTING = "excessive_nesting"
    RECORD_LIKE_LIST = "record_like_list"


@dataclass(frozen=True)
class Violation:
    """One reason a payload cannot be sent."""
    path: str
    rule: ViolationRule
    detail: str

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "rule": self.rule.value, "detail": self.detail}


class PrivacyViolation(Exception):
    """Raised when an analytics payload fails the PII scan.

    Terminal for the request: the payload is discarded and the handler
    or query producing it must be fixed. Never retried.
    """

    def __init__(
        self,
        violations: List[Violation],
        endpoint: str,
        production: bool = False,
    ):
        self.violations = list(violations)
        self.endpoint = endpoint
        self.production = production
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(self.client_message(production))

    def client_message(self, production: bool) -> str:
        if production:
            return PRODUCTION_MESSAGE
        return "PII detected in analytics response: " + " | ".join(
            v.detail for v in self.violations
        )

    def to_response(self, production: Optional[bool] = None) -> Dict[str, Any]:
        """403 body; violation detail only outside production."""
        if production is None:
            production = self.production

        response: Dict[str, Any] = {
            "success": False,
            "error": "privacy_violation",
            "message": self.client_message(production),
        }
        if not production:
            response["violations"] = [v.to_dict() for v in self.violations]
            response["endpoint"] = self.endpoint
            response["timestamp"] = self.timestamp.strftime("%Y-%m-%d %H:%M:%S")
        return response


class _ViolationCollector(PayloadVisitor[List[Violation]]):
    """Walks a payload and collects violations."""

    def __init__(self, config: PrivacyConfig):
        self.config = config

    def default_result(self) -> List[Violation]:
        return []

    def _too_deep(self, path: str, depth: int) -> Optional[Violation]:
        if depth <= self.config.max_depth:
            return None
        return Violation(
            path=path,
            rule=ViolationRule.EXCESSIVE_NESTING,
            detail=f"Excessive nesting depth ({depth} levels) at path: {path}",
        )

    def visit_map(self, value, path, depth):
        too_deep = self._too_deep(path, depth)
        if too_deep:
            return [too_deep]

        violations = []
        for key, child in value.items():
            current = child_path(path, key)
            if str(key).lower() in FORBIDDEN_KEYS:
                violations.append(Violation(
                    path=current,
                    rule=ViolationRule.FORBIDDEN_KEY,
                    detail=f"Forbidden key '{key}' at path: {current}",
                ))
            violations.extend(self.visit(child, current, depth + 1))
        return violations

    def visit_list(self, value, path, depth):
        too_deep = self._too_deep(path, depth)
        if too_deep:
            return [too_deep]

        violations = []
        record_like = self._record_like(value, path)
        if record_like:
            violations.append(record_like)

        for i, child in enumerate(value):
            violations.extend(self.visit(child, index_path(path, i), depth + 1))
        return violations

    def _record_like(self, items: List[Any], path: str) -> Optional[Violation]:
        if not items or kind_of(items[0]) is not PayloadKind.MAP:
            return None

        first = items[0]
        present = [f for f in SUSPICIOUS_RECORD_FIELDS if f in first]
        if len(present) < self.config.record_like_min_fields:
            return None

        return Violation(
            path=path,
            rule=ViolationRule.RECORD_LIKE_LIST,
            detail=(
                f"List '{path}' contains {len(items)} object(s) resembling "
                f"individual records (fields: {', '.join(present)})"
            ),
        )


class PIIScanner:
    """Validates analytics payloads before they leave the service."""

    def __init__(self, config: Optional[PrivacyConfig] = None):
        self.config = config or PrivacyConfig()
        self._collector = _ViolationCollector(self.config)

        logger.info(
            "PII_SCANNER_INITIALIZED",
            extra={
                "forbidden_keys": len(FORBIDDEN_KEYS),
                "max_depth": self.config.max_depth,
                "production": self.config.production,
            }
        )

    def scan(self, payload: Any) -> List[Violation]:
        """Collect every violation in a payload.

        Scalars and null payloads have none.

        Raises:
            TypeError: If a node is not part of the payload variant
        """
        return self._collector.visit(payload, ROOT_PATH, 1)

    def validate(self, payload: Any, endpoint: str = "unknown_endpoint") -> None:
        """Scan and block.

        Raises:
            PrivacyViolation: If any violation is found
        """
        violations = self.scan(payload)
        if not violations:
            return

        logger.error(
            "PRIVACY_VIOLATION",
            extra={
                "endpoint": endpoint,
                "violation_count": len(violations),
                "rules": sorted({v.rule.value for v in violations}),
                "paths": [v.path for v in violations],
            }
        )
        if not self.config.production and isinstance(payload, dict):
            logger.debug(
                "PRIVACY_VIOLATION_PAYLOAD_KEYS",
                extra={"endpoint": endpoint, "keys": list(payload.keys())}
            )

        raise PrivacyViolation(violations, endpoint, self.config.production)
