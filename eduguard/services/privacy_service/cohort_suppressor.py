"""Minimum cohort size enforcement (k-anonymity) for analytics responses.

Suppress sensitive metrics if the cohort behind them has fewer than
k = 5 individuals, so aggregated reports cannot be reverse-engineered
into individual learner data.

The cohort size of a node is read from well-known count fields. When a
node is below threshold, its sensitive metrics are nulled and flagged
with ``insufficient_data``, and its immediate nested maps are
suppressed with the same cohort size. Traversal below them continues,
re-evaluating each node's own cohort size.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from eduguard.shared.models import (
    PayloadKind,
    PayloadVisitor,
    ROOT_PATH,
    as_number,
    child_path,
    index_path,
    kind_of,
)
from .config import (
    COHORT_SIZE_FIELDS,
    INSUFFICIENT_DATA_REASON,
    NESTED_COHORT_SIZE_FIELD,
    SENSITIVE_METRICS,
    PrivacyConfig,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CohortSuppressionEvent:
    """Metrics nulled at one node.

    Attributes:
        path: Location of the node in the payload
        cohort_size: Number of individuals behind the node
        threshold: k in force
        suppressed_fields: Sensitive metrics that were nulled
    """
    path: str
    cohort_size: int
    threshold: int
    suppressed_fields: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "cohort_size": self.cohort_size,
            "threshold": self.threshold,
            "suppressed_fields": list(self.suppressed_fields),
        }


@dataclass(frozen=True)
class SuppressionResult:
    """Payload with k-anonymity applied.

    Attributes:
        payload: Same shape as the input with selected metrics nulled
        events: One entry per suppressed node
    """
    payload: Any
    events: List[CohortSuppressionEvent] = field(default_factory=list)

    @property
    def suppressed(self) -> bool:
        return bool(self.events)


def extract_cohort_size(node: Any) -> Optional[int]:
    """Number of individuals behind a node, if the node says.

    Maps: first numeric field of COHORT_SIZE_FIELDS, then
    ``studentSummary.total``. Lists: the cohort size of the first element.
    """
    kind = kind_of(node)

    if kind is PayloadKind.LIST:
        return extract_cohort_size(node[0]) if node else None

    if kind is not PayloadKind.MAP:
        return None

    for name in COHORT_SIZE_FIELDS:
        size = as_number(node.get(name))
        if size is not None:
            return int(size)

    outer, inner = NESTED_COHORT_SIZE_FIELD
    summary = node.get(outer)
    if kind_of(summary) is PayloadKind.MAP:
        size = as_number(summary.get(inner))
        if size is not None:
            return int(size)

    return None


class _CohortVisitor(PayloadVisitor[Any]):
    """Rebuilds the payload, suppressing small cohorts.

    Containers are copied as they are visited, so the input payload is
    never modified.
    """

    def __init__(self, threshold: int):
        self.threshold = threshold
        self.events: List[CohortSuppressionEvent] = []

    def visit_string(self, value, path, depth):
        return value

    def visit_number(self, value, path, depth):
        return value

    def visit_bool(self, value, path, depth):
        return value

    def visit_null(self, path, depth):
        return None

    def visit_map(self, value, path, depth):
        node = dict(value)
        size = extract_cohort_size(node)
        below = size is not None and size < self.threshold
        if below:
            self._suppress(node, size, path)

        for key, child in list(node.items()):
            if not kind_of(child).is_container:
                continue
            current = child_path(path, key)
            if below and kind_of(child) is PayloadKind.MAP:
                child = dict(child)
                self._suppress(child, size, current)
            node[key] = self.visit(child, current, depth + 1)

        return node

    def visit_list(self, value, path, depth):
        size = extract_cohort_size(value)
        below = size is not None and size < self.threshold

        result = []
        for i, child in enumerate(value):
            current = index_path(path, i)
            if below and kind_of(child) is PayloadKind.MAP:
                child = dict(child)
                self._suppress(child, size, current)
            result.append(self.visit(child, current, depth + 1))
        return result

    def _suppress(self, node: Dict[str, Any], cohort_size: int, path: str) -> None:
        suppressed = tuple(
            metric for metric in SENSITIVE_METRICS
            if node.get(metric) is not None
        )
        if not suppressed:
            return

        for metric in suppressed:
            node[metric] = None
        node["insufficient_data"] = True
        node["insufficient_data_reason"] = INSUFFICIENT_DATA_REASON

        self.events.append(CohortSuppressionEvent(
            path=path,
            cohort_size=cohort_size,
            threshold=self.threshold,
            suppressed_fields=suppressed,
        ))


class CohortSuppressor:
    """Enforces minimum cohort size on analytics payloads."""

    def __init__(self, config: Optional[PrivacyConfig] = None):
        """Initialize suppressor.

        Args:
            config: Privacy configuration (k threshold, production flag)
        """
        self.config = config or PrivacyConfig()

        logger.info(
            "COHORT_SUPPRESSOR_INITIALIZED",
            extra={"k_threshold": self.config.k_threshold}
        )

    @property
    def threshold(self) -> int:
        return self.config.k_threshold

    def enforce(self, payload: Any, endpoint: str = "unknown_endpoint") -> SuppressionResult:
        """Apply k-anonymity to a payload.

        Args:
            payload: Analytics payload (not modified)
            endpoint: Endpoint label for logging

        Returns:
            SuppressionResult with the sanitized payload and events

        Raises:
            TypeError: If a node is not part of the payload variant

        Logs:
            - COHORT_SUPPRESSION: When any metric was suppressed
            - COHORT_SUPPRESSION_DETAIL: Per event, outside production
        """
        visitor = _CohortVisitor(self.threshold)
        sanitized = visitor.visit(payload, ROOT_PATH, 1)

        if visitor.events:
            logger.warning(
                "COHORT_SUPPRESSION",
                extra={
                    "endpoint": endpoint,
                    "events": len(visitor.events),
                    "k_threshold": self.threshold,
                    "action": "DATA_SUPPRESSED",
                }
            )
            if not self.config.production:
                for event in visitor.events:
                    logger.info("COHORT_SUPPRESSION_DETAIL", extra=event.to_dict())

        return SuppressionResult(payload=sanitized, events=visitor.events)
