"""Analytics payload variant and traversal.

An analytics response is a JSON-shaped tree:

    Null | Bool | Number | String | List[Payload] | Map[str, Payload]

PayloadKind names each variant. PayloadVisitor dispatches on the kind so
the PII scanner and the cohort suppressor share one traversal and neither
has to probe types ad hoc. Anything outside the variant is rejected
(TypeError) rather than passed through unchecked.
"""
import datetime
import decimal
import math
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar('T')

ROOT_PATH = "root"


class PayloadKind(Enum):
    """Variant tags of an analytics payload node."""
    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    STRING = "string"
    LIST = "list"
    MAP = "map"

    @property
    def is_container(self) -> bool:
        return self in (PayloadKind.LIST, PayloadKind.MAP)


def kind_of(value: Any) -> PayloadKind:
    """Classify a payload node.

    bool is checked before int because bool is an int subclass.

    Raises:
        TypeError: If the value is not part of the payload variant
    """
    if value is None:
        return PayloadKind.NULL
    if isinstance(value, bool):
        return PayloadKind.BOOL
    if isinstance(value, (int, float)):
        return PayloadKind.NUMBER
    if isinstance(value, str):
        return PayloadKind.STRING
    if isinstance(value, list):
        return PayloadKind.LIST
    if isinstance(value, dict):
        return PayloadKind.MAP
    raise TypeError(f"Unsupported analytics payload node: {type(value).__name__}")


def child_path(parent: str, key: str) -> str:
    """Path of a map entry, e.g. ``courses[0].avg_mastery``."""
    if not parent or parent == ROOT_PATH:
        return str(key)
    return f"{parent}.{key}"


def index_path(parent: str, index: int) -> str:
    """Path of a list element, e.g. ``courses[0]``."""
    if not parent or parent == ROOT_PATH:
        return f"[{index}]"
    return f"{parent}[{index}]"


def normalize_payload(value: Any) -> Any:
    """Convert handler output into the payload variant.

    Database drivers hand back Decimal, date and tuple values, and
    handlers sometimes return dataclasses. These are converted the way
    the JSON encoder would see them. Unknown types are left alone so
    kind_of() rejects them later.
    """
    if is_dataclass(value) and not isinstance(value, type):
        value = asdict(value)
    if isinstance(value, dict):
        return {str(k): normalize_payload(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize_payload(v) for v in value]
    if isinstance(value, decimal.Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (datetime.datetime, datetime.date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


class PayloadVisitor(Generic[T]):
    """Recursive visitor over an analytics payload.

    ``visit`` dispatches to exactly one ``visit_<kind>`` method per node.
    Subclasses override the container methods and, where they care, the
    scalar ones; scalar defaults return ``default_result()``.
    ``depth`` is 1 for the root node.
    """

    def visit(self, value: Any, path: str = ROOT_PATH, depth: int = 1) -> T:
        kind = kind_of(value)
        if kind is PayloadKind.MAP:
            return self.visit_map(value, path, depth)
        if kind is PayloadKind.LIST:
            return self.visit_list(value, path, depth)
        if kind is PayloadKind.STRING:
            return self.visit_string(value, path, depth)
        if kind is PayloadKind.NUMBER:
            return self.visit_number(value, path, depth)
        if kind is PayloadKind.BOOL:
            return self.visit_bool(value, path, depth)
        return self.visit_null(path, depth)

    def default_result(self) -> T:
        raise NotImplementedError

    def visit_map(self, value: Dict[str, Any], path: str, depth: int) -> T:
        raise NotImplementedError

    def visit_list(self, value: List[Any], path: str, depth: int) -> T:
        raise NotImplementedError

    def visit_string(self, value: str, path: str, depth: int) -> T:
        return self.default_result()

    def visit_number(self, value: Any, path: str, depth: int) -> T:
        return self.default_result()

    def visit_bool(self, value: bool, path: str, depth: int) -> T:
        return self.default_result()

    def visit_null(self, path: str, depth: int) -> T:
        return self.default_result()


def as_number(value: Any) -> Optional[float]:
    """Numeric reading of a node, accepting numeric strings.

    Aggregate rows frequently arrive from the database driver as strings
    ("12") or Decimals. Booleans are not numbers here.
    """
    kind = kind_of(value) if not isinstance(value, decimal.Decimal) else PayloadKind.NUMBER
    if kind is PayloadKind.NUMBER:
        number = float(value)
    elif kind is PayloadKind.STRING:
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None
