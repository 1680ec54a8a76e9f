"""Shared domain models for the eduguard enforcement layer."""
from .context import (
    Principal,
    RequestContext,
    Role,
)
from .payload import (
    PayloadKind,
    PayloadVisitor,
    ROOT_PATH,
    as_number,
    child_path,
    index_path,
    kind_of,
    normalize_payload,
)

__all__ = [
    "Principal",
    "RequestContext",
    "Role",
    "PayloadKind",
    "PayloadVisitor",
    "ROOT_PATH",
    "as_number",
    "child_path",
    "index_path",
    "kind_of",
    "normalize_payload",
]
