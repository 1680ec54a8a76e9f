"""Export Service: Guard rails for bulk analytics exports.

Exports are checked before any rows are fetched: the requested date range
and estimated row count must be within hard limits, and large requests
must be confirmed by the caller.

This service provides:
- Date range and row count validation with warnings and errors
- Short-lived confirmation tokens for resubmitting large exports
- Export metadata for audit records
"""

from .export_guard import (
    EXPORT_FORMATS,
    ExportGuard,
    ExportLimits,
    ExportParameterInvalid,
    ExportRequest,
    ExportValidation,
    UnknownDataset,
    parse_export_date,
)

__all__ = [
    "EXPORT_FORMATS",
    "ExportGuard",
    "ExportLimits",
    "ExportParameterInvalid",
    "ExportRequest",
    "ExportValidation",
    "UnknownDataset",
    "parse_export_date",
]
