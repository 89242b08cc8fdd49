"""Pydantic models for responses, session state and errors."""

from xtab.contracts.common import (
    ChangeRecord,
    EditingRefused,
    ErrorDetail,
    Metrics,
    ParseError,
    ResponseEnvelope,
    StructuralConflict,
    SyncInfo,
    Target,
    ValidationError,
    WarningDetail,
    XtabError,
)
from xtab.contracts.responses import (
    CellPos,
    DocumentMeta,
    EditCursor,
    GridState,
    Selection,
    SessionSnapshot,
    SessionStatus,
    TableMeta,
)

__all__ = [
    "CellPos",
    "ChangeRecord",
    "EditingRefused",
    "DocumentMeta",
    "EditCursor",
    "ErrorDetail",
    "GridState",
    "Metrics",
    "ParseError",
    "ResponseEnvelope",
    "Selection",
    "SessionSnapshot",
    "SessionStatus",
    "StructuralConflict",
    "SyncInfo",
    "TableMeta",
    "Target",
    "ValidationError",
    "WarningDetail",
    "XtabError",
]
