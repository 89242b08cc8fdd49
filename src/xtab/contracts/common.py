"""Common Pydantic models: response envelope, errors, warnings, metrics."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class XtabError(Exception):
    """Base class for engine errors. ``code`` feeds the error envelope."""

    code = "ERR_INTERNAL"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details


class ParseError(XtabError):
    """Raised when document text cannot be parsed or a tree cannot be serialized."""

    code = "ERR_PARSE"


class ValidationError(XtabError):
    """Raised when a command argument is rejected before any mutation."""

    code = "ERR_VALIDATION"


class StructuralConflict(XtabError):
    """Raised when a move/rename/write target does not exist or cannot take the edit."""

    code = "ERR_STRUCTURAL_CONFLICT"


class EditingRefused(XtabError):
    """Raised for edit commands while the document carries an incompatibility status."""

    code = "ERR_SCHEMA_INCOMPATIBLE"


class Target(BaseModel):
    """Identifies the target document/table/cell for a command."""

    file: str | None = None
    doc: str | None = None
    table: str | None = None
    ref: str | None = None


class WarningDetail(BaseModel):
    """Structured warning."""

    code: str
    message: str
    path: str | None = None


class ErrorDetail(BaseModel):
    """Structured error."""

    code: str
    message: str
    details: dict[str, Any] | None = None


class Metrics(BaseModel):
    """Execution metrics."""

    duration_ms: int = 0


class SyncInfo(BaseModel):
    """Write/echo bookkeeping attached to every envelope."""

    state: str = "idle"
    seq: int = 0
    dispatched: bool = False


class ChangeRecord(BaseModel):
    """Describes a single change made by a mutating command."""

    op_id: str | None = None
    type: str
    target: str
    before: Any | None = None
    after: Any | None = None
    impact: dict[str, Any] | None = None
    warnings: list[WarningDetail] = Field(default_factory=list)


class ResponseEnvelope(BaseModel):
    """Standard response envelope returned by every command."""

    ok: bool = True
    command: str = ""
    target: Target = Field(default_factory=Target)
    result: Any = None
    changes: list[ChangeRecord] = Field(default_factory=list)
    warnings: list[WarningDetail] = Field(default_factory=list)
    errors: list[ErrorDetail] = Field(default_factory=list)
    metrics: Metrics = Field(default_factory=Metrics)
    sync: SyncInfo = Field(default_factory=SyncInfo)
