"""Response envelope helpers, exception mapping and exit codes."""

from __future__ import annotations

import sys
from typing import Any

import orjson
import portalocker

from xtab.contracts.common import (
    ChangeRecord,
    ErrorDetail,
    Metrics,
    ResponseEnvelope,
    SyncInfo,
    Target,
    XtabError,
)

# Exit code mapping
EXIT_CODES = {
    "success": 0,
    "validation": 10,
    "conflict": 40,
    "io": 50,
    "parse": 60,
    "unsupported": 70,
    "internal": 90,
}

VALIDATION_CODE_MARKERS = (
    "VALIDATION",
    "INVALID_ARGUMENT",
    "UNKNOWN_COMMAND",
    "USAGE",
)


def success_envelope(
    command: str,
    result: Any,
    *,
    target: Target | None = None,
    changes: list[ChangeRecord] | None = None,
    warnings: list | None = None,
    duration_ms: int = 0,
    sync: SyncInfo | None = None,
) -> ResponseEnvelope:
    return ResponseEnvelope(
        ok=True,
        command=command,
        target=target or Target(),
        result=result,
        changes=changes or [],
        warnings=warnings or [],
        metrics=Metrics(duration_ms=duration_ms),
        sync=sync or SyncInfo(),
    )


def error_envelope(
    command: str,
    code: str,
    message: str,
    *,
    target: Target | None = None,
    details: dict | None = None,
    duration_ms: int = 0,
    sync: SyncInfo | None = None,
) -> ResponseEnvelope:
    return ResponseEnvelope(
        ok=False,
        command=command,
        target=target or Target(),
        errors=[ErrorDetail(code=code, message=message, details=details)],
        metrics=Metrics(duration_ms=duration_ms),
        sync=sync or SyncInfo(),
    )


def error_code_for(exc: BaseException) -> str:
    """Map an exception raised by a command to an envelope error code."""
    if isinstance(exc, XtabError):
        return exc.code
    if isinstance(exc, portalocker.LockException):
        return "ERR_LOCK_HELD"
    if isinstance(exc, FileNotFoundError):
        return "ERR_DOCUMENT_NOT_FOUND"
    if isinstance(exc, OSError):
        return "ERR_IO"
    return "ERR_INTERNAL"


def envelope_from_exception(
    command: str,
    exc: BaseException,
    *,
    target: Target | None = None,
    duration_ms: int = 0,
    sync: SyncInfo | None = None,
) -> ResponseEnvelope:
    details = exc.details if isinstance(exc, XtabError) else None
    return error_envelope(
        command,
        error_code_for(exc),
        str(exc) or type(exc).__name__,
        target=target,
        details=details,
        duration_ms=duration_ms,
        sync=sync,
    )


def output_json(envelope: ResponseEnvelope) -> str:
    """Serialize envelope to JSON string using orjson."""
    data = envelope.model_dump(mode="json")
    return orjson.dumps(data, option=orjson.OPT_INDENT_2).decode()


def print_response(envelope: ResponseEnvelope) -> None:
    """Print response as JSON to stdout."""
    sys.stdout.write(output_json(envelope) + "\n")


def exit_code_for(envelope: ResponseEnvelope) -> int:
    """Determine exit code from envelope errors."""
    if envelope.ok:
        return 0
    if not envelope.errors:
        return EXIT_CODES["internal"]
    code = envelope.errors[0].code.upper()
    if "CONFLICT" in code or "CLOSED" in code:
        return EXIT_CODES["conflict"]
    if "PARSE" in code:
        return EXIT_CODES["parse"]
    if "INCOMPATIBLE" in code or "UNSUPPORTED" in code:
        return EXIT_CODES["unsupported"]
    if any(marker in code for marker in VALIDATION_CODE_MARKERS):
        return EXIT_CODES["validation"]
    if code.startswith("ERR_IO") or "LOCK" in code or code.endswith("NOT_FOUND") or "CLIPBOARD" in code:
        return EXIT_CODES["io"]
    return EXIT_CODES["internal"]
