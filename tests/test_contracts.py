"""Tests for response envelopes, error mapping, exit codes and events."""

from __future__ import annotations

import io
import json
from pathlib import Path

import orjson
import portalocker

from xtab.contracts.common import (
    ParseError,
    ResponseEnvelope,
    StructuralConflict,
    Target,
    ValidationError,
)
from xtab.contracts.responses import CellPos, Selection, SessionStatus
from xtab.engine.dispatcher import (
    envelope_from_exception,
    error_code_for,
    error_envelope,
    exit_code_for,
    output_json,
    success_envelope,
)
from xtab.io.clipboard import ClipboardError
from xtab.observe.events import EventEmitter, Timer, TraceRecorder


def test_success_envelope():
    env = success_envelope("cell.get", {"value": "1"}, target=Target(doc="d", table="Item"))
    assert env.ok
    assert env.errors == []
    assert env.sync.state == "idle"
    data = json.loads(output_json(env))
    assert data["result"] == {"value": "1"}
    assert data["target"]["table"] == "Item"


def test_envelope_json_round_trip():
    env = error_envelope("col.move", "ERR_STRUCTURAL_CONFLICT", "Column not found: x", details={"key": "x"})
    restored = ResponseEnvelope.model_validate(orjson.loads(output_json(env)))
    assert restored == env


def test_error_code_mapping():
    assert error_code_for(ValidationError("x")) == "ERR_VALIDATION"
    assert error_code_for(ParseError("x")) == "ERR_PARSE"
    assert error_code_for(portalocker.LockException("held")) == "ERR_LOCK_HELD"
    assert error_code_for(FileNotFoundError("gone")) == "ERR_DOCUMENT_NOT_FOUND"
    assert error_code_for(PermissionError("no")) == "ERR_IO"
    assert error_code_for(RuntimeError("boom")) == "ERR_INTERNAL"


def test_envelope_from_exception_keeps_details():
    env = envelope_from_exception("cell.set", StructuralConflict("nested", details={"cell": "C1"}))
    assert not env.ok
    assert env.errors[0].code == "ERR_STRUCTURAL_CONFLICT"
    assert env.errors[0].details == {"cell": "C1"}


def test_exit_codes():
    def code_for(code: str) -> int:
        return exit_code_for(error_envelope("x", code, "m"))

    assert exit_code_for(success_envelope("x", None)) == 0
    assert code_for("ERR_VALIDATION") == 10
    assert code_for("ERR_INVALID_ARGUMENT") == 10
    assert code_for("ERR_UNKNOWN_COMMAND") == 10
    assert code_for("ERR_STRUCTURAL_CONFLICT") == 40
    assert code_for("ERR_SESSION_CLOSED") == 40
    assert code_for("ERR_IO") == 50
    assert code_for("ERR_LOCK_HELD") == 50
    assert code_for("ERR_DOCUMENT_NOT_FOUND") == 50
    assert code_for(ClipboardError.code) == 50
    assert code_for("ERR_PARSE") == 60
    assert code_for("ERR_SCHEMA_INCOMPATIBLE") == 70
    assert code_for("ERR_INTERNAL") == 90
    assert exit_code_for(ResponseEnvelope(ok=False)) == 90


def test_selection_bounds_are_order_independent():
    sel = Selection(anchor=CellPos(row=3, col=2), focus=CellPos(row=1, col=0))
    assert sel.bounds() == (1, 0, 3, 2)
    assert len(sel.cells()) == 9


def test_session_status_editable():
    assert SessionStatus().editable
    assert not SessionStatus(state="incompatible").editable


def test_event_emitter_writes_ndjson_when_enabled():
    stream = io.StringIO()
    events = EventEmitter(True, stream=stream)
    events.emit("document.write", {"seq": 1})
    line = json.loads(stream.getvalue().strip())
    assert line["event"] == "document.write"
    assert line["data"] == {"seq": 1}


def test_event_emitter_disabled_keeps_bounded_history():
    stream = io.StringIO()
    events = EventEmitter(stream=stream, keep=3)
    for i in range(5):
        events.emit("e", {"i": i})
    assert stream.getvalue() == ""
    assert [e["data"]["i"] for e in events.history] == [2, 3, 4]
    assert events.names() == ["e", "e", "e"]


def test_trace_recorder_save(tmp_path: Path):
    trace = TraceRecorder()
    trace.record("sync", {"kind": "write", "seq": 1})
    trace.record("other", {})
    assert [e["kind"] for e in trace.of("sync")] == ["write"]
    path = trace.save(tmp_path / "trace.json")
    data = json.loads(Path(path).read_text())
    assert data["trace_version"] == "1.0"
    assert len(data["entries"]) == 2


def test_timer():
    with Timer() as t:
        pass
    assert t.elapsed_ms >= 0
