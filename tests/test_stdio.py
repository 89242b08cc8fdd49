"""Tests for the JSON-lines stdio server."""

from __future__ import annotations

import io
import json

import pytest

from xtab.io.clipboard import MemoryClipboard
from xtab.server.stdio import StdioServer

from conftest import ITEMS_XML

CHANGED_XML = ITEMS_XML.replace("<b>4</b>", "<b>40</b>")


def _lines(out: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in out.getvalue().splitlines() if line.strip()]


@pytest.fixture()
def server():
    out = io.StringIO()
    srv = StdioServer(out=out)
    srv.handle_request({"id": "0", "command": "doc.open", "args": {"doc": "d", "text": ITEMS_XML}})
    return srv, out


def test_open_returns_session_state(server):
    srv, _ = server
    resp = srv.handle_request({"id": "1", "command": "session.state", "args": {"doc": "d"}})
    assert resp["ok"] is True
    assert resp["id"] == "1"
    assert resp["doc"] == "d"
    assert resp["result"]["active_table"] == "Item"
    assert resp["result"]["rows"] == [["1", "2"], ["3", "4"]]


def test_write_emits_replace_event_and_echo_round_trip(server):
    srv, out = server
    srv.handle_request({"id": "1", "command": "selection.set", "args": {"doc": "d", "row": 1, "col": 1}})
    resp = srv.handle_request({"id": "2", "command": "cell.set", "args": {"doc": "d", "row": 0, "col": 0, "value": "Z"}})
    assert resp["ok"] is True
    assert resp["sync"] == {"state": "awaiting_echo", "seq": 1, "dispatched": True}

    event = _lines(out)[-1]
    assert event["event"] == "document.replace"
    assert event["doc"] == "d"
    assert event["seq"] == 1
    assert "<a>Z</a>" in event["text"]

    echo = srv.handle_request({
        "id": "3", "command": "doc.changed",
        "args": {"doc": "d", "text": event["text"], "seq": event["seq"]},
    })
    assert echo["result"]["classification"] == "echo"
    assert echo["sync"]["state"] == "idle"
    assert echo["result"]["state"]["selection"]["focus"] == {"row": 1, "col": 1}


def test_untagged_change_is_external(server):
    srv, _ = server
    srv.handle_request({"id": "1", "command": "selection.set", "args": {"doc": "d", "row": 1, "col": 1}})
    resp = srv.handle_request({"id": "2", "command": "doc.changed", "args": {"doc": "d", "text": CHANGED_XML}})
    assert resp["result"]["classification"] == "external"
    assert resp["result"]["state"]["selection"] is None
    assert resp["result"]["state"]["rows"][1] == ["3", "40"]


def test_uncorrelated_host(server):
    srv, out = server
    srv.handle_request({"id": "1", "command": "doc.open", "args": {"doc": "u", "text": ITEMS_XML, "correlates": False}})
    srv.handle_request({"id": "2", "command": "cell.set", "args": {"doc": "u", "row": 0, "col": 0, "value": "Q"}})
    text = _lines(out)[-1]["text"]
    resp = srv.handle_request({"id": "3", "command": "doc.changed", "args": {"doc": "u", "text": text}})
    assert resp["result"]["classification"] == "echo"


def test_doc_visible_refresh(server):
    srv, _ = server
    resp = srv.handle_request({"id": "1", "command": "doc.visible", "args": {"doc": "d", "text": CHANGED_XML}})
    assert resp["result"] == {"refreshed": True}
    state = srv.handle_request({"id": "2", "command": "session.state", "args": {"doc": "d"}})
    assert state["result"]["rows"][1] == ["3", "40"]


def test_placeholder_written_on_open():
    out = io.StringIO()
    srv = StdioServer(out=out)
    resp = srv.handle_request({"id": "1", "command": "doc.open", "args": {"doc": "e", "text": ""}})
    assert resp["ok"] is True
    assert resp["result"]["active_table"] == "Sheet1"
    event = _lines(out)[-1]
    assert event["event"] == "document.replace"
    assert event["seq"] == 1


def test_clipboard_write_then_paste_transposed(server):
    srv, _ = server
    srv.handle_request({"id": "1", "command": "clipboard.write", "args": {"doc": "d", "text": "x\ny\n"}})
    resp = srv.handle_request({"id": "2", "command": "clipboard.paste_transposed", "args": {"doc": "d", "row": 1, "col": 0}})
    assert resp["ok"] is True
    assert resp["result"]["pending"] is False
    assert resp["result"]["applied"] == 2


def test_deferred_clipboard_reports_pending():
    clip = MemoryClipboard(deferred=True)
    srv = StdioServer(out=io.StringIO(), clipboard_factory=lambda: clip)
    srv.handle_request({"id": "0", "command": "doc.open", "args": {"doc": "d", "text": ITEMS_XML}})
    resp = srv.handle_request({"id": "1", "command": "clipboard.paste_transposed", "args": {"doc": "d"}})
    assert resp["result"] == {"pending": True}
    clip.resolve("late")
    state = srv.handle_request({"id": "2", "command": "session.state", "args": {"doc": "d"}})
    assert state["result"]["rows"][0] == ["late", "2"]


def test_errors_are_envelopes(server):
    srv, _ = server
    missing = srv.handle_request({"id": "1", "command": "session.state", "args": {"doc": "nope"}})
    assert missing["ok"] is False
    assert missing["errors"][0]["code"] == "ERR_DOCUMENT_NOT_FOUND"

    bad = srv.handle_request({"id": "2", "command": "col.rename", "args": {"doc": "d", "old": "a", "new": "has space"}})
    assert bad["errors"][0]["code"] == "ERR_VALIDATION"

    malformed = srv.handle_request({"id": "3", "command": "doc.open", "args": {"doc": "m", "text": "<Root>"}})
    assert malformed["errors"][0]["code"] == "ERR_PARSE"


def test_close_document(server):
    srv, _ = server
    assert srv.handle_request({"id": "1", "command": "doc.close", "args": {"doc": "d"}})["ok"]
    resp = srv.handle_request({"id": "2", "command": "cell.get", "args": {"doc": "d", "row": 0, "col": 0}})
    assert resp["errors"][0]["code"] == "ERR_DOCUMENT_NOT_FOUND"


def test_run_loop():
    out = io.StringIO()
    srv = StdioServer(out=out)
    requests = [
        "not json",
        "[1, 2]",
        "",
        json.dumps({"id": "1", "command": "doc.open", "args": {"text": ITEMS_XML}}),
        json.dumps({"id": "2", "command": "cell.set", "args": {"row": 1, "col": 1, "value": "8"}}),
        json.dumps({"id": "3", "command": "close"}),
    ]
    srv.run(io.StringIO("\n".join(requests) + "\n"))
    lines = _lines(out)
    assert lines[0]["errors"][0]["code"] == "ERR_INVALID_ARGUMENT"
    assert lines[1]["errors"][0]["code"] == "ERR_INVALID_ARGUMENT"
    assert lines[2]["id"] == "1" and lines[2]["ok"] is True
    assert lines[3]["event"] == "document.replace"
    assert lines[4]["id"] == "2" and lines[4]["result"] == {"changed": True}
    assert lines[5]["id"] == "3" and lines[5]["result"] == "closed"


def test_save_trace(tmp_path, server):
    srv, _ = server
    srv.handle_request({"id": "1", "command": "cell.set", "args": {"doc": "d", "row": 0, "col": 0, "value": "T"}})
    path = srv.save_trace(tmp_path / "trace.json")
    data = json.loads(open(path, encoding="utf-8").read())
    assert any(e.get("kind") == "write" for e in data["entries"])
