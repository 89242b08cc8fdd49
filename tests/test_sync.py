"""Tests for SyncEngine write/echo bookkeeping and change classification."""

from __future__ import annotations

import pytest

from xtab.contracts.common import ParseError
from xtab.engine.discovery import discover
from xtab.engine.session import EditSession
from xtab.engine.sync import Classification, SessionClosed, SyncEngine, SyncState
from xtab.io.documents import MemoryDocument
from xtab.tree.codec import parse

from conftest import ITEMS_XML, OFFICE_XML

CHANGED_XML = ITEMS_XML.replace("<a>1</a>", "<a>9</a>")
COMPACT_XML = "<Root><Items><Item><a>1</a><b>2</b></Item><Item><a>3</a><b>4</b></Item></Items></Root>"


def _focus(h) -> tuple[int, int] | None:
    sel = h.ctx.selection
    return None if sel is None else (sel.focus.row, sel.focus.col)


# ---------------------------------------------------------------------------
# Echoes
# ---------------------------------------------------------------------------

def test_tagged_echo_keeps_view_state(items):
    s = items.session
    s.select(1, 1)
    s.set_frozen_rows(1)
    s.write_cell(0, 0, "X")
    assert items.engine.state is SyncState.AWAITING_ECHO
    assert items.store.writes[-1][1] == 1

    items.store.deliver()

    assert items.kinds()[-1] == "echo"
    assert items.engine.state is SyncState.IDLE
    assert _focus(items) == (1, 1)
    assert items.ctx.grid().state.frozen_row_count == 1
    assert items.ctx.book.last_self_written == items.store.text
    assert "document.echo" in items.events.names()


def test_padded_value_survives_its_echo(items):
    items.session.write_cell(0, 0, "  padded  ")
    items.store.deliver()
    assert items.kinds()[-1] == "echo"
    assert items.ctx.grid().read_cell(0, 0) == "  padded  "


def test_reprocessing_same_text_is_ignored(items):
    s = items.session
    s.write_cell(0, 0, "X")
    items.store.deliver()
    s.select(1, 0)
    items.store.notify(items.store.text)
    items.store.deliver()
    assert items.kinds()[-1] == "ignored"
    assert _focus(items) == (1, 0)
    assert items.ctx.grid().read_cell(0, 0) == "X"


def test_stale_echo_keeps_in_memory_tree(items):
    s = items.session
    s.write_cell(0, 0, "A")
    s.write_cell(0, 1, "B")
    assert sorted(items.ctx.book.in_flight) == [1, 2]

    items.store.deliver(limit=1)
    assert items.kinds()[-1] == "stale_echo"
    assert items.ctx.grid().rows_text()[0] == ["A", "B"]
    assert items.engine.state is SyncState.AWAITING_ECHO

    items.store.deliver()
    assert items.kinds()[-1] == "echo"
    assert items.engine.state is SyncState.IDLE
    assert items.ctx.grid().rows_text()[0] == ["A", "B"]


def test_late_echo_after_expiry_is_stale(items):
    items.session.write_cell(0, 0, "A")
    items.clock.advance(5)
    assert items.engine.state is SyncState.IDLE
    items.store.deliver()
    assert items.kinds()[-1] == "stale_echo"
    assert items.ctx.grid().read_cell(0, 0) == "A"


def test_in_flight_write_expires_without_echo(make_harness):
    h = make_harness(ITEMS_XML, echo=False)
    h.session.write_cell(0, 0, "A")
    assert h.engine.state is SyncState.AWAITING_ECHO
    h.clock.advance(1.5)
    assert h.engine.state is SyncState.AWAITING_ECHO
    h.clock.advance(1.0)
    assert h.engine.state is SyncState.IDLE
    assert "expired" in h.kinds()


def test_single_row_table_survives_echo(items):
    items.session.delete_row(0)
    assert discover(parse(items.store.text)) == []
    items.store.deliver()
    assert items.kinds()[-1] == "echo"
    assert [t.name for t in items.ctx.tables] == ["Item"]
    assert items.ctx.grid().rows_text() == [["3", "4"]]


# ---------------------------------------------------------------------------
# Placeholder after the last table disappears
# ---------------------------------------------------------------------------

def test_deleting_every_row_writes_placeholder(items):
    s = items.session
    s.delete_row(0)
    items.store.deliver()
    s.delete_row(0)
    assert items.ctx.active_name == "Sheet1"
    assert items.ctx.grid().row_count == 5
    assert "<Sheet1>" in items.store.text
    items.store.deliver()
    assert [t.name for t in items.ctx.tables] == ["Sheet1"]
    s.write_cell(0, 0, "again")
    assert items.ctx.grid().read_cell(0, 0) == "again"


def test_deleting_only_table_writes_placeholder(items):
    items.session.delete_table(name="Item")
    items.store.deliver()
    assert [t.name for t in items.ctx.tables] == ["Sheet1"]
    assert items.ctx.active_index == 0
    assert "<Sheet1>" in items.store.text
    assert "Items" not in items.store.text


def test_emptied_placeholder_is_refilled(make_harness):
    h = make_harness("<Root/>")
    for _ in range(5):
        h.session.delete_row(0)
        h.store.deliver()
    assert h.ctx.active_name == "Sheet1"
    assert h.ctx.grid().row_count == 5


def test_echo_without_tables_writes_placeholder(items):
    items.session.write_cell(0, 0, "X")
    items.store.drop_pending()
    items.store.notify("<Root/>", 1)
    items.store.deliver()
    assert "echo" in items.kinds()
    assert items.ctx.active_name == "Sheet1"
    assert items.store.writes[-1][1] == 2
    assert "<Sheet1>" in items.store.writes[-1][0]
    assert "document.placeholder" in items.events.names()


# ---------------------------------------------------------------------------
# External changes
# ---------------------------------------------------------------------------

def test_external_change_resets_view(items):
    s = items.session
    s.select(1, 1)
    s.set_frozen_rows(1)
    items.store.external_write(CHANGED_XML)
    items.store.deliver()
    assert items.kinds()[-1] == "external"
    assert items.ctx.selection is None
    assert items.ctx.active_name == "Item"
    assert items.ctx.grid().state.frozen_row_count == 0
    assert items.ctx.grid().read_cell(0, 0) == "9"
    assert "document.reset" in items.events.names()


def test_external_change_detection_is_textual(items):
    items.session.select(1, 1)
    items.store.external_write(COMPACT_XML)
    items.store.deliver()
    assert items.kinds()[-1] == "external"
    assert items.ctx.selection is None


def test_untagged_change_on_correlating_host_is_external_inside_window(items):
    items.session.select(1, 1)
    items.session.write_cell(0, 0, "A")
    items.store.drop_pending()
    kind = items.engine.on_document_changed(CHANGED_XML, None)
    assert kind is Classification.EXTERNAL
    assert items.ctx.selection is None
    assert items.engine.state is SyncState.IDLE


def test_external_change_discards_pending_edit(items):
    s = items.session
    s.start_edit(0, 1)
    s.update_buffer("draft")
    items.store.external_write(CHANGED_XML)
    items.store.deliver()
    assert items.ctx.editing is None
    assert items.ctx.last_discarded_edit.buffer == "draft"
    assert (items.ctx.last_discarded_edit.row, items.ctx.last_discarded_edit.col) == (0, 1)
    assert "edit.discarded" in items.events.names()


def test_external_parse_error_keeps_last_good_state(items):
    items.session.select(1, 1)
    kind = items.engine.on_document_changed("<Root><Items>", None)
    assert kind is Classification.PARSE_ERROR
    assert _focus(items) == (1, 1)
    assert items.ctx.grid().rows_text() == [["1", "2"], ["3", "4"]]
    assert "document.parse_error" in items.events.names()


def test_external_change_to_foreign_schema_blocks_editing(items):
    items.store.external_write(OFFICE_XML)
    items.store.deliver()
    assert items.ctx.status.state == "incompatible"
    assert items.ctx.active_table is None
    assert items.store.writes == []


def test_external_change_without_tables_gets_placeholder(items):
    items.store.external_write("<Root><Note>hello</Note></Root>")
    items.store.deliver()
    assert items.kinds()[-1] == "external"
    assert items.ctx.active_name == "Sheet1"
    assert len(items.store.writes) == 1
    assert "<Note>hello</Note>" in items.store.text


# ---------------------------------------------------------------------------
# Uncorrelated hosts: flag + grace window
# ---------------------------------------------------------------------------

def test_uncorrelated_echo_by_flag(make_harness):
    h = make_harness(ITEMS_XML, correlates=False)
    h.session.select(1, 1)
    h.session.write_cell(0, 0, "A")
    assert h.store.pending == 1
    h.store.deliver()
    assert h.kinds()[-1] == "echo"
    assert _focus(h) == (1, 1)
    assert not h.ctx.book.internal_flag


def test_uncorrelated_grace_window_misclassifies_fast_external_write(make_harness):
    h = make_harness(ITEMS_XML, correlates=False)
    h.session.write_cell(0, 0, "A")
    h.store.deliver()
    h.session.select(1, 1)

    h.clock.advance(1.0)
    h.store.external_write(CHANGED_XML)
    h.store.deliver()
    assert h.kinds()[-1] == "echo"
    assert _focus(h) == (1, 1)

    h.clock.advance(3.0)
    h.store.external_write(COMPACT_XML)
    h.store.deliver()
    assert h.kinds()[-1] == "external"
    assert h.ctx.selection is None


def test_uncorrelated_known_text_is_ignored(make_harness):
    h = make_harness(ITEMS_XML, correlates=False)
    h.session.write_cell(0, 0, "A")
    h.store.deliver()
    h.clock.advance(10)
    h.store.notify(h.store.text)
    h.store.deliver()
    assert h.kinds()[-1] == "ignored"


# ---------------------------------------------------------------------------
# Lifecycle, placeholder and failures
# ---------------------------------------------------------------------------

def test_placeholder_written_for_document_without_tables(make_harness):
    h = make_harness("<Root/>")
    assert len(h.store.writes) == 1
    assert h.store.text.count("<Sheet1>") == 5
    assert h.ctx.active_name == "Sheet1"
    grid = h.ctx.grid()
    assert (grid.row_count, grid.col_count) == (5, 5)
    assert grid.columns == ["col1", "col2", "col3", "col4", "col5"]
    h.store.deliver()
    assert h.kinds()[-1] == "echo"


def test_placeholder_for_empty_document(make_harness):
    h = make_harness("")
    assert "<Document>" in h.store.text
    assert [t.path for t in h.ctx.tables] == [("Document", "Sheet1")]


def test_foreign_document_is_never_written(make_harness):
    h = make_harness(OFFICE_XML)
    assert h.store.writes == []
    assert h.ctx.status.code == "ERR_SCHEMA_INCOMPATIBLE"
    assert not h.engine.flush()


def test_open_malformed_document_raises():
    engine = SyncEngine(MemoryDocument("<Root><a>"))
    with pytest.raises(ParseError):
        engine.open()
    assert engine.ctx is None


def test_flush_deferred_while_editing(items):
    items.session.start_edit(0, 0)
    items.ctx.grid().write_cell(1, 1, "direct")
    assert not items.engine.flush()
    assert items.store.writes == []
    assert "deferred" in items.kinds()


def test_unserializable_value_skips_write(items):
    items.session.write_cell(0, 0, "bell\x07")
    assert items.store.writes == []
    assert "document.write_failed" in items.events.names()


class _FailingDocument(MemoryDocument):
    def replace(self, text: str, seq: int) -> None:
        raise OSError("disk full")


def test_failed_write_rolls_back_bookkeeping():
    store = _FailingDocument(ITEMS_XML)
    engine = SyncEngine(store)
    engine.open()
    session = EditSession(engine)
    env = session.dispatch("cell.set", {"row": 0, "col": 0, "value": "A"})
    assert not env.ok
    assert env.errors[0].code == "ERR_IO"
    assert engine.state is SyncState.IDLE
    assert engine.context.book.last_known_text == ITEMS_XML


def test_on_visible_refreshes_only_when_idle(items):
    items.session.select(1, 1)
    items.store.text = CHANGED_XML
    assert items.engine.on_visible()
    assert _focus(items) == (1, 1)
    assert items.ctx.grid().read_cell(0, 0) == "9"

    items.session.write_cell(0, 0, "A")
    items.store.text = COMPACT_XML
    assert not items.engine.on_visible()
    assert items.ctx.grid().read_cell(0, 0) == "A"


def test_closed_engine(items):
    items.engine.close()
    assert items.engine.on_document_changed(ITEMS_XML, None) is Classification.CLOSED
    with pytest.raises(SessionClosed):
        items.session.write_cell(0, 0, "x")
    env = items.session.dispatch("cell.get", {"row": 0, "col": 0})
    assert env.errors[0].code == "ERR_SESSION_CLOSED"
