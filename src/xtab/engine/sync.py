"""SyncEngine: keeps the document text and the in-memory grid consistent.

Every mutation is serialized and dispatched as a whole-content replace tagged
with a sequence number. Change notifications that come back are classified
as the echo of one of our writes (view state kept) or as an external change
(view state reset). Hosts that report the sequence number of the write a
notification belongs to are trusted; for the others a flag plus a grace
window after the last write decides.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from enum import Enum

from xtab.config import EditorConfig
from xtab.contracts.common import ParseError, XtabError
from xtab.contracts.responses import EditCursor
from xtab.engine.context import SessionContext
from xtab.io.documents import DocumentStore
from xtab.observe.events import EventEmitter, TraceRecorder
from xtab.tree.codec import parse, serialize


class SyncState(str, Enum):
    IDLE = "idle"
    AWAITING_ECHO = "awaiting_echo"


class Classification(str, Enum):
    ECHO = "echo"
    STALE_ECHO = "stale_echo"
    IGNORED = "ignored"
    EXTERNAL = "external"
    PARSE_ERROR = "parse_error"
    CLOSED = "closed"


class SessionClosed(XtabError):
    code = "ERR_SESSION_CLOSED"


class SyncEngine:
    """Owns the SessionContext of one open document and its host."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        doc_id: str = "doc",
        config: EditorConfig | None = None,
        events: EventEmitter | None = None,
        trace: TraceRecorder | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.doc_id = doc_id
        self.config = config or EditorConfig()
        self.events = events or EventEmitter(self.config.emit_events)
        self.trace = trace or TraceRecorder()
        self.clock = clock
        self.lock = threading.RLock()
        self.ctx: SessionContext | None = None
        store.subscribe(self.on_document_changed)

    # -- lifecycle ---------------------------------------------------------

    @property
    def context(self) -> SessionContext:
        if self.ctx is None:
            raise SessionClosed(f"Document {self.doc_id} is not open")
        return self.ctx

    def open(self) -> SessionContext:
        """Load the document. A malformed document raises ParseError."""
        with self.lock:
            ctx = SessionContext(self.doc_id, config=self.config)
            text = self.store.get_text()
            ctx.tree = parse(text)
            ctx.book.last_known_text = text
            ctx.rediscover(preserve=False)
            self.ctx = ctx
            self.events.emit("document.open", {
                "doc": self.doc_id,
                "tables": [t.name for t in ctx.tables],
                "status": ctx.status.state,
            })
            if ctx.ensure_tables():
                self.events.emit("document.placeholder", {"doc": self.doc_id, "table": ctx.active_name})
                self.flush("placeholder")
            return ctx

    def close(self) -> None:
        with self.lock:
            if self.ctx is not None:
                self.events.emit("document.close", {"doc": self.doc_id})
            self.ctx = None

    @property
    def state(self) -> SyncState:
        ctx = self.ctx
        if ctx is None:
            return SyncState.IDLE
        self._expire(ctx)
        if ctx.book.in_flight or ctx.book.internal_flag:
            return SyncState.AWAITING_ECHO
        return SyncState.IDLE

    def _expire(self, ctx: SessionContext) -> None:
        """Forget writes whose echo has not arrived within the grace window."""
        now = self.clock()
        grace = self.config.echo_grace_seconds
        expired = [seq for seq, at in ctx.book.in_flight.items() if now - at > grace]
        for seq in expired:
            del ctx.book.in_flight[seq]
            self.trace.record("sync", {"kind": "expired", "seq": seq})
        if expired and not ctx.book.in_flight:
            ctx.book.internal_flag = False

    # -- write path --------------------------------------------------------

    def flush(self, reason: str = "edit") -> bool:
        """Serialize the tree and dispatch it. Returns True if a write went out."""
        with self.lock:
            ctx = self.context
            if ctx.editing is not None:
                self.trace.record("sync", {"kind": "deferred", "reason": reason})
                return False
            if not ctx.status.editable:
                return False
            # The mutation may have removed the last table.
            ctx.rediscover(preserve=True)
            if ctx.ensure_tables():
                self.events.emit("document.placeholder", {"doc": self.doc_id, "table": ctx.active_name})
            try:
                text = serialize(ctx.tree, indent=self.config.indent)
            except ParseError as e:
                self.events.emit("document.write_failed", {"doc": self.doc_id, "error": str(e)})
                self.trace.record("sync", {"kind": "write_failed", "reason": reason, "error": str(e)})
                ctx.rediscover(preserve=True)
                return False
            if text == ctx.book.last_known_text:
                self.trace.record("sync", {"kind": "unchanged", "reason": reason})
                ctx.rediscover(preserve=True)
                return False

            book = ctx.book
            book.seq += 1
            seq = book.seq
            previous = (book.last_self_written, book.last_known_text)
            book.last_self_written = book.last_known_text = text
            book.in_flight[seq] = self.clock()
            book.last_write_at = book.in_flight[seq]
            book.internal_flag = True
            try:
                self.store.replace(text, seq)
            except Exception:
                book.in_flight.pop(seq, None)
                book.last_self_written, book.last_known_text = previous
                book.internal_flag = bool(book.in_flight)
                self.trace.record("sync", {"kind": "write_error", "seq": seq, "reason": reason})
                raise
            ctx.rediscover(preserve=True)
            self.events.emit("document.write", {"doc": self.doc_id, "seq": seq, "reason": reason, "bytes": len(text)})
            self.trace.record("sync", {"kind": "write", "seq": seq, "reason": reason})
            return True

    # -- notification path -------------------------------------------------

    def on_document_changed(self, text: str, seq: int | None = None) -> Classification:
        """Classify and apply a change notification carrying the full new text."""
        with self.lock:
            ctx = self.ctx
            if ctx is None:
                return Classification.CLOSED
            self._expire(ctx)
            book = ctx.book

            if self.store.correlates_writes:
                if seq is not None and seq in book.in_flight:
                    kind = self._echo(ctx, text, seq)
                elif seq is not None and seq <= book.seq:
                    kind = self._stale(ctx, seq)
                elif text in (book.last_self_written, book.last_known_text):
                    kind = self._ignore("unchanged")
                else:
                    kind = self._external(ctx, text)
            elif book.internal_flag:
                kind = self._echo(ctx, text, None)
            elif text in (book.last_self_written, book.last_known_text):
                kind = self._ignore("unchanged")
            elif book.last_write_at is not None and self.clock() - book.last_write_at <= self.config.echo_grace_seconds:
                kind = self._echo(ctx, text, None)
            else:
                kind = self._external(ctx, text)

            self.trace.record("sync", {"kind": kind.value, "seq": seq})
            return kind

    def _ignore(self, reason: str) -> Classification:
        self.events.emit("document.ignored", {"doc": self.doc_id, "reason": reason})
        return Classification.IGNORED

    def _stale(self, ctx: SessionContext, seq: int) -> Classification:
        """Echo of a write that was already superseded or expired: keep the in-memory tree."""
        self.events.emit("document.echo", {"doc": self.doc_id, "seq": seq, "stale": True})
        return Classification.STALE_ECHO

    def _echo(self, ctx: SessionContext, text: str, seq: int | None) -> Classification:
        book = ctx.book
        if seq is not None:
            for s in [s for s in book.in_flight if s <= seq]:
                del book.in_flight[s]
        elif text == book.last_self_written:
            book.in_flight.clear()
        elif book.in_flight:
            del book.in_flight[min(book.in_flight)]
        newer_pending = bool(book.in_flight)
        book.internal_flag = newer_pending

        if newer_pending:
            # A newer write is still out; its echo will carry the latest text.
            ctx.rediscover(preserve=True)
            self.events.emit("document.echo", {"doc": self.doc_id, "seq": seq, "stale": True})
            return Classification.STALE_ECHO

        try:
            tree = parse(text, force_list=ctx.force_list())
        except ParseError as e:
            self.events.emit("document.parse_error", {"doc": self.doc_id, "error": str(e)})
            return Classification.PARSE_ERROR
        ctx.tree = tree
        ctx.rediscover(preserve=True)
        book.last_self_written = text
        book.last_known_text = text
        self.events.emit("document.echo", {"doc": self.doc_id, "seq": seq, "stale": False})
        if ctx.ensure_tables():
            self.events.emit("document.placeholder", {"doc": self.doc_id, "table": ctx.active_name})
            self.flush("placeholder")
        return Classification.ECHO

    def _external(self, ctx: SessionContext, text: str) -> Classification:
        try:
            tree = parse(text)
        except ParseError as e:
            self.events.emit("document.parse_error", {"doc": self.doc_id, "error": str(e)})
            return Classification.PARSE_ERROR
        if ctx.editing is not None:
            ctx.last_discarded_edit = EditCursor.model_validate(ctx.editing.model_dump())
            self.events.emit("edit.discarded", {
                "doc": self.doc_id,
                "row": ctx.editing.row,
                "col": ctx.editing.col,
                "buffer": ctx.editing.buffer,
            })
        ctx.tree = tree
        ctx.book.last_known_text = text
        ctx.book.internal_flag = False
        ctx.book.in_flight.clear()
        ctx.rediscover(preserve=False)
        self.events.emit("document.reset", {
            "doc": self.doc_id,
            "tables": [t.name for t in ctx.tables],
            "status": ctx.status.state,
        })
        if ctx.ensure_tables():
            self.flush("placeholder")
        return Classification.EXTERNAL

    def on_visible(self) -> bool:
        """Silent refresh from the host, skipped while a write is pending."""
        with self.lock:
            ctx = self.ctx
            if ctx is None or self.state is SyncState.AWAITING_ECHO:
                return False
            if ctx.editing is not None:
                return False
            text = self.store.get_text()
            if text in (ctx.book.last_self_written, ctx.book.last_known_text):
                return False
            try:
                tree = parse(text, force_list=ctx.force_list())
            except ParseError as e:
                self.events.emit("document.parse_error", {"doc": self.doc_id, "error": str(e)})
                return False
            ctx.tree = tree
            ctx.book.last_known_text = text
            ctx.rediscover(preserve=True)
            self.trace.record("sync", {"kind": "refresh"})
            self.events.emit("document.refresh", {"doc": self.doc_id})
            return True
