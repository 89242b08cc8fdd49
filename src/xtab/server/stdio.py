"""stdio server mode: JSON line-delimited protocol over stdin/stdout.

The editor host owns the document text. The server answers requests with
response envelopes and emits ``document.replace`` event lines whenever the
engine writes; the host applies the text and reports it back through
``doc.changed`` (with the write's ``seq`` when it can correlate).
"""

from __future__ import annotations

import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import IO, Any

from xtab.config import EditorConfig
from xtab.contracts.common import XtabError
from xtab.engine.dispatcher import envelope_from_exception, success_envelope
from xtab.engine.session import EditSession
from xtab.engine.sync import SyncEngine
from xtab.io.clipboard import Clipboard, MemoryClipboard
from xtab.io.documents import ChangeCallback
from xtab.observe.events import EventEmitter, TraceRecorder


class DocumentNotOpen(XtabError):
    code = "ERR_DOCUMENT_NOT_FOUND"


class HostDocument:
    """Document store whose writes go out as event lines to the editor host."""

    def __init__(self, doc_id: str, text: str, send: Callable[[dict[str, Any]], None], *, correlates_writes: bool = True) -> None:
        self.doc_id = doc_id
        self.text = text
        self.correlates_writes = correlates_writes
        self._send = send
        self._subscribers: list[ChangeCallback] = []

    def get_text(self) -> str:
        return self.text

    def replace(self, text: str, seq: int) -> None:
        self.text = text
        self._send({"event": "document.replace", "doc": self.doc_id, "text": text, "seq": seq})

    def subscribe(self, callback: ChangeCallback) -> None:
        self._subscribers.append(callback)


class _OpenDocument:
    def __init__(self, store: HostDocument, engine: SyncEngine, session: EditSession) -> None:
        self.store = store
        self.engine = engine
        self.session = session


class StdioServer:
    """Serves any number of open documents, keyed by ``doc``."""

    def __init__(
        self,
        *,
        out: IO[str] | None = None,
        config: EditorConfig | None = None,
        clipboard_factory: Callable[[], Clipboard] = MemoryClipboard,
        events: EventEmitter | None = None,
        trace: TraceRecorder | None = None,
    ) -> None:
        self._out = out if out is not None else sys.stdout
        self.config = config or EditorConfig()
        self.clipboard_factory = clipboard_factory
        self.events = events or EventEmitter(self.config.emit_events)
        self.trace = trace or TraceRecorder()
        self._docs: dict[str, _OpenDocument] = {}

    def send(self, payload: dict[str, Any]) -> None:
        self._out.write(json.dumps(payload, default=str) + "\n")
        self._out.flush()

    def _doc(self, doc_id: str) -> _OpenDocument:
        if doc_id not in self._docs:
            raise DocumentNotOpen(f"Document not open: {doc_id}")
        return self._docs[doc_id]

    def _close_all(self) -> None:
        for opened in self._docs.values():
            opened.engine.close()
        self._docs.clear()

    # -- document lifecycle --------------------------------------------------

    def _open(self, doc_id: str, args: dict[str, Any]) -> EditSession:
        if doc_id in self._docs:
            self._docs.pop(doc_id).engine.close()
        config = self.config
        if args.get("config"):
            config = EditorConfig.load(args["config"])
        store = HostDocument(
            doc_id,
            args.get("text") or "",
            self.send,
            correlates_writes=bool(args.get("correlates", True)),
        )
        engine = SyncEngine(store, doc_id=doc_id, config=config, events=self.events, trace=self.trace)
        engine.open()
        session = EditSession(engine, self.clipboard_factory())
        self._docs[doc_id] = _OpenDocument(store, engine, session)
        return session

    def handle_request(self, request: dict[str, Any]) -> dict[str, Any]:
        req_id = request.get("id", "")
        command = request.get("command", "")
        args = dict(request.get("args") or {})
        doc_id = str(args.pop("doc", "doc"))

        try:
            if command == "doc.open":
                session = self._open(doc_id, args)
                env = success_envelope(command, session.state().model_dump(mode="json"),
                                       target=session.ctx.target(), sync=session.sync_info())

            elif command == "doc.changed":
                opened = self._doc(doc_id)
                text = args.get("text", "")
                opened.store.text = text
                kind = opened.engine.on_document_changed(text, args.get("seq"))
                session = opened.session
                env = success_envelope(command, {
                    "classification": kind.value,
                    "state": session.state().model_dump(mode="json"),
                }, target=session.ctx.target(), sync=session.sync_info())

            elif command == "doc.visible":
                opened = self._doc(doc_id)
                if "text" in args:
                    opened.store.text = args["text"]
                refreshed = opened.engine.on_visible()
                env = success_envelope(command, {"refreshed": refreshed},
                                       sync=opened.session.sync_info())

            elif command == "doc.close":
                self._doc(doc_id).engine.close()
                del self._docs[doc_id]
                env = success_envelope(command, "closed")

            elif command == "clipboard.write":
                session = self._doc(doc_id).session
                session.clipboard.write_text(args.get("text", ""))
                env = success_envelope(command, {"written": True}, sync=session.sync_info())

            elif command == "close":
                self._close_all()
                env = success_envelope(command, "closed")

            else:
                env = self._doc(doc_id).session.dispatch(command, args)

        except (XtabError, OSError) as e:
            env = envelope_from_exception(command, e)

        response = env.model_dump(mode="json")
        response["id"] = req_id
        response["doc"] = doc_id
        return response

    def run(self, stdin: IO[str] | None = None) -> None:
        """Main server loop: read JSON lines, write responses (and events) as JSON lines."""
        for line in stdin if stdin is not None else sys.stdin:
            line = line.strip()
            if not line:
                continue
            try:
                request = json.loads(line)
            except json.JSONDecodeError as e:
                self.send({"ok": False, "errors": [{"code": "ERR_INVALID_ARGUMENT", "message": f"Invalid JSON: {e}"}]})
                continue
            if not isinstance(request, dict):
                self.send({"ok": False, "errors": [{"code": "ERR_INVALID_ARGUMENT", "message": "Request must be an object"}]})
                continue
            self.send(self.handle_request(request))

        self._close_all()

    def save_trace(self, path: str | Path) -> str:
        return self.trace.save(path)
