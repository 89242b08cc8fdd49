"""EditSession: selection, edit cursor, clipboard and commands on the active table."""

from __future__ import annotations

import re
from collections.abc import Callable
from concurrent.futures import Future
from typing import Any

import portalocker
from pydantic import BaseModel

from xtab.contracts.common import (
    ChangeRecord,
    EditingRefused,
    ResponseEnvelope,
    StructuralConflict,
    SyncInfo,
    ValidationError,
    XtabError,
)
from xtab.contracts.responses import CellPos, EditCursor, Selection, SessionSnapshot
from xtab.engine import discovery
from xtab.engine.context import SessionContext
from xtab.engine.dispatcher import envelope_from_exception, error_envelope, success_envelope
from xtab.engine.grid import GridModel, column_index, column_letter
from xtab.engine.sync import SyncEngine
from xtab.io.clipboard import Clipboard, MemoryClipboard
from xtab.observe.events import Timer
from xtab.tree.nodes import ArrayNode, ObjectNode

DIRECTIONS = {
    "up": (-1, 0),
    "down": (1, 0),
    "left": (0, -1),
    "right": (0, 1),
}

ARROW_KEYS = {
    "ArrowUp": "up",
    "ArrowDown": "down",
    "ArrowLeft": "left",
    "ArrowRight": "right",
}

_LINE_BREAK = re.compile(r"\r?\n|\r")


def strip_trailing_break(text: str) -> str:
    """Drop exactly one trailing line break (spreadsheet copies end with one)."""
    if text.endswith("\r\n"):
        return text[:-2]
    if text.endswith(("\n", "\r")):
        return text[:-1]
    return text


def parse_block(text: str) -> list[list[str]]:
    """Tab/line-delimited text to a rows x columns block."""
    return [line.split("\t") for line in _LINE_BREAK.split(text)]


def to_tsv(rows: list[list[str]]) -> str:
    return "\n".join("\t".join(row) for row in rows)


def _single(row: int, col: int) -> Selection:
    pos = CellPos(row=row, col=col)
    return Selection(anchor=pos, focus=pos)


def _holds_table(node: Any) -> bool:
    return isinstance(node, ArrayNode) or (isinstance(node, ObjectNode) and bool(node.children))


class EditSession:
    """The single mutator of an open document.

    Every public method takes the engine lock, so clipboard callbacks that
    land on another thread are serialized with interactive commands.
    Structural commands commit a pending edit first; every tree mutation
    ends in exactly one ``engine.flush``.
    """

    def __init__(self, engine: SyncEngine, clipboard: Clipboard | None = None) -> None:
        self.engine = engine
        self.clipboard = clipboard if clipboard is not None else MemoryClipboard()
        self.last_paste: Future[dict[str, Any]] | None = None

    @property
    def lock(self):
        return self.engine.lock

    @property
    def ctx(self) -> SessionContext:
        return self.engine.context

    @property
    def mode(self) -> str:
        return "editing" if self.ctx.editing is not None else "idle"

    def _editable(self) -> SessionContext:
        ctx = self.ctx
        if not ctx.status.editable:
            raise EditingRefused(
                ctx.status.message or "Document cannot be edited",
                details={"markers": ctx.status.markers},
            )
        return ctx

    def _commit_pending(self) -> None:
        if self.ctx.editing is not None:
            self.commit_edit(skip_reenter=True)

    # -- edit cursor -------------------------------------------------------

    def start_edit(self, row: int, col: int, initial_text: str | None = None) -> bool:
        with self.lock:
            ctx = self._editable()
            if ctx.editing is not None:
                return False
            grid = ctx.grid()
            if not grid.in_bounds(row, col) or _holds_table(grid.cell_node(row, col)):
                return False
            buffer = initial_text if initial_text is not None else grid.read_cell(row, col)
            ctx.editing = EditCursor(row=row, col=col, buffer=buffer)
            ctx.selection = _single(row, col)
            return True

    def update_buffer(self, text: str) -> bool:
        with self.lock:
            ctx = self.ctx
            if ctx.editing is None:
                return False
            ctx.editing.buffer = text
            return True

    def commit_edit(self, move_row: int = 0, move_col: int = 0, skip_reenter: bool = False) -> bool:
        """Write the buffer, sync once, then move (and possibly re-open the edit).

        Returns True when a document write was dispatched.
        """
        with self.lock:
            ctx = self._editable()
            cur = ctx.editing
            if cur is None:
                return False
            grid = ctx.grid()
            try:
                grid.write_cell(cur.row, cur.col, cur.buffer)
            except XtabError:
                ctx.editing = None
                raise
            dest_row, dest_col = cur.row + move_row, cur.col + move_col
            if move_row > 0 and dest_row >= grid.row_count and 0 <= dest_col < grid.col_count:
                grid.add_rows(dest_row - grid.row_count + 1)
            ctx.editing = None
            dispatched = self.engine.flush("edit")

            grid = ctx.grid()
            if (move_row or move_col) and grid.in_bounds(dest_row, dest_col):
                ctx.selection = _single(dest_row, dest_col)
                if not skip_reenter:
                    self.start_edit(dest_row, dest_col)
            else:
                ctx.selection = _single(cur.row, cur.col)
            return dispatched

    def cancel_edit(self) -> bool:
        with self.lock:
            ctx = self.ctx
            if ctx.editing is None:
                return False
            ctx.editing = None
            return True

    # -- selection ---------------------------------------------------------

    def select(self, row: int, col: int, focus_row: int | None = None, focus_col: int | None = None) -> Selection | None:
        with self.lock:
            if self.ctx.status.editable:
                self._commit_pending()
            ctx = self.ctx
            grid = ctx.grid()
            if grid.row_count == 0 or grid.col_count == 0:
                ctx.selection = None
                return None

            def clamp(r: int, c: int) -> CellPos:
                return CellPos(
                    row=min(max(r, 0), grid.row_count - 1),
                    col=min(max(c, 0), grid.col_count - 1),
                )

            anchor = clamp(row, col)
            focus = clamp(
                row if focus_row is None else focus_row,
                col if focus_col is None else focus_col,
            )
            ctx.selection = Selection(anchor=anchor, focus=focus)
            return ctx.selection

    def move_selection(self, direction: str) -> Selection | None:
        if direction not in DIRECTIONS:
            raise ValidationError(f"Unknown direction: {direction!r}")
        with self.lock:
            ctx = self.ctx
            if ctx.selection is None:
                return self.select(0, 0)
            dr, dc = DIRECTIONS[direction]
            focus = ctx.selection.focus
            return self.select(focus.row + dr, focus.col + dc)

    # -- bulk cell edits ---------------------------------------------------

    def _writable_cells(self, grid: GridModel, cells: list[tuple[int, int]]) -> list[tuple[int, int]]:
        cells = [(r, c) for r, c in cells if grid.in_bounds(r, c)]
        for r, c in cells:
            if _holds_table(grid.cell_node(r, c)):
                raise StructuralConflict(f"Cell {column_letter(c)}{r + 1} holds a nested table")
        return cells

    def delete_selection(self) -> int:
        """Clear every cell in the selection with one document write."""
        with self.lock:
            ctx = self._editable()
            self._commit_pending()
            if ctx.selection is None:
                return 0
            grid = ctx.grid()
            cells = self._writable_cells(grid, ctx.selection.cells())
            for r, c in cells:
                grid.write_cell(r, c, "")
            self.engine.flush("delete")
            return len(cells)

    def copy(self) -> str:
        """Selection as tab/line-delimited text, to the clipboard and the session buffer."""
        with self.lock:
            if self.ctx.status.editable:
                self._commit_pending()
            ctx = self.ctx
            if ctx.selection is None or ctx.active_table is None:
                return ""
            grid = ctx.grid()
            r1, c1, r2, c2 = ctx.selection.bounds()
            rows = [
                [grid.read_cell(r, c) for c in range(c1, min(c2, grid.col_count - 1) + 1)]
                for r in range(r1, min(r2, grid.row_count - 1) + 1)
            ]
            text = to_tsv(rows)
            self.clipboard.write_text(text)
            ctx.clipboard_buffer = text
            return text

    def cut(self) -> str:
        with self.lock:
            self._editable()
            text = self.copy()
            self.delete_selection()
            return text

    def paste(self, text: str | None = None) -> dict[str, int]:
        """Paste text (or the session buffer) at the selection.

        A single value with no tab is broadcast to every selected cell. A
        block is written from the selection's top-left, clipped at the last
        column; rows are added as needed.
        """
        with self.lock:
            ctx = self._editable()
            self._commit_pending()
            if text is None:
                text = ctx.clipboard_buffer
            if text is None:
                return {"cells": 0, "rows_added": 0}
            text = strip_trailing_break(text)
            grid = ctx.grid()
            if grid.col_count == 0:
                raise StructuralConflict("Table has no columns to paste into")
            sel = ctx.selection or _single(0, 0)
            r1, c1, _, _ = sel.bounds()

            if "\t" not in text and "\n" not in text and "\r" not in text:
                cells = self._writable_cells(grid, sel.cells())
                for r, c in cells:
                    grid.write_cell(r, c, text)
                self.engine.flush("paste")
                return {"cells": len(cells), "rows_added": 0}

            block = parse_block(text)
            targets = [
                (r1 + i, c1 + j, value)
                for i, line in enumerate(block)
                for j, value in enumerate(line)
                if c1 + j < grid.col_count
            ]
            self._writable_cells(grid, [(r, c) for r, c, _ in targets])
            needed = r1 + len(block) - grid.row_count
            if needed > 0:
                grid.add_rows(needed)
            for r, c, value in targets:
                grid.write_cell(r, c, value)
            self.engine.flush("paste")
            return {"cells": len(targets), "rows_added": max(needed, 0)}

    def paste_transposed(self, row: int | None = None, col: int | None = None) -> Future[dict[str, Any]]:
        """Read the clipboard without blocking; lines fill successive columns of one row.

        The returned future resolves once the clipboard read has been
        applied against the table as it is at that moment.
        """
        with self.lock:
            ctx = self._editable()
            self._commit_pending()
            table = ctx.active_table
            if table is None:
                raise StructuralConflict("No active table")
            if row is None or col is None:
                sel = ctx.selection or _single(0, 0)
                r1, c1, _, _ = sel.bounds()
                row = r1 if row is None else row
                col = c1 if col is None else col
            anchor = (table.path, table.name, row, col)

        done: Future[dict[str, Any]] = Future()

        def apply(read: Future[str]) -> None:
            try:
                done.set_result(self._apply_transposed(ctx, anchor, read.result()))
            except Exception as e:
                self.engine.events.emit("paste.failed", {"doc": ctx.doc_id, "error": str(e)})
                done.set_exception(e)

        self.last_paste = done
        self.clipboard.read_text().add_done_callback(apply)
        return done

    def _apply_transposed(self, ctx: SessionContext, anchor: tuple, text: str) -> dict[str, Any]:
        path, name, row, col = anchor
        with self.lock:
            if self.engine.ctx is not ctx:
                return {"applied": 0, "dropped": "closed"}
            ctx = self._editable()
            idx = discovery.find_table(ctx.tables, path=path, name=name)
            if idx is None:
                return {"applied": 0, "dropped": "table_gone"}
            self._commit_pending()
            grid = ctx.grid_for(ctx.tables[idx])
            values = [line.strip() for line in text.splitlines() if line.strip()]
            if not 0 <= row < grid.row_count:
                return {"applied": 0, "dropped": "row_out_of_range"}
            cells = [(row, col + i) for i in range(len(values)) if 0 <= col + i < grid.col_count]
            self._writable_cells(grid, cells)
            for (r, c), value in zip(cells, values):
                grid.write_cell(r, c, value)
            if cells:
                self.engine.flush("paste_transposed")
            return {"applied": len(cells), "row": row, "col": col}

    def write_cell(self, row: int, col: int, text: str) -> bool:
        with self.lock:
            ctx = self._editable()
            self._commit_pending()
            grid = ctx.grid()
            changed = grid.write_cell(row, col, text)
            self.engine.flush("cell")
            return changed

    def read_cell(self, row: int, col: int) -> str:
        with self.lock:
            return self.ctx.grid().read_cell(row, col)

    # -- keys --------------------------------------------------------------

    def handle_key(self, key: str, shift: bool = False, ctrl: bool = False) -> str:
        """Apply one keystroke. Returns the name of the action taken."""
        with self.lock:
            ctx = self.ctx
            if ctx.editing is not None:
                if key == "Escape":
                    self.cancel_edit()
                    return "cancel"
                if key == "Enter":
                    self.commit_edit(move_row=1, skip_reenter=True)
                    return "commit"
                if key == "Tab":
                    self.commit_edit(move_col=-1 if shift else 1)
                    return "commit"
                if key == "Backspace":
                    self.update_buffer(ctx.editing.buffer[:-1])
                    return "type"
                if len(key) == 1 and not ctrl:
                    self.update_buffer(ctx.editing.buffer + key)
                    return "type"
                return "none"

            if key in ARROW_KEYS:
                self.move_selection(ARROW_KEYS[key])
                return "move"
            if key == "Tab":
                self.move_selection("left" if shift else "right")
                return "move"
            if ctrl and key.lower() in ("c", "x", "v"):
                action = {"c": "copy", "x": "cut", "v": "paste"}[key.lower()]
                getattr(self, action)()
                return action
            if ctx.selection is None:
                return "none"
            focus = ctx.selection.focus
            if key == "Enter":
                return "edit" if self.start_edit(focus.row, focus.col) else "none"
            if key in ("Delete", "Backspace"):
                self.delete_selection()
                return "delete"
            if len(key) == 1 and key.isprintable() and not ctrl:
                return "edit" if self.start_edit(focus.row, focus.col, initial_text=key) else "none"
            return "none"

    # -- structural commands -----------------------------------------------

    def _structural(self, reason: str, fn: Callable[[GridModel], Any], *, write: bool = True) -> Any:
        with self.lock:
            ctx = self._editable()
            self._commit_pending()
            result = fn(ctx.grid())
            if write:
                self.engine.flush(reason)
            return result

    def add_rows(self, n: int = 1) -> int:
        return self._structural("add_rows", lambda g: g.add_rows(n))

    def add_columns(self, n: int = 1) -> list[str]:
        return self._structural("add_columns", lambda g: g.add_columns(n))

    def delete_row(self, row: int) -> None:
        self._structural("delete_row", lambda g: g.delete_row(row))

    def delete_column(self, key: str) -> None:
        self._structural("delete_column", lambda g: g.delete_column(key))

    def rename_column(self, old: str, new: str) -> None:
        self._structural("rename_column", lambda g: g.rename_column(old, new))

    def move_column(self, key: str, target: str, position: str = "before") -> None:
        self._structural("move_column", lambda g: g.move_column(key, target, position))

    def move_row(self, frm: int, target: int, position: str = "before") -> None:
        self._structural("move_row", lambda g: g.move_row(frm, target, position))

    def set_frozen_rows(self, n: int) -> None:
        self._structural("freeze", lambda g: g.set_frozen_rows(n), write=False)

    def set_frozen_cols(self, n: int) -> None:
        self._structural("freeze", lambda g: g.set_frozen_cols(n), write=False)

    def set_column_width(self, key: str, px: int) -> None:
        self._structural("resize", lambda g: g.set_column_width(key, px), write=False)

    def set_row_height(self, row: int, px: int) -> None:
        self._structural("resize", lambda g: g.set_row_height(row, px), write=False)

    def switch_table(self, name: str | None = None, index: int | None = None) -> str:
        with self.lock:
            ctx = self._editable()
            self._commit_pending()
            ctx.active_index = ctx.lookup(name=name, index=index)
            ctx.selection = None
            return ctx.tables[ctx.active_index].name

    def add_table(self, container: str, row_name: str = "Item") -> str:
        with self.lock:
            ctx = self._editable()
            self._commit_pending()
            table = discovery.add_table(ctx.tree, container, row_name)
            self.engine.flush("add_table")
            ctx.active_index = discovery.find_table(ctx.tables, path=table.path)
            ctx.selection = None
            return table.name

    def rename_table(self, new_name: str, name: str | None = None, index: int | None = None) -> str:
        with self.lock:
            ctx = self._editable()
            self._commit_pending()
            old = ctx.tables[ctx.lookup(name=name, index=index)]
            renamed = discovery.rename_table(ctx.tree, old, new_name)
            if old.name in ctx.grid_states and new_name not in ctx.grid_states:
                ctx.grid_states[new_name] = ctx.grid_states.pop(old.name)
            was_active = ctx.active_table is not None and ctx.active_table.path == old.path
            self.engine.flush("rename_table")
            if was_active:
                ctx.active_index = discovery.find_table(ctx.tables, path=renamed.path)
            return renamed.name

    def delete_table(self, name: str | None = None, index: int | None = None) -> str:
        with self.lock:
            ctx = self._editable()
            self._commit_pending()
            table = ctx.tables[ctx.lookup(name=name, index=index)]
            discovery.delete_table(ctx.tree, table)
            self.engine.flush("delete_table")
            return table.name

    # -- state -------------------------------------------------------------

    def state(self) -> SessionSnapshot:
        with self.lock:
            return self.ctx.snapshot()

    def sync_info(self, dispatched: bool = False) -> SyncInfo:
        ctx = self.engine.ctx
        return SyncInfo(
            state=self.engine.state.value,
            seq=ctx.book.seq if ctx is not None else 0,
            dispatched=dispatched,
        )

    # -- dispatch ----------------------------------------------------------

    def dispatch(self, command: str, args: dict[str, Any] | None = None) -> ResponseEnvelope:
        """Run a dotted command and wrap the outcome in a response envelope."""
        args = args or {}
        handler = COMMANDS.get(command)
        with Timer() as timer:
            if handler is None:
                env = error_envelope(command, "ERR_UNKNOWN_COMMAND", f"Unknown command: {command}")
                env.sync = self.sync_info()
                return env
            with self.lock:
                seq_before = self.engine.ctx.book.seq if self.engine.ctx is not None else 0
                target = self.engine.ctx.target() if self.engine.ctx is not None else None
                try:
                    result = handler(self, _Args(args))
                except (XtabError, OSError, portalocker.LockException) as e:
                    env = envelope_from_exception(command, e, target=target, sync=self.sync_info())
                else:
                    ctx = self.engine.ctx
                    seq_after = ctx.book.seq if ctx is not None else 0
                    dispatched = seq_after > seq_before
                    changes = []
                    if command in MUTATING:
                        changes.append(ChangeRecord(
                            type=command,
                            target=(ctx.active_name if ctx is not None else None) or "",
                            after=_plain(result),
                            impact={"dispatched": dispatched, "seq": seq_after},
                        ))
                    env = success_envelope(
                        command,
                        _plain(result),
                        target=ctx.target() if ctx is not None else target,
                        changes=changes,
                        sync=self.sync_info(dispatched),
                    )
        env.metrics.duration_ms = timer.elapsed_ms
        return env


class _Args:
    """Typed access to a command's argument mapping."""

    def __init__(self, data: dict[str, Any]) -> None:
        self.data = data

    def get(self, name: str, kind: type, default: Any = None) -> Any:
        if name not in self.data or self.data[name] is None:
            return default
        value = self.data[name]
        if kind is int and (isinstance(value, bool) or not isinstance(value, int)):
            if isinstance(value, str) and value.lstrip("-").isdigit():
                return int(value)
            raise ValidationError(f"Argument {name!r} must be an integer")
        if kind is str and not isinstance(value, str):
            raise ValidationError(f"Argument {name!r} must be a string")
        if kind is bool and not isinstance(value, bool):
            raise ValidationError(f"Argument {name!r} must be a boolean")
        return value

    def need(self, name: str, kind: type) -> Any:
        value = self.get(name, kind)
        if value is None:
            raise ValidationError(f"Missing argument: {name}")
        return value


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


def _column(session: EditSession, args: _Args, name: str) -> str:
    """Column argument: key, zero-based index, or a letter label such as ``C``."""
    session._editable()
    value = args.data.get(name)
    if isinstance(value, int) and not isinstance(value, bool):
        return session.ctx.grid().key_at(value)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"Missing argument: {name}")
    grid = session.ctx.grid()
    if value not in grid.columns and value.isalpha() and value.isupper() and len(value) <= 3:
        return grid.key_at(column_index(value))
    return value


def _paste_transposed(s: EditSession, a: _Args) -> dict[str, Any]:
    fut = s.paste_transposed(a.get("row", int), a.get("col", int))
    if fut.done() and fut.exception() is None:
        return {"pending": False, **fut.result()}
    if fut.done():
        raise fut.exception()  # type: ignore[misc]
    return {"pending": True}


COMMANDS: dict[str, Callable[[EditSession, _Args], Any]] = {
    "session.state": lambda s, a: s.state(),
    "table.list": lambda s, a: s.ctx.table_meta(),
    "table.switch": lambda s, a: {"active": s.switch_table(a.get("name", str), a.get("index", int))},
    "table.add": lambda s, a: {"table": s.add_table(a.need("container", str), a.get("row_name", str, "Item"))},
    "table.rename": lambda s, a: {"table": s.rename_table(a.need("new_name", str), a.get("name", str), a.get("index", int))},
    "table.delete": lambda s, a: {"deleted": s.delete_table(a.get("name", str), a.get("index", int))},
    "cell.get": lambda s, a: {"value": s.read_cell(a.need("row", int), a.need("col", int))},
    "cell.set": lambda s, a: {"changed": s.write_cell(a.need("row", int), a.need("col", int), a.get("value", str, ""))},
    "edit.start": lambda s, a: {"editing": s.start_edit(a.need("row", int), a.need("col", int), a.get("text", str))},
    "edit.update": lambda s, a: {"updated": s.update_buffer(a.get("text", str, ""))},
    "edit.commit": lambda s, a: {"dispatched": s.commit_edit(
        a.get("move_row", int, 0), a.get("move_col", int, 0), a.get("skip_reenter", bool, False),
    )},
    "edit.cancel": lambda s, a: {"cancelled": s.cancel_edit()},
    "selection.set": lambda s, a: s.select(
        a.need("row", int), a.need("col", int), a.get("focus_row", int), a.get("focus_col", int),
    ),
    "selection.move": lambda s, a: s.move_selection(a.need("direction", str)),
    "selection.delete": lambda s, a: {"cleared": s.delete_selection()},
    "clipboard.copy": lambda s, a: {"text": s.copy()},
    "clipboard.cut": lambda s, a: {"text": s.cut()},
    "clipboard.paste": lambda s, a: s.paste(a.get("text", str)),
    "clipboard.paste_transposed": _paste_transposed,
    "key": lambda s, a: {"action": s.handle_key(
        a.need("key", str), a.get("shift", bool, False), a.get("ctrl", bool, False),
    ), "mode": s.mode},
    "row.add": lambda s, a: {"row_count": s.add_rows(a.get("count", int, 1))},
    "row.delete": lambda s, a: s.delete_row(a.need("row", int)),
    "row.move": lambda s, a: s.move_row(a.need("from", int), a.need("target", int), a.get("position", str, "before")),
    "row.height": lambda s, a: s.set_row_height(a.need("row", int), a.need("px", int)),
    "col.add": lambda s, a: {"added": s.add_columns(a.get("count", int, 1))},
    "col.delete": lambda s, a: s.delete_column(_column(s, a, "key")),
    "col.rename": lambda s, a: s.rename_column(_column(s, a, "old"), a.get("new", str, "")),
    "col.move": lambda s, a: s.move_column(
        _column(s, a, "key"), _column(s, a, "target"), a.get("position", str, "before"),
    ),
    "col.width": lambda s, a: s.set_column_width(_column(s, a, "key"), a.need("px", int)),
    "freeze.rows": lambda s, a: s.set_frozen_rows(a.need("count", int)),
    "freeze.cols": lambda s, a: s.set_frozen_cols(a.need("count", int)),
}

MUTATING = frozenset({
    "table.add", "table.rename", "table.delete", "cell.set", "edit.commit",
    "selection.delete", "clipboard.cut", "clipboard.paste", "clipboard.paste_transposed",
    "row.add", "row.delete", "row.move", "col.add", "col.delete", "col.rename", "col.move",
})
