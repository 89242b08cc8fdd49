"""SessionContext: per-document state owned by the sync engine."""

from __future__ import annotations

from pydantic import BaseModel, Field

from xtab.config import EditorConfig
from xtab.contracts.common import StructuralConflict, Target
from xtab.contracts.responses import (
    CellPos,
    EditCursor,
    GridState,
    Selection,
    SessionSnapshot,
    SessionStatus,
    TableMeta,
)
from xtab.engine.discovery import Table, analyze, ensure_placeholder, find_table
from xtab.engine.grid import GridModel
from xtab.tree.nodes import ObjectNode


class WriteBook(BaseModel):
    """Write/echo bookkeeping for one open document."""

    seq: int = 0
    internal_flag: bool = False
    last_self_written: str | None = None
    last_known_text: str | None = None
    last_write_at: float | None = None
    in_flight: dict[int, float] = Field(default_factory=dict)


class SessionContext:
    """Tree, discovered tables, per-table view state and the edit session state.

    Created when a document is opened and dropped on close; nothing here is
    shared between documents.
    """

    def __init__(self, doc_id: str = "doc", *, config: EditorConfig | None = None) -> None:
        self.doc_id = doc_id
        self.config = config or EditorConfig()
        self.tree = ObjectNode()
        self.tables: list[Table] = []
        self.status = SessionStatus()
        self.active_index: int | None = None
        self.grid_states: dict[str, GridState] = {}
        self.selection: Selection | None = None
        self.editing: EditCursor | None = None
        self.clipboard_buffer: str | None = None
        self.last_discarded_edit: EditCursor | None = None
        self.book = WriteBook()

    def target(self, **overrides: str | None) -> Target:
        t = Target(doc=self.doc_id, table=self.active_name)
        for k, v in overrides.items():
            if v is not None:
                setattr(t, k, v)
        return t

    # -- tables ------------------------------------------------------------

    @property
    def active_table(self) -> Table | None:
        if self.active_index is None or not 0 <= self.active_index < len(self.tables):
            return None
        return self.tables[self.active_index]

    @property
    def active_name(self) -> str | None:
        table = self.active_table
        return table.name if table is not None else None

    def grid_for(self, table: Table) -> GridModel:
        state = self.grid_states.setdefault(table.name, GridState())
        return GridModel(
            table,
            state,
            new_column_base=self.config.new_column_base,
            default_row_column=self.config.default_row_column,
        )

    def grid(self) -> GridModel:
        """GridModel of the active table. Raises StructuralConflict when there is none."""
        table = self.active_table
        if table is None:
            raise StructuralConflict("No active table")
        return self.grid_for(table)

    def lookup(self, name: str | None = None, index: int | None = None) -> int:
        """Resolve a table by index or name to its index."""
        if index is not None:
            if not 0 <= index < len(self.tables):
                raise StructuralConflict(f"Table index {index} is out of range")
            return index
        if name is not None:
            found = find_table(self.tables, name=name)
            if found is None:
                raise StructuralConflict(f"Table not found: {name}")
            return found
        if self.active_index is None:
            raise StructuralConflict("No active table")
        return self.active_index

    def force_list(self) -> set[tuple[str, ...]]:
        """Tag paths of the current tables, so single-row tables survive a re-parse."""
        return {t.tag_path() for t in self.tables}

    # -- discovery ---------------------------------------------------------

    def rediscover(self, *, preserve: bool = True) -> None:
        """Re-run discovery on ``self.tree``.

        With ``preserve`` the active table is re-anchored by path, then by
        name, and the selection is clamped to its bounds; otherwise view
        state is reset and the first table becomes active.
        """
        previous = self.active_table
        result = analyze(
            self.tree,
            root_markers=self.config.foreign_root_markers,
            namespace_markers=self.config.foreign_namespaces,
        )
        self.status = result.status
        self.tables = result.tables
        if not self.status.editable:
            self.active_index = None
            self.selection = None
            self.editing = None
            return
        if not preserve:
            self.reset_view()
            return
        if previous is not None:
            self.active_index = find_table(self.tables, path=previous.path, name=previous.name)
        if self.active_index is None or self.active_index >= len(self.tables):
            self.active_index = 0 if self.tables else None
        self._clamp()

    def reset_view(self) -> None:
        self.selection = None
        self.editing = None
        self.grid_states = {}
        self.active_index = 0 if self.tables else None

    def ensure_tables(self) -> bool:
        """Write the placeholder table when discovery found none. Returns True if added."""
        if not self.status.editable or self.tables:
            return False
        table = ensure_placeholder(
            self.tree,
            rows=self.config.placeholder_rows,
            cols=self.config.placeholder_cols,
            name=self.config.placeholder_name,
            root_name=self.config.document_root,
        )
        if table is None:
            return False
        self.rediscover(preserve=False)
        return True

    def _clamp(self) -> None:
        table = self.active_table
        if table is None:
            self.selection = None
            self.editing = None
            return
        grid = self.grid_for(table)
        if self.editing is not None and not grid.in_bounds(self.editing.row, self.editing.col):
            self.editing = None
        if self.selection is None:
            return
        if grid.row_count == 0 or grid.col_count == 0:
            self.selection = None
            return

        def clamp(pos: CellPos) -> CellPos:
            return CellPos(
                row=min(max(pos.row, 0), grid.row_count - 1),
                col=min(max(pos.col, 0), grid.col_count - 1),
            )

        self.selection = Selection(anchor=clamp(self.selection.anchor), focus=clamp(self.selection.focus))

    # -- snapshot ----------------------------------------------------------

    def table_meta(self) -> list[TableMeta]:
        out: list[TableMeta] = []
        for i, table in enumerate(self.tables):
            grid = self.grid_for(table)
            out.append(TableMeta(
                index=i,
                name=table.name,
                path=list(table.path),
                columns=grid.columns,
                row_count=grid.row_count,
                active=i == self.active_index,
            ))
        return out

    def snapshot(self) -> SessionSnapshot:
        table = self.active_table
        grid = self.grid_for(table) if table is not None else None
        return SessionSnapshot(
            status=self.status,
            tables=self.table_meta(),
            active_table=table.name if table is not None else None,
            grid=grid.state.model_copy(deep=True) if grid is not None else None,
            rows=grid.rows_text() if grid is not None else [],
            selection=self.selection,
            editing=self.editing,
            mode="editing" if self.editing is not None else "idle",
        )
