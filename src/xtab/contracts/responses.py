"""Session and table state models."""

from __future__ import annotations

from pydantic import BaseModel, Field


class GridState(BaseModel):
    """View state of one table, keyed by table name in the session."""

    column_order: list[str] = Field(default_factory=list)
    frozen_row_count: int = 0
    frozen_col_count: int = 0
    column_widths: dict[str, int] = Field(default_factory=dict)
    row_heights: dict[int, int] = Field(default_factory=dict)


class CellPos(BaseModel):
    """Zero-based (row, col) coordinate in the active table."""

    row: int
    col: int


class Selection(BaseModel):
    """Rectangle between two corners; order-independent."""

    anchor: CellPos
    focus: CellPos

    def bounds(self) -> tuple[int, int, int, int]:
        """Return (r1, c1, r2, c2) with r1 <= r2 and c1 <= c2."""
        return (
            min(self.anchor.row, self.focus.row),
            min(self.anchor.col, self.focus.col),
            max(self.anchor.row, self.focus.row),
            max(self.anchor.col, self.focus.col),
        )

    def cells(self) -> list[tuple[int, int]]:
        r1, c1, r2, c2 = self.bounds()
        return [(r, c) for r in range(r1, r2 + 1) for c in range(c1, c2 + 1)]


class EditCursor(BaseModel):
    """The single cell under edit and its pending text."""

    row: int
    col: int
    buffer: str = ""


class SessionStatus(BaseModel):
    """Editability of the open document.

    ``state`` is ``ready``, ``incompatible`` or ``closed``. When
    ``incompatible`` the presentation layer shows ``message`` as a blocking
    notice and the session refuses every edit.
    """

    state: str = "ready"
    code: str | None = None
    message: str | None = None
    markers: list[str] = Field(default_factory=list)

    @property
    def editable(self) -> bool:
        return self.state == "ready"


class TableMeta(BaseModel):
    """Metadata for one discovered table."""

    index: int
    name: str
    path: list[str | int] = Field(default_factory=list)
    columns: list[str] = Field(default_factory=list)
    row_count: int = 0
    active: bool = False


class SessionSnapshot(BaseModel):
    """Everything a presentation layer needs to render the grid."""

    status: SessionStatus = Field(default_factory=SessionStatus)
    tables: list[TableMeta] = Field(default_factory=list)
    active_table: str | None = None
    grid: GridState | None = None
    rows: list[list[str]] = Field(default_factory=list)
    selection: Selection | None = None
    editing: EditCursor | None = None
    mode: str = "idle"


class DocumentMeta(BaseModel):
    """Metadata returned by ``xtab inspect``."""

    path: str
    fingerprint: str
    root: str | None = None
    status: SessionStatus = Field(default_factory=SessionStatus)
    tables: list[TableMeta] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
