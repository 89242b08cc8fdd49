"""GridModel: one table plus its view state, with cell and structural edits."""

from __future__ import annotations

import re
from typing import Any

from xtab.contracts.common import StructuralConflict, ValidationError
from xtab.contracts.responses import GridState
from xtab.engine.discovery import Table
from xtab.tree.codec import is_valid_name
from xtab.tree.nodes import ArrayNode, ObjectNode, Scalar, cell_text

POSITIONS = ("before", "after")

_REF_RE = re.compile(r"^([A-Za-z]{1,3})([1-9][0-9]*)$")


def column_letter(index: int) -> str:
    """Spreadsheet-style header label for a zero-based column index."""
    if index < 0:
        raise ValueError(f"Column index must be >= 0, got {index}")
    label = ""
    n = index + 1
    while n:
        n, rem = divmod(n - 1, 26)
        label = chr(ord("A") + rem) + label
    return label


def column_index(label: str) -> int:
    """Inverse of :func:`column_letter`: ``"A"`` -> 0, ``"AA"`` -> 26."""
    n = 0
    for ch in label.upper():
        if not "A" <= ch <= "Z":
            raise ValidationError(f"Invalid column label: {label!r}")
        n = n * 26 + (ord(ch) - ord("A") + 1)
    if n == 0:
        raise ValidationError("Column label must not be empty")
    return n - 1


def parse_ref(ref: str) -> tuple[int, int]:
    """``"B3"`` -> (row 2, col 1), zero-based."""
    m = _REF_RE.match(ref.strip())
    if not m:
        raise ValidationError(f"Invalid cell reference: {ref!r} (expected e.g. B3)")
    return int(m.group(2)) - 1, column_index(m.group(1))


def _check_position(position: str) -> None:
    if position not in POSITIONS:
        raise ValidationError(f"Position must be 'before' or 'after', got {position!r}")


def _splice(seq: list[Any], frm: int, target: int, position: str) -> None:
    """Remove ``seq[frm]`` and insert it next to the item that was at ``target``.

    The insertion index is computed against the list after removal.
    """
    item = seq.pop(frm)
    anchor = target - 1 if target > frm else target
    seq.insert(anchor + 1 if position == "after" else anchor, item)


class GridModel:
    """Wraps one Table and its GridState.

    Every operation validates its arguments before touching the tree, so a
    rejected call leaves rows and view state unchanged.
    """

    def __init__(
        self,
        table: Table,
        state: GridState | None = None,
        *,
        new_column_base: str = "NewColumn",
        default_row_column: str = "NewColumn",
    ) -> None:
        self.table = table
        self.state = state if state is not None else GridState()
        self.new_column_base = new_column_base
        self.default_row_column = default_row_column
        self.sync_columns()

    # -- shape -------------------------------------------------------------

    @property
    def rows(self) -> list[Any]:
        return self.table.node.items

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def col_count(self) -> int:
        return len(self.state.column_order)

    @property
    def columns(self) -> list[str]:
        return list(self.state.column_order)

    def row_keys(self) -> list[str]:
        """Element keys across all rows, in first-seen order."""
        seen: dict[str, None] = {}
        for row in self.rows:
            if isinstance(row, ObjectNode):
                for key in row.children:
                    seen.setdefault(key, None)
        return list(seen)

    def sync_columns(self) -> list[str]:
        """Append newly seen keys to ``column_order``; drop keys no row has any more."""
        present = self.row_keys()
        order = self.state.column_order
        if any(isinstance(row, ObjectNode) for row in self.rows):
            order = [k for k in order if k in present]
        added = [k for k in present if k not in order]
        self.state.column_order = order + added
        self.state.frozen_row_count = min(self.state.frozen_row_count, self.row_count)
        self.state.frozen_col_count = min(self.state.frozen_col_count, self.col_count)
        return added

    def key_at(self, col: int) -> str:
        if not 0 <= col < self.col_count:
            raise StructuralConflict(f"Column {col} is out of range (0..{self.col_count - 1})")
        return self.state.column_order[col]

    def in_bounds(self, row: int, col: int) -> bool:
        return 0 <= row < self.row_count and 0 <= col < self.col_count

    def _check_row(self, row: int) -> None:
        if not 0 <= row < self.row_count:
            raise StructuralConflict(f"Row {row} is out of range (0..{self.row_count - 1})")

    def _check_key(self, key: str) -> None:
        if key not in self.state.column_order:
            raise StructuralConflict(f"Column not found: {key}")

    def _row_object(self, row: int) -> ObjectNode:
        node = self.rows[row]
        if not isinstance(node, ObjectNode):
            node = ObjectNode()
            self.rows[row] = node
        return node

    def _blank_row(self) -> ObjectNode:
        first = next((r for r in self.rows if isinstance(r, ObjectNode)), None)
        keys = list(first.children) if first is not None else []
        if not keys:
            keys = list(self.state.column_order) or [self.default_row_column]
        return ObjectNode(children={k: Scalar() for k in keys})

    # -- cells -------------------------------------------------------------

    def read_cell(self, row: int, col: int) -> str:
        if not self.in_bounds(row, col):
            return ""
        node = self.rows[row]
        if not isinstance(node, ObjectNode):
            return ""
        return cell_text(node.children.get(self.state.column_order[col]))

    def cell_node(self, row: int, col: int) -> Any:
        if not self.in_bounds(row, col):
            return None
        node = self.rows[row]
        if not isinstance(node, ObjectNode):
            return None
        return node.children.get(self.state.column_order[col])

    def write_cell(self, row: int, col: int, text: str) -> bool:
        """Write ``text`` into a cell. Returns True when the tree changed."""
        self._check_row(row)
        key = self.key_at(col)
        current = self.cell_node(row, col)
        if isinstance(current, ArrayNode) or (isinstance(current, ObjectNode) and current.children):
            raise StructuralConflict(f"Cell {column_letter(col)}{row + 1} holds a nested table")
        if cell_text(current) == text and current is not None:
            return False
        obj = self._row_object(row)
        if isinstance(current, ObjectNode):
            current.text = text or None
        else:
            obj.children[key] = Scalar(value=text)
        return True

    def rows_text(self) -> list[list[str]]:
        return [[self.read_cell(r, c) for c in range(self.col_count)] for r in range(self.row_count)]

    # -- rows --------------------------------------------------------------

    def add_rows(self, n: int = 1) -> int:
        """Append ``n`` rows cloning the first row's key set. Returns the new row count."""
        if n < 1:
            raise ValidationError(f"Row count must be >= 1, got {n}")
        for _ in range(n):
            self.rows.append(self._blank_row())
        self.sync_columns()
        return self.row_count

    def delete_row(self, row: int) -> None:
        self._check_row(row)
        del self.rows[row]
        self.state.row_heights = {
            (i if i < row else i - 1): h for i, h in self.state.row_heights.items() if i != row
        }
        self.state.frozen_row_count = min(self.state.frozen_row_count, self.row_count)

    def move_row(self, frm: int, target: int, position: str = "before") -> None:
        _check_position(position)
        self._check_row(frm)
        self._check_row(target)
        if frm == target:
            return
        _splice(self.rows, frm, target, position)
        order = list(range(self.row_count))
        _splice(order, frm, target, position)
        self.state.row_heights = {
            new: self.state.row_heights[old]
            for new, old in enumerate(order)
            if old in self.state.row_heights
        }

    # -- columns -----------------------------------------------------------

    def _unique_key(self, taken: set[str]) -> str:
        i = 1
        while f"{self.new_column_base}{i}" in taken:
            i += 1
        return f"{self.new_column_base}{i}"

    def add_columns(self, n: int = 1) -> list[str]:
        """Add ``n`` uniquely named empty columns to every row."""
        if n < 1:
            raise ValidationError(f"Column count must be >= 1, got {n}")
        taken = set(self.state.column_order) | set(self.row_keys())
        names: list[str] = []
        for _ in range(n):
            key = self._unique_key(taken)
            taken.add(key)
            names.append(key)
        for i in range(self.row_count):
            obj = self._row_object(i)
            for key in names:
                obj.children[key] = Scalar()
        self.state.column_order = self.state.column_order + names
        return names

    def delete_column(self, key: str) -> None:
        self._check_key(key)
        for row in self.rows:
            if isinstance(row, ObjectNode):
                row.children.pop(key, None)
        self.state.column_order = [k for k in self.state.column_order if k != key]
        self.state.column_widths.pop(key, None)
        self.state.frozen_col_count = min(self.state.frozen_col_count, self.col_count)

    def rename_column(self, old: str, new: str) -> None:
        if not new or not new.strip():
            raise ValidationError("Column name must not be empty")
        if any(ch.isspace() for ch in new):
            raise ValidationError(f"Column name must not contain whitespace: {new!r}")
        if not is_valid_name(new):
            raise ValidationError(f"Column name is not a valid element name: {new!r}")
        self._check_key(old)
        if new == old:
            return
        if new in self.state.column_order or new in self.row_keys():
            raise ValidationError(f"Column already exists: {new}")
        for row in self.rows:
            if isinstance(row, ObjectNode) and old in row.children:
                row.children = {(new if k == old else k): v for k, v in row.children.items()}
        self.state.column_order = [new if k == old else k for k in self.state.column_order]
        if old in self.state.column_widths:
            self.state.column_widths[new] = self.state.column_widths.pop(old)

    def move_column(self, key: str, target: str, position: str = "before") -> None:
        _check_position(position)
        self._check_key(key)
        self._check_key(target)
        if key == target:
            return
        order = list(self.state.column_order)
        _splice(order, order.index(key), order.index(target), position)
        self.state.column_order = order
        rank = {k: i for i, k in enumerate(order)}
        for row in self.rows:
            if isinstance(row, ObjectNode):
                row.children = dict(
                    sorted(row.children.items(), key=lambda kv: rank.get(kv[0], len(rank)))
                )

    # -- view state --------------------------------------------------------

    def set_frozen_rows(self, n: int) -> None:
        if not 0 <= n <= self.row_count:
            raise ValidationError(f"Frozen rows must be within 0..{self.row_count}, got {n}")
        self.state.frozen_row_count = n

    def set_frozen_cols(self, n: int) -> None:
        if not 0 <= n <= self.col_count:
            raise ValidationError(f"Frozen columns must be within 0..{self.col_count}, got {n}")
        self.state.frozen_col_count = n

    def set_column_width(self, key: str, px: int) -> None:
        if px <= 0:
            raise ValidationError(f"Width must be positive, got {px}")
        self._check_key(key)
        self.state.column_widths[key] = px

    def set_row_height(self, row: int, px: int) -> None:
        if px <= 0:
            raise ValidationError(f"Height must be positive, got {px}")
        self._check_row(row)
        self.state.row_heights[row] = px
