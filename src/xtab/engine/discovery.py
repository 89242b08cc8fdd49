"""Table discovery: find array-of-object regions in a node tree."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from xtab.contracts.common import StructuralConflict, ValidationError
from xtab.contracts.responses import SessionStatus
from xtab.tree.codec import is_valid_name
from xtab.tree.nodes import (
    ArrayNode,
    ObjectNode,
    PathSegment,
    Scalar,
    is_blank,
    resolve,
    root_element,
)

DEFAULT_ROOT_MARKERS = ("Workbook", "Worksheet")
DEFAULT_NAMESPACE_MARKERS = ("urn:schemas-microsoft-com:office:",)
DEFAULT_DOCUMENT_ROOT = "Document"

INCOMPATIBLE_MESSAGE = (
    "This file appears to have been saved by an Office XML editor, which "
    "converted it to the Office spreadsheet XML format. That format cannot be "
    "edited here. Restore it from a backup or convert the data back to its "
    "original XML structure."
)


class Table(BaseModel):
    """A discovered table. ``node`` is the live ArrayNode in the tree."""

    model_config = ConfigDict(frozen=True)

    name: str
    path: tuple[PathSegment, ...]
    node: ArrayNode

    @property
    def rows(self) -> list[Any]:
        return self.node.items

    @property
    def container_path(self) -> tuple[PathSegment, ...]:
        return self.path[:-1]

    def tag_path(self) -> tuple[str, ...]:
        """Element names from the root, row indices dropped (for force_list hints)."""
        return tuple(seg for seg in self.path if isinstance(seg, str))


class DiscoveryResult(BaseModel):
    """Tables found in a tree, or the reason discovery refused to run."""

    tables: list[Table] = Field(default_factory=list)
    status: SessionStatus = Field(default_factory=SessionStatus)


def is_table(node: Any) -> bool:
    """Non-empty array whose first item is an object and whose other items are objects or blank rows."""
    if not isinstance(node, ArrayNode) or not node.items:
        return False
    if not isinstance(node.items[0], ObjectNode):
        return False
    return all(isinstance(item, ObjectNode) or is_blank(item) for item in node.items[1:])


def _walk(node: Any, path: tuple[PathSegment, ...], out: list[Table]) -> None:
    if isinstance(node, ObjectNode):
        for key, child in node.children.items():
            child_path = path + (key,)
            if is_table(child):
                out.append(Table(name=key, path=child_path, node=child))
                for i, row in enumerate(child.items):
                    _walk(row, child_path + (i,), out)
            else:
                _walk(child, child_path, out)
    elif isinstance(node, ArrayNode):
        for i, item in enumerate(node.items):
            _walk(item, path + (i,), out)


def discover(tree: ObjectNode) -> list[Table]:
    """Depth-first, document-order list of tables in ``tree``."""
    out: list[Table] = []
    _walk(tree, (), out)
    return out


def is_foreign_schema(
    tree: ObjectNode,
    *,
    root_markers: Iterable[str] = DEFAULT_ROOT_MARKERS,
    namespace_markers: Iterable[str] = DEFAULT_NAMESPACE_MARKERS,
) -> SessionStatus | None:
    """Return an incompatible status when the root looks like foreign spreadsheet markup."""
    found = root_element(tree)
    if found is None:
        return None
    tag, node = found
    markers: list[str] = []
    local = tag.split(":")[-1]
    if local in set(root_markers):
        markers.append(f"root:{local}")
    if isinstance(node, ObjectNode):
        ns_markers = tuple(namespace_markers)
        for key, value in node.attributes.items():
            if key == "xmlns" or key.startswith("xmlns:"):
                if value.startswith(ns_markers):
                    markers.append(f"namespace:{value}")
            elif "mso" in key.lower():
                markers.append(f"attribute:{key}")
    if not markers:
        return None
    return SessionStatus(
        state="incompatible",
        code="ERR_SCHEMA_INCOMPATIBLE",
        message=INCOMPATIBLE_MESSAGE,
        markers=markers,
    )


def analyze(
    tree: ObjectNode,
    *,
    root_markers: Iterable[str] = DEFAULT_ROOT_MARKERS,
    namespace_markers: Iterable[str] = DEFAULT_NAMESPACE_MARKERS,
) -> DiscoveryResult:
    """Run the incompatibility check, then discovery."""
    status = is_foreign_schema(tree, root_markers=root_markers, namespace_markers=namespace_markers)
    if status is not None:
        return DiscoveryResult(status=status)
    return DiscoveryResult(tables=discover(tree))


def find_table(tables: list[Table], *, path: tuple[PathSegment, ...] | None = None, name: str | None = None) -> int | None:
    """Index of the table matching ``path`` exactly, else the first one named ``name``."""
    if path is not None:
        for i, t in enumerate(tables):
            if t.path == tuple(path):
                return i
    if name is not None:
        for i, t in enumerate(tables):
            if t.name == name:
                return i
    return None


# ---------------------------------------------------------------------------
# Placeholder and table-level edits
# ---------------------------------------------------------------------------

def _root_object(tree: ObjectNode, *, create: str | None = None) -> tuple[str, ObjectNode]:
    found = root_element(tree)
    if found is None:
        if create is None:
            raise StructuralConflict("Document has no root element")
        tree.children[create] = ObjectNode()
        return create, tree.children[create]
    tag, node = found
    if isinstance(node, Scalar):
        promoted = ObjectNode(text=node.value or None)
        tree.children[tag] = promoted
        return tag, promoted
    if not isinstance(node, ObjectNode):
        raise StructuralConflict(f"Root element <{tag}> is not an element object")
    return tag, node


def ensure_placeholder(
    tree: ObjectNode,
    *,
    rows: int = 5,
    cols: int = 5,
    name: str = "Sheet1",
    root_name: str = DEFAULT_DOCUMENT_ROOT,
) -> Table | None:
    """Write a blank ``rows`` x ``cols`` table when the tree has none.

    Returns the new table, or None when the tree already had tables.
    """
    if discover(tree):
        return None
    if rows < 1 or cols < 1:
        raise ValidationError("Placeholder needs at least one row and one column")
    tag, root = _root_object(tree, create=root_name)
    existing = root.children.get(name)
    # An emptied placeholder (all rows deleted) is refilled in place.
    if existing is not None and not is_blank(existing) and not (
        isinstance(existing, ArrayNode) and not existing.items
    ):
        raise StructuralConflict(f"Root element already has a <{name}> child")
    items = [
        ObjectNode(children={f"col{j + 1}": Scalar() for j in range(cols)})
        for _ in range(rows)
    ]
    array = ArrayNode(items=items)
    root.children[name] = array
    return Table(name=name, path=(tag, name), node=array)


def add_table(tree: ObjectNode, container: str, row_name: str = "Item") -> Table:
    """Add ``<container>`` under the root with two seed rows named ``row_name``."""
    for label, value in (("Container", container), ("Row", row_name)):
        if not value or not value.strip():
            raise ValidationError(f"{label} name must not be empty")
        if not is_valid_name(value):
            raise ValidationError(f"{label} name is not a valid element name: {value!r}")
    tag, root = _root_object(tree, create=DEFAULT_DOCUMENT_ROOT)
    if container in root.children:
        raise ValidationError(f"A section named {container!r} already exists")
    # Two rows so the array shape survives a re-parse without hints.
    array = ArrayNode(items=[
        ObjectNode(children={"Col1": Scalar(value="Data")}),
        ObjectNode(children={"Col1": Scalar(value="Data")}),
    ])
    root.children[container] = ObjectNode(children={row_name: array})
    return Table(name=row_name, path=(tag, container, row_name), node=array)


def _parent_of(tree: ObjectNode, table: Table) -> ObjectNode:
    parent = resolve(tree, table.container_path)
    if not isinstance(parent, ObjectNode) or parent.children.get(table.name) is not table.node:
        raise StructuralConflict(f"Table {table.name!r} is no longer at {list(table.path)}")
    return parent


def rename_table(tree: ObjectNode, table: Table, new_name: str) -> Table:
    """Rename the key holding the table's array, keeping key order."""
    if not new_name or not new_name.strip() or any(ch.isspace() for ch in new_name):
        raise ValidationError("Table name must be non-empty and contain no whitespace")
    if not is_valid_name(new_name):
        raise ValidationError(f"Table name is not a valid element name: {new_name!r}")
    parent = _parent_of(tree, table)
    if new_name == table.name:
        return table
    if new_name in parent.children:
        raise ValidationError(f"Name {new_name!r} already exists next to this table")
    parent.children = {
        (new_name if k == table.name else k): v for k, v in parent.children.items()
    }
    return Table(name=new_name, path=table.container_path + (new_name,), node=table.node)


def delete_table(tree: ObjectNode, table: Table) -> None:
    """Remove the table; drop its container too when left empty (never the root)."""
    parent = _parent_of(tree, table)
    del parent.children[table.name]
    container_path = table.container_path
    if parent.children or len(container_path) < 2 or not isinstance(container_path[-1], str):
        return
    grandparent = resolve(tree, container_path[:-1])
    if isinstance(grandparent, ObjectNode) and grandparent.children.get(container_path[-1]) is parent:
        del grandparent.children[container_path[-1]]
