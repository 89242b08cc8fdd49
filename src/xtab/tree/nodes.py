"""Node tree: the parsed document, independent of concrete syntax."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

# Plain-dict convention for attributes and element text (JSON output, fixtures).
ATTR_PREFIX = "@_"
TEXT_KEY = "#text"

PathSegment = Union[str, int]


class Scalar(BaseModel):
    """Leaf element: text only, no attributes, no child elements."""

    kind: Literal["scalar"] = "scalar"
    value: str = ""


class ObjectNode(BaseModel):
    """Element with attributes and/or child elements.

    ``children`` keeps document order. Attributes are stored apart from the
    children so they never show up as columns or recursion targets. ``text``
    holds the element's own character data, if any.
    """

    kind: Literal["object"] = "object"
    children: dict[str, Node] = Field(default_factory=dict)
    attributes: dict[str, str] = Field(default_factory=dict)
    text: str | None = None

    @property
    def is_mixed(self) -> bool:
        """True for a cell-like element: attributes and/or text, no children."""
        return not self.children


class ArrayNode(BaseModel):
    """Repeated sibling elements sharing one tag."""

    kind: Literal["array"] = "array"
    items: list[Node] = Field(default_factory=list)


Node = Annotated[Union[Scalar, ObjectNode, ArrayNode], Field(discriminator="kind")]

ObjectNode.model_rebuild()
ArrayNode.model_rebuild()


def is_blank(node: Any) -> bool:
    """An empty element such as ``<Item/>``."""
    return isinstance(node, Scalar) and node.value == ""


def cell_text(node: Any) -> str:
    """Text shown in (and edited from) a grid cell."""
    if node is None:
        return ""
    if isinstance(node, Scalar):
        return node.value
    if isinstance(node, ObjectNode):
        return node.text or ""
    return ""


def resolve(tree: ObjectNode, path: tuple[PathSegment, ...] | list[PathSegment]) -> Any:
    """Follow ``path`` from ``tree``. Returns None when a segment is missing."""
    cur: Any = tree
    for seg in path:
        if isinstance(seg, int):
            if not isinstance(cur, ArrayNode) or not 0 <= seg < len(cur.items):
                return None
            cur = cur.items[seg]
        else:
            if not isinstance(cur, ObjectNode) or seg not in cur.children:
                return None
            cur = cur.children[seg]
    return cur


def root_element(tree: ObjectNode) -> tuple[str, Any] | None:
    """Return (tag, node) for the document's root element, or None if empty."""
    for key, node in tree.children.items():
        return key, node
    return None


def to_plain(node: Any) -> Any:
    """Convert a tree to JSON-able data using the ``@_``/``#text`` convention."""
    if isinstance(node, Scalar):
        return node.value
    if isinstance(node, ArrayNode):
        return [to_plain(item) for item in node.items]
    out: dict[str, Any] = {}
    for name, value in node.attributes.items():
        out[ATTR_PREFIX + name] = value
    for key, child in node.children.items():
        out[key] = to_plain(child)
    if node.text:
        out[TEXT_KEY] = node.text
    return out


def from_plain(data: Any) -> Any:
    """Inverse of :func:`to_plain`; numbers and booleans become strings."""
    if isinstance(data, list):
        return ArrayNode(items=[from_plain(item) for item in data])
    if isinstance(data, dict):
        obj = ObjectNode()
        for key, value in data.items():
            if key.startswith(ATTR_PREFIX):
                obj.attributes[key[len(ATTR_PREFIX):]] = "" if value is None else str(value)
            elif key == TEXT_KEY:
                obj.text = "" if value is None else str(value)
            else:
                obj.children[key] = from_plain(value)
        return obj
    if data is None:
        return Scalar()
    if isinstance(data, bool):
        return Scalar(value="true" if data else "false")
    return Scalar(value=str(data))
