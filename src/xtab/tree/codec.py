"""XML codec: text <-> node tree, built on lxml."""

from __future__ import annotations

from collections.abc import Collection
from typing import Any

from lxml import etree

from xtab.contracts.common import ParseError
from xtab.tree.nodes import ArrayNode, ObjectNode, Scalar

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'
XML_NS = "http://www.w3.org/XML/1998/namespace"


def _parser() -> etree.XMLParser:
    return etree.XMLParser(
        remove_comments=True,
        remove_pis=True,
        resolve_entities=False,
        no_network=True,
        huge_tree=True,
    )


def _split(name: str) -> tuple[str | None, str]:
    prefix, sep, local = name.partition(":")
    return (prefix, local) if sep else (None, name)


def is_valid_name(name: str) -> bool:
    """Check an element/attribute name (optionally ``prefix:local``)."""
    if not name or "{" in name or "}" in name:
        return False
    prefix, local = _split(name)
    try:
        for part in (prefix, local):
            if part is not None:
                etree.QName(part)
    except ValueError:
        return False
    return True


# ---------------------------------------------------------------------------
# parse
# ---------------------------------------------------------------------------

def _qualified(el: etree._Element) -> str:
    qn = etree.QName(el)
    return f"{el.prefix}:{qn.localname}" if el.prefix else qn.localname


def _attr_name(el: etree._Element, key: str) -> str:
    if not key.startswith("{"):
        return key
    uri, local = key[1:].split("}", 1)
    if uri == XML_NS:
        return f"xml:{local}"
    for prefix, ns in el.nsmap.items():
        if ns == uri and prefix:
            return f"{prefix}:{local}"
    return local


def _ns_declarations(el: etree._Element) -> dict[str, str]:
    parent = el.getparent()
    inherited = parent.nsmap if parent is not None else {}
    out: dict[str, str] = {}
    for prefix, uri in el.nsmap.items():
        if inherited.get(prefix) != uri:
            out["xmlns" if prefix is None else f"xmlns:{prefix}"] = uri
    return out


def _forced(name: str, path: tuple[str, ...], force_list: Collection[Any]) -> bool:
    return name in force_list or path in force_list


def _convert(el: etree._Element, path: tuple[str, ...], force_list: Collection[Any]) -> Any:
    attributes = _ns_declarations(el)
    for key, value in el.attrib.items():
        attributes[_attr_name(el, key)] = value

    groups: dict[str, list[Any]] = {}
    for child in el:
        if not isinstance(child.tag, str):
            continue
        name = _qualified(child)
        groups.setdefault(name, []).append(_convert(child, path + (name,), force_list))

    # Cell text is kept verbatim; whitespace around child elements is layout.
    raw = el.text or ""
    text = raw if raw.strip() and not groups else raw.strip()

    if not attributes and not groups:
        return Scalar(value=text)

    obj = ObjectNode(attributes=attributes, text=text or None)
    for name, nodes in groups.items():
        if len(nodes) > 1 or _forced(name, path + (name,), force_list):
            obj.children[name] = ArrayNode(items=nodes)
        else:
            obj.children[name] = nodes[0]
    return obj


def parse(text: str, *, force_list: Collection[Any] = ()) -> ObjectNode:
    """Parse document text into a document node holding the root element.

    ``force_list`` names tags (``"Item"``) or tag paths from the root
    (``("Root", "Items", "Item")``) that always become an ArrayNode, even
    when the element occurs once.
    """
    if not text or not text.strip():
        return ObjectNode()
    try:
        root = etree.fromstring(text.encode("utf-8"), _parser())
    except etree.XMLSyntaxError as e:
        raise ParseError(f"Malformed document: {e}") from e
    name = _qualified(root)
    return ObjectNode(children={name: _convert(root, (name,), force_list)})


# ---------------------------------------------------------------------------
# serialize
# ---------------------------------------------------------------------------

def _namespaces(node: ObjectNode, scope: dict[str | None, str]) -> tuple[dict[str | None, str] | None, dict[str | None, str]]:
    """Split ``xmlns`` attributes into an lxml nsmap and the scope they open."""
    nsmap: dict[str | None, str] = {}
    inner = dict(scope)
    for key, value in node.attributes.items():
        if key == "xmlns":
            if value:
                nsmap[None] = inner[None] = value
            else:
                inner.pop(None, None)
        elif key.startswith("xmlns:"):
            nsmap[key[6:]] = inner[key[6:]] = value
    return nsmap or None, inner


def _clark(name: str, scope: dict[str | None, str], *, attribute: bool = False) -> str:
    """Resolve a ``prefix:local`` name against the namespaces in scope."""
    if "{" in name or "}" in name:
        raise ParseError(f"Invalid XML name: {name!r}")
    prefix, local = _split(name)
    if prefix is None:
        uri = None if attribute else scope.get(None)
    elif prefix == "xml":
        uri = XML_NS
    else:
        uri = scope.get(prefix)
        if uri is None:
            raise ParseError(f"Undeclared namespace prefix in {name!r}")
    return f"{{{uri}}}{local}" if uri else local


def _element(parent: etree._Element | None, name: str, node: Any, scope: dict[str | None, str]) -> etree._Element:
    if isinstance(node, ArrayNode):
        raise ParseError(f"Array directly inside array at <{name}>")
    nsmap, inner = _namespaces(node, scope) if isinstance(node, ObjectNode) else (None, scope)
    tag = _clark(name, inner)
    if parent is None:
        el = etree.Element(tag, nsmap=nsmap)
    else:
        el = etree.SubElement(parent, tag, nsmap=nsmap)
    if isinstance(node, Scalar):
        el.text = node.value or None
        return el

    for key, value in node.attributes.items():
        if key == "xmlns" or key.startswith("xmlns:"):
            continue
        el.set(_clark(key, inner, attribute=True), value)
    el.text = node.text or None
    for key, child in node.children.items():
        items = child.items if isinstance(child, ArrayNode) else [child]
        for item in items:
            _element(el, key, item, inner)
    return el


def serialize(doc: ObjectNode, *, indent: int = 2) -> str:
    """Serialize a document node. Empty documents serialize to ``""``.

    The element tree is built with lxml, which refuses invalid names and
    control characters; those surface as ParseError.
    """
    if not doc.children:
        return ""
    if len(doc.children) > 1:
        raise ParseError("Document must have exactly one root element")
    (name, root), = doc.children.items()
    if isinstance(root, ArrayNode):
        raise ParseError(f"Root element <{name}> cannot repeat")
    try:
        element = _element(None, name, root, {})
        etree.indent(element, space=" " * indent)
        body = etree.tostring(element, encoding="unicode")
    except (ValueError, TypeError) as e:
        raise ParseError(f"Cannot serialize <{name}>: {e}") from e
    return f"{XML_DECLARATION}\n{body}\n"
