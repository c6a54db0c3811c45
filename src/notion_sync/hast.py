"""HTML-like syntax tree used by the transform pipeline.

Property names follow the hast convention for ``className`` (always a list of
strings once normalized); every other property is stored under its HTML
attribute name.
"""

import html
from dataclasses import dataclass, field
from typing import Any, Iterator, Union

VOID_ELEMENTS = {
    "area", "base", "br", "col", "embed", "hr", "img", "input",
    "link", "meta", "source", "track", "wbr",
}

PROPERTY_ATTRIBUTE_NAMES = {"className": "class", "htmlFor": "for"}


@dataclass
class Text:
    value: str = ""
    type: str = field(default="text", init=False)


@dataclass
class Element:
    tag_name: str
    properties: dict = field(default_factory=dict)
    children: list = field(default_factory=list)
    type: str = field(default="element", init=False)


@dataclass
class Root:
    children: list = field(default_factory=list)
    type: str = field(default="root", init=False)


Node = Union[Root, Element, Text]


def h(tag_name: str, properties: dict | None = None, *children: Any) -> Element:
    """Build an Element; string children become Text nodes."""
    kids = [Text(c) if isinstance(c, str) else c for c in children if c is not None]
    return Element(tag_name, dict(properties or {}), kids)


def is_node(value: Any) -> bool:
    return isinstance(value, (Root, Element, Text))


def walk(tree: Node) -> Iterator[Node]:
    """Yield every node in document order without recursion."""
    stack = [tree]
    while stack:
        node = stack.pop()
        yield node
        children = getattr(node, "children", None)
        if isinstance(children, list):
            stack.extend(reversed([c for c in children if is_node(c)]))


def text_content(node: Node) -> str:
    """Concatenate the text of every descendant Text node."""
    return "".join(n.value for n in walk(node) if isinstance(n, Text) and isinstance(n.value, str))


def _attribute_value(value: Any) -> str | None:
    if value is None or value is False:
        return None
    if value is True:
        return ""
    if isinstance(value, (list, tuple)):
        return " ".join(str(v) for v in value)
    return str(value)


def _open_tag(element: Element) -> str:
    parts = [element.tag_name]
    for name, value in (element.properties or {}).items():
        attr_value = _attribute_value(value)
        if attr_value is None:
            continue
        if name == "className" and not attr_value:
            continue
        attr = PROPERTY_ATTRIBUTE_NAMES.get(name, name)
        if value is True:
            parts.append(attr)
        else:
            parts.append(f'{attr}="{html.escape(attr_value, quote=True)}"')
    return "<" + " ".join(parts) + ">"


def to_html(tree: Node) -> str:
    """Serialize a tree to an HTML string."""
    out: list[str] = []
    stack: list[Any] = [tree]
    while stack:
        item = stack.pop()
        if isinstance(item, str):
            out.append(item)
        elif isinstance(item, Text):
            out.append(html.escape(item.value or "", quote=False))
        elif isinstance(item, Element):
            out.append(_open_tag(item))
            if item.tag_name in VOID_ELEMENTS:
                continue
            stack.append(f"</{item.tag_name}>")
            stack.extend(reversed([c for c in item.children or [] if is_node(c)]))
        elif isinstance(item, Root):
            stack.extend(reversed([c for c in item.children or [] if is_node(c)]))
    return "".join(out)
