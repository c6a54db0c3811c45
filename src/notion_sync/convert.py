"""Convert a normalized block tree into an HTML-like tree.

This is the parse stage that feeds the pass pipeline. Rich text annotations
become inline elements; consecutive list items are grouped into ``ul``/``ol``.
"""

import logging
from typing import Optional

from .blocks import Block
from .hast import Element, Root, Text, h

logger = logging.getLogger("notion-sync")

HEADING_TAGS = {"heading_1": "h1", "heading_2": "h2", "heading_3": "h3"}

LIST_TAGS = {
    "bulleted_list_item": ("ul", []),
    "numbered_list_item": ("ol", []),
    "to_do": ("ul", ["notion-to-do"]),
}

FILE_BLOCK_TYPES = {"video", "file", "pdf", "audio"}
LINK_BLOCK_TYPES = {"bookmark", "embed", "link_preview"}

# Rendered as nothing: navigation aids and references to other pages
SKIPPED_BLOCK_TYPES = {
    "table_of_contents", "breadcrumb", "child_database", "link_to_page",
    "template", "unsupported", "table_row",
}


# =============================================================================
# Rich Text
# =============================================================================

def rich_text_to_plain(rich_text: Optional[list]) -> str:
    """Concatenate the plain text of a rich_text array."""
    if not rich_text:
        return ""
    return "".join(
        (t.get("plain_text") or t.get("text", {}).get("content", "")) if isinstance(t, dict) else ""
        for t in rich_text
    )


def _text_with_breaks(content: str) -> list:
    """Split on newlines, inserting <br> elements between lines."""
    nodes: list = []
    for i, line in enumerate(content.split("\n")):
        if i:
            nodes.append(h("br"))
        if line:
            nodes.append(Text(line))
    return nodes


def _rich_text_item(item: dict) -> list:
    item_type = item.get("type", "text")
    annotations = item.get("annotations") or {}
    href = item.get("href")

    if item_type == "equation":
        expr = (item.get("equation") or {}).get("expression", "")
        nodes: list = [h("span", {"className": ["notion-equation"]}, expr)]
    elif item_type == "mention":
        mention = item.get("mention") or {}
        mention_type = mention.get("type", "")
        label = item.get("plain_text", "")
        if mention_type == "date":
            start = (mention.get("date") or {}).get("start", "")
            nodes = [h("time", {"dateTime": start}, label)]
        else:
            nodes = [h("span", {"className": ["notion-mention", f"notion-mention-{mention_type}"]}, label)]
    else:
        text_obj = item.get("text") or {}
        content = text_obj.get("content", item.get("plain_text", ""))
        link = text_obj.get("link")
        if link:
            href = link.get("url") if isinstance(link, dict) else link
        nodes = _text_with_breaks(content)

    # Innermost first so the outermost wrapper is the link
    if annotations.get("code"):
        nodes = [Element("code", {}, nodes)]
    if annotations.get("bold"):
        nodes = [Element("strong", {}, nodes)]
    if annotations.get("italic"):
        nodes = [Element("em", {}, nodes)]
    if annotations.get("strikethrough"):
        nodes = [Element("s", {}, nodes)]
    if annotations.get("underline"):
        nodes = [Element("u", {}, nodes)]
    color = annotations.get("color", "default")
    if color and color != "default":
        nodes = [Element("span", {"className": [f"notion-{color.replace('_', '-')}"]}, nodes)]
    if href:
        nodes = [Element("a", {"href": href}, nodes)]
    return nodes


def rich_text_to_nodes(rich_text: Optional[list]) -> list:
    """Convert a Notion rich_text array to inline nodes."""
    nodes: list = []
    for item in rich_text or []:
        if isinstance(item, dict):
            nodes.extend(_rich_text_item(item))
    return nodes


# =============================================================================
# Blocks
# =============================================================================

def _file_url(content: dict) -> str:
    file_type = content.get("type")
    inner = content.get(file_type) if file_type else None
    if isinstance(inner, str):
        return inner
    if isinstance(inner, dict):
        return inner.get("url", "")
    return content.get("url", "")


def _table(block: Block) -> Element:
    has_header = bool(block.content.get("has_column_header"))
    has_row_header = bool(block.content.get("has_row_header"))
    head_rows: list = []
    body_rows: list = []
    for i, row in enumerate(block.children):
        if row.type != "table_row":
            continue
        header_row = has_header and i == 0
        cells = []
        for j, cell in enumerate(row.content.get("cells") or []):
            tag = "th" if header_row or (has_row_header and j == 0) else "td"
            cells.append(Element(tag, {}, rich_text_to_nodes(cell)))
        (head_rows if header_row else body_rows).append(Element("tr", {}, cells))
    parts = []
    if head_rows:
        parts.append(Element("thead", {}, head_rows))
    parts.append(Element("tbody", {}, body_rows))
    return Element("table", {"className": ["notion-table"]}, parts)


def _convert_block(block: Block) -> tuple[list, Optional[list]]:
    """Convert one block.

    Returns:
        Tuple of (nodes to insert, list that receives the block's children or
        None when the children are already handled / not rendered).
    """
    t = block.type
    c = block.content
    rich = rich_text_to_nodes(c.get("rich_text"))

    if t in SKIPPED_BLOCK_TYPES:
        return [], None

    if t == "paragraph":
        p = Element("p", {}, rich)
        if block.children:
            indent = h("div", {"className": ["notion-indent"]})
            return [p, indent], indent.children
        return [p], None

    if t in HEADING_TAGS:
        heading = Element(HEADING_TAGS[t], {}, rich)
        if block.children:
            body = h("div", {"className": ["notion-toggle-content"]})
            return [heading, body], body.children
        return [heading], None

    if t in ("bulleted_list_item", "numbered_list_item"):
        li = Element("li", {}, rich)
        return [li], li.children

    if t == "to_do":
        checkbox = h("input", {"type": "checkbox", "disabled": True, "checked": bool(c.get("checked"))})
        li = Element("li", {}, [checkbox, Text(" ")] + rich)
        return [li], li.children

    if t == "toggle":
        details = h("details", {"className": ["notion-toggle"]}, Element("summary", {}, rich))
        return [details], details.children

    if t == "quote":
        quote = Element("blockquote", {}, rich)
        return [quote], quote.children

    if t == "callout":
        icon = c.get("icon") or {}
        body = Element("div", {"className": ["notion-callout-text"]}, rich)
        parts = []
        if icon.get("type") == "emoji":
            parts.append(h("span", {"className": ["notion-callout-icon"]}, icon.get("emoji", "")))
        parts.append(body)
        color = c.get("color", "default")
        classes = ["notion-callout"] + ([f"notion-{color.replace('_', '-')}"] if color != "default" else [])
        return [Element("div", {"className": classes}, parts)], body.children

    if t == "code":
        language = c.get("language") or "plain text"
        code = h("code", {"className": [f"language-{language.replace(' ', '-')}"]},
                 rich_text_to_plain(c.get("rich_text")))
        parts = [Element("pre", {}, [code])]
        if c.get("caption"):
            parts.append(Element("figcaption", {}, rich_text_to_nodes(c.get("caption"))))
        return [h("figure", {"className": ["notion-code"]}, *parts)], None

    if t == "divider":
        return [h("hr")], None

    if t == "equation":
        return [h("div", {"className": ["notion-equation"]}, c.get("expression", ""))], None

    if t == "image":
        caption = c.get("caption") or []
        img = h("img", {"src": _file_url(c), "alt": rich_text_to_plain(caption)})
        figure = h("figure", {"className": ["notion-image"]}, img)
        if caption:
            figure.children.append(Element("figcaption", {}, rich_text_to_nodes(caption)))
        return [figure], None

    if t in FILE_BLOCK_TYPES:
        url = _file_url(c)
        label = rich_text_to_plain(c.get("caption")) or c.get("name") or url
        return [h("p", {"className": [f"notion-{t}"]}, h("a", {"href": url}, label))], None

    if t in LINK_BLOCK_TYPES:
        url = c.get("url", "")
        label = rich_text_to_plain(c.get("caption")) or url
        return [h("p", {"className": [f"notion-{t.replace('_', '-')}"]}, h("a", {"href": url}, label))], None

    if t == "table":
        return [_table(block)], None

    if t == "column_list":
        wrapper = h("div", {"className": ["notion-column-list"]})
        return [wrapper], wrapper.children

    if t in ("column", "synced_block"):
        wrapper = h("div", {"className": [f"notion-{t.replace('_', '-')}"]})
        return [wrapper], wrapper.children

    if t == "child_page":
        return [h("p", {"className": ["notion-child-page"]}, c.get("title", "Untitled"))], None

    logger.debug(f"Skipping unknown block type {t} ({block.id})")
    return [], None


def blocks_to_tree(blocks: list[Block]) -> Root:
    """Convert a block forest into a Root.

    Uses an explicit worklist of (sibling blocks, target children list) so
    nesting depth does not grow the call stack.
    """
    root = Root()
    work: list[tuple[list[Block], list]] = [(blocks, root.children)]

    while work:
        siblings, target = work.pop()
        current_list: Optional[Element] = None
        current_type: Optional[str] = None

        for block in siblings:
            nodes, child_target = _convert_block(block)

            if block.type in LIST_TAGS:
                if current_type != block.type:
                    tag, classes = LIST_TAGS[block.type]
                    current_list = Element(tag, {"className": list(classes)} if classes else {}, [])
                    current_type = block.type
                    target.append(current_list)
                current_list.children.extend(nodes)
            else:
                current_list = None
                current_type = None
                target.extend(nodes)

            if child_target is not None and block.children:
                work.append((block.children, child_target))

    return root
