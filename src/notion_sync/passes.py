"""Tree-rewrite passes applied by the pipeline.

Each pass has the signature ``pass_(tree, context)`` and mutates the tree in
place. All traversals use explicit stacks.
"""

import json
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Optional

from .assets import parse_asset_url
from .errors import InvalidDescriptor
from .hast import Element, Root, Text, is_node, text_content

# Text inside these elements is never rewritten
CODE_TAGS = {"code", "pre", "kbd", "samp"}

URL_PROPERTIES = ("href", "src")

LOCAL_ASSET_ATTRIBUTE = "data-local-asset"

HEADING_DEPTHS = {"h1": 1, "h2": 2, "h3": 3, "h4": 4, "h5": 5, "h6": 6}

# A single backslash before punctuation/symbols left over from escaping
ESCAPED_PUNCTUATION = re.compile(r"""\\([\\()\[\]{}'";:,.!?|`~<>#*+_\-])""")
WHITESPACE_RUN = re.compile(r"\s{2,}")

PERCENT_RUN = re.compile(r"(?:%[0-9A-Fa-f]{2})+")
# Characters decodeURI leaves escaped
URI_RESERVED = set(";/?:@&=+$,#")
HREF_PARTS = re.compile(r"^((?:https?:)?//[^/?#]*)?([^?#]*)(.*)$", re.DOTALL)


@dataclass
class PassContext:
    """Per-render state shared by the passes."""
    image_paths: list[str] = field(default_factory=list)
    headings: list[dict] = field(default_factory=list)
    page_id: str = ""


# =============================================================================
# Structure
# =============================================================================

def sanitize(tree: Root, context: Optional[PassContext] = None) -> None:
    """Guarantee every parent node has a list of nodes as ``children`` and
    every Element has a ``properties`` dict.
    """
    stack: list[Any] = [tree]
    while stack:
        node = stack.pop()
        if isinstance(node, Text):
            if not isinstance(node.value, str):
                node.value = "" if node.value is None else str(node.value)
            continue

        children = getattr(node, "children", None)
        if not isinstance(children, list):
            node.children = []
        else:
            node.children = [c for c in children if is_node(c)]

        if isinstance(node, Element) and not isinstance(node.properties, dict):
            node.properties = {}

        stack.extend(node.children)


def _coerce_url(value: Any) -> Optional[str]:
    """Coerce a structured link value to a string, or None if impossible."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        url = value.get("url")
        return url if isinstance(url, str) else None
    url = getattr(value, "url", None)
    if isinstance(url, str):
        return url
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def normalize_properties(tree: Root, context: Optional[PassContext] = None) -> None:
    """Coerce ``className`` to a list of strings and href/src to strings."""
    stack: list[Any] = [tree]
    while stack:
        node = stack.pop()
        if isinstance(node, Element):
            if not isinstance(node.properties, dict):
                node.properties = {}
            props = node.properties
            cls = props.get("className")
            if cls is None:
                props["className"] = []
            elif isinstance(cls, str):
                props["className"] = cls.split()
            elif isinstance(cls, (list, tuple)):
                props["className"] = [str(c) for c in cls if c is not None]
            else:
                props["className"] = []

            for name in URL_PROPERTIES:
                if name not in props or props[name] is None:
                    continue
                url = _coerce_url(props[name])
                if url is None:
                    del props[name]
                else:
                    props[name] = url

        stack.extend(getattr(node, "children", None) or [])


# =============================================================================
# Text and links
# =============================================================================

def _decode_percent_run(match: re.Match) -> str:
    escaped = match.group(0)
    try:
        decoded = bytes.fromhex(escaped.replace("%", "")).decode("utf-8")
    except UnicodeDecodeError:
        return escaped
    return "".join(f"%{ord(ch):02X}" if ch in URI_RESERVED else ch for ch in decoded)


def decode_uri(value: str) -> str:
    """Decode percent-escapes except those for reserved URI characters.

    Invalid UTF-8 sequences are left encoded.
    """
    return PERCENT_RUN.sub(_decode_percent_run, value)


def decode_href(href: str) -> str:
    """Decode only the pathname of a link.

    Applies when the href contains a percent-escape and starts with ``http``,
    ``/`` or ``#``. Query strings and fragments stay as they are.
    """
    if not PERCENT_RUN.search(href) or not href.startswith(("http", "/", "#")):
        return href
    match = HREF_PARTS.match(href)
    if not match:
        return href
    prefix, path, rest = match.group(1) or "", match.group(2), match.group(3)
    return prefix + decode_uri(path) + rest


def clean_text(tree: Root, context: Optional[PassContext] = None) -> None:
    """Remove escaping artifacts from visible text and decode link paths."""
    stack: list[tuple[Any, bool]] = [(tree, False)]
    while stack:
        node, in_code = stack.pop()

        if isinstance(node, Text):
            if not in_code and isinstance(node.value, str):
                value = ESCAPED_PUNCTUATION.sub(r"\1", node.value)
                node.value = WHITESPACE_RUN.sub(" ", value)
            continue

        if isinstance(node, Element):
            in_code = in_code or node.tag_name in CODE_TAGS
            href = node.properties.get("href") if isinstance(node.properties, dict) else None
            if node.tag_name == "a" and isinstance(href, str) and href:
                node.properties["href"] = decode_href(href)

        for child in getattr(node, "children", None) or []:
            stack.append((child, in_code))


# =============================================================================
# Images
# =============================================================================

def _object_id(path: str) -> str:
    return PurePosixPath(path).stem


def tag_images(tree: Root, context: PassContext) -> None:
    """Mark images that have a locally cached copy.

    An ``img`` matches when its src is one of ``context.image_paths``, or when
    its src is a remote URL whose object id matches a cached file. Matches get
    a JSON ``data-local-asset`` attribute holding the original properties, the
    local path and the occurrence index of that image on the page.
    """
    paths = set(context.image_paths)
    by_object_id = {_object_id(p): p for p in context.image_paths}
    occurrences: dict[str, int] = {}

    stack: list[Any] = [tree]
    while stack:
        node = stack.pop()
        if isinstance(node, Element) and node.tag_name == "img" and isinstance(node.properties, dict):
            src = node.properties.get("src")
            if isinstance(src, str) and src:
                src = decode_uri(src)
                node.properties["src"] = src

                local_path = src if src in paths else None
                if local_path is None:
                    try:
                        _, object_id, _ = parse_asset_url(src)
                    except InvalidDescriptor:
                        object_id = None
                    local_path = by_object_id.get(object_id) if object_id else None

                if local_path is not None:
                    original = {k: v for k, v in node.properties.items() if k != LOCAL_ASSET_ATTRIBUTE}
                    index = occurrences.get(local_path, 0)
                    occurrences[local_path] = index + 1
                    node.properties[LOCAL_ASSET_ATTRIBUTE] = json.dumps(
                        {**original, "localPath": local_path, "index": index}
                    )

        # Reverse so document order is preserved for occurrence indexes
        stack.extend(reversed(getattr(node, "children", None) or []))


# =============================================================================
# Heading anchors
# =============================================================================

SLUG_STRIP = re.compile(r"[^\w\- ]")


class Slugger:
    """GitHub-style slugs, unique within one document."""

    def __init__(self):
        self.occurrences: dict[str, int] = {}

    def slug(self, text: str) -> str:
        base = SLUG_STRIP.sub("", text.lower()).replace(" ", "-")
        slug = base
        while slug in self.occurrences:
            self.occurrences[base] += 1
            slug = f"{base}-{self.occurrences[base]}"
        self.occurrences[slug] = 0
        return slug


def heading_anchors(tree: Root, context: PassContext) -> None:
    """Give every heading a unique ``id`` and record it in ``context.headings``."""
    slugger = Slugger()
    stack: list[Any] = [tree]
    while stack:
        node = stack.pop()
        if isinstance(node, Element) and node.tag_name in HEADING_DEPTHS:
            text = text_content(node).strip()
            existing = node.properties.get("id")
            if isinstance(existing, str) and existing:
                slug = existing
                slugger.occurrences.setdefault(slug, 0)
            else:
                slug = slugger.slug(text)
                node.properties["id"] = slug
            context.headings.append({"depth": HEADING_DEPTHS[node.tag_name], "slug": slug, "text": text})
            continue
        stack.extend(reversed(getattr(node, "children", None) or []))
