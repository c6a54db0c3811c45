"""Block model and block tree construction.

``Block.from_api`` is the only place raw API block dicts are accepted. Every
Block it returns has a per-type ``content`` dict and a ``children`` list, so
nothing downstream ever checks for a missing container.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from .assets import descriptor_url
from .errors import AssetDownloadFailure, MalformedRemoteShape

logger = logging.getLogger("notion-sync")

BLOCK_TYPES = {
    "paragraph", "heading_1", "heading_2", "heading_3",
    "bulleted_list_item", "numbered_list_item", "to_do", "toggle",
    "quote", "callout", "code", "divider", "image", "video", "file", "pdf",
    "bookmark", "embed", "link_preview", "equation", "table", "table_row",
    "column_list", "column", "synced_block", "template", "child_page",
    "child_database", "link_to_page", "table_of_contents", "breadcrumb",
    "audio", "unsupported",
}

# has_children is true for these, but their children are separate pages
DETACHED_CHILD_TYPES = {"child_page", "child_database"}

ImageFetcher = Callable[[dict], Awaitable[str]]


@dataclass
class Block:
    """One node of a page's content tree."""
    id: str
    type: str
    has_children: bool = False
    content: dict = field(default_factory=dict)
    children: list["Block"] = field(default_factory=list)

    @classmethod
    def from_api(cls, raw: Any) -> "Block":
        """Normalize a raw API block.

        A missing per-type container becomes ``{}`` and any ``children`` the
        API embedded are converted too; blocks the API does not nest get ``[]``.

        Raises:
            MalformedRemoteShape: If the block is not an object with a string
                ``type``, or its container is not an object.
        """
        block, embedded = cls._from_api_one(raw)
        # Embedded subtrees are normalized with an explicit stack
        stack = [(block, embedded)]
        while stack:
            parent, raw_children = stack.pop()
            for raw_child in raw_children:
                child, child_embedded = cls._from_api_one(raw_child)
                parent.children.append(child)
                stack.append((child, child_embedded))
        return block

    @classmethod
    def _from_api_one(cls, raw: Any) -> tuple["Block", list]:
        """Normalize one block; returns it with its raw embedded children."""
        if not isinstance(raw, dict):
            raise MalformedRemoteShape(f"Block is not an object: {type(raw).__name__}")
        block_type = raw.get("type")
        if not isinstance(block_type, str) or not block_type:
            raise MalformedRemoteShape(f"Block {raw.get('id', '?')} has no type")

        content = raw.get(block_type)
        if content is None:
            content = {}
        elif not isinstance(content, dict):
            raise MalformedRemoteShape(
                f"Block {raw.get('id', '?')} has a {type(content).__name__} {block_type} container"
            )
        else:
            content = dict(content)

        embedded = content.pop("children", None) or []
        if not isinstance(embedded, list):
            embedded = []

        block = cls(
            id=str(raw.get("id", "")),
            type=block_type,
            has_children=bool(raw.get("has_children")),
            content=content,
        )
        return block, embedded

    def _shallow_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "has_children": self.has_children,
            self.type: {**self.content, "children": []},
        }

    def to_dict(self) -> dict:
        """Return the API-like shape, with children under the container."""
        root = self._shallow_dict()
        stack = [(self, root)]
        while stack:
            block, out = stack.pop()
            for child in block.children:
                child_out = child._shallow_dict()
                out[block.type]["children"].append(child_out)
                stack.append((child, child_out))
        return root


def iter_blocks(blocks: list[Block]):
    """Yield every block of a forest, parents before children."""
    stack = list(reversed(blocks))
    while stack:
        block = stack.pop()
        yield block
        stack.extend(reversed(block.children))


async def _fetch_level(client, block_id: str) -> list[Block]:
    """Fetch and normalize the immediate children of a block (all pages)."""
    blocks = []
    async for raw in client.list_children(block_id):
        blocks.append(Block.from_api(raw))
    return blocks


async def _gather_levels(client, parents: list[Block]) -> list[list[Block]]:
    """Fetch the children of several blocks at once.

    If one fetch fails the others are cancelled and awaited before the error
    propagates, so nothing keeps running in the background.
    """
    tasks = [asyncio.create_task(_fetch_level(client, b.id)) for b in parents]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


async def _localize_image(block: Block, fetch_image: ImageFetcher) -> None:
    """Point an image block at a locally cached copy, or keep the remote URL."""
    original = block.content
    caption = original.get("caption", [])
    try:
        url = await fetch_image(original)
    except AssetDownloadFailure as e:
        logger.error(f"Failed to fetch image for block {block.id}: {e}")
        try:
            url = descriptor_url(original)
        except AssetDownloadFailure:
            return
    block.content = {"type": "file", "file": {"url": url}, "caption": caption}


async def build_tree(
    client,
    root_block_id: str,
    fetch_image: Optional[ImageFetcher] = None,
) -> list[Block]:
    """Fetch a page's full block tree.

    Uses breadth-first traversal with parallel requests at each level; each
    level's pagination is sequential per parent. Image blocks are localized
    through ``fetch_image`` in document order.

    Args:
        client: A NotionClient (anything with ``list_children``).
        root_block_id: The page or block whose descendants to fetch.
        fetch_image: Coroutine mapping an image container to a local path.

    Returns:
        The root's children with subtrees attached.

    Raises:
        MalformedRemoteShape: If any block cannot be normalized.
    """
    roots = await _fetch_level(client, root_block_id)

    level = roots
    while level:
        if fetch_image is not None:
            for block in level:
                if block.type == "image":
                    await _localize_image(block, fetch_image)

        # Embedded children are already normalized; only fetch the rest
        next_level: list[Block] = []
        parents = []
        for block in level:
            if block.children:
                next_level.extend(block.children)
            elif block.has_children and block.type not in DETACHED_CHILD_TYPES:
                parents.append(block)

        children_lists = await _gather_levels(client, parents)

        for block, children in zip(parents, children_lists):
            block.children = children
            next_level.extend(children)
        level = next_level

    return roots


async def list_raw_blocks(client, root_block_id: str) -> list[dict]:
    """Fetch a page's top-level blocks exactly as the API returns them."""
    return [raw async for raw in client.list_children(root_block_id)]
