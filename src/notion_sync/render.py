"""Per-page rendering with a last-resort minimal renderer."""

import html
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from .assets import AssetFetcher
from .blocks import build_tree, list_raw_blocks
from .convert import rich_text_to_plain
from .errors import AssetDownloadFailure, PathEscape, PipelineTransformFailure, RateLimited
from .pipeline import Pipeline
from .properties import page_data

logger = logging.getLogger("notion-sync")


@dataclass
class RenderedPage:
    html: str
    headings: list[dict] = field(default_factory=list)
    image_paths: list[str] = field(default_factory=list)
    fallback: bool = False


class PageRenderer:
    """Renders one page: its data record and its HTML.

    Args:
        client: NotionClient used to list blocks.
        page: Page object from the database query (properties, no blocks).
        assets: Fetcher that caches images locally.
        pipeline: Assembled transform pipeline, shared by all pages.
        cache_cover: Whether to cache uploaded cover images locally.
        src_root: Directory cover paths are made relative to.
        root_alias: Prefix for cached cover paths (e.g. ``src``).
    """

    def __init__(
        self,
        client,
        page: dict,
        assets: AssetFetcher,
        pipeline: Pipeline,
        *,
        cache_cover: bool = False,
        src_root: Optional[Union[str, Path]] = None,
        root_alias: str = "src",
    ):
        self.client = client
        self.page = page
        self.page_id = page["id"]
        self.assets = assets
        self.pipeline = pipeline
        self.cache_cover = cache_cover
        self.src_root = Path(src_root) if src_root is not None else assets.content_root
        self.root_alias = root_alias
        self.image_paths: list[str] = []
        self.image_analytics = {"download": 0, "cached": 0}
        self.logger = logger.getChild(self.page_id[:6])

    async def fetch_image(self, descriptor: dict) -> str:
        """Cache an image and remember its path for image tagging."""
        result = await self.assets.fetch(descriptor)
        self.image_analytics[result.outcome] += 1
        if result.path not in self.image_paths:
            self.image_paths.append(result.path)
        return result.path

    async def get_page_data(self) -> dict:
        """Return the page's data record, caching the cover if configured."""
        cover = self.page.get("cover")
        if self.cache_cover and isinstance(cover, dict) and cover.get("type") == "file":
            try:
                rel_path = await self.fetch_image(cover)
                url = f"{self.root_alias}/{self.assets.cover_path(rel_path, self.src_root)}"
                cover = {**cover, "file": {**(cover.get("file") or {}), "url": url}}
            except AssetDownloadFailure as e:
                self.logger.error(f"Failed to cache cover image: {e}")
        return page_data(self.page, cover=cover)

    async def render(self) -> RenderedPage:
        """Render the page's blocks to HTML.

        Rate limits and path escapes propagate. Any other failure falls back
        to ``minimal_html_from_blocks``.

        Raises:
            RateLimited: The API is still rate limiting after retries.
            PathEscape: An asset path left its root.
            PipelineTransformFailure: Both the full and minimal renders failed.
        """
        self.logger.debug("Rendering page")
        try:
            blocks = await build_tree(self.client, self.page_id, self.fetch_image)

            downloaded, cached = self.image_analytics["download"], self.image_analytics["cached"]
            if downloaded or cached:
                summary = f"Found {downloaded} images to download"
                if cached:
                    summary += f", {cached} already cached"
                self.logger.info(summary)

            result = self.pipeline.run(blocks, self.image_paths, page_id=self.page_id)
            self.logger.debug("Rendered page")
            return RenderedPage(result.html, result.headings, list(self.image_paths))
        except (RateLimited, PathEscape):
            raise
        except Exception as e:
            self.logger.error(f"Failed to render: {type(e).__name__}: {e}")
            try:
                raw_blocks = await list_raw_blocks(self.client, self.page_id)
                return RenderedPage(minimal_html_from_blocks(raw_blocks), [], list(self.image_paths),
                                    fallback=True)
            except RateLimited:
                raise
            except Exception as fallback_error:
                self.logger.error(f"Fallback render failed: {fallback_error}")
                raise PipelineTransformFailure(f"Page {self.page_id} could not be rendered: {e}") from e


# =============================================================================
# Minimal Fallback Renderer
# =============================================================================

MINIMAL_HEADING_TAGS = {"heading_1": "h1", "heading_2": "h2", "heading_3": "h3"}


def _block_text(block: dict, block_type: str) -> str:
    container = block.get(block_type)
    if not isinstance(container, dict):
        return ""
    return html.escape(rich_text_to_plain(container.get("rich_text")))


def minimal_html_from_blocks(blocks: list) -> str:
    """Render raw top-level blocks with no transform passes.

    Only paragraphs, headings, quotes and list items are rendered; everything
    else is skipped. Runs of list items are wrapped in ``ul``/``ol``.
    """
    out: list[str] = []
    bulleted: list[str] = []
    numbered: list[str] = []

    def flush_lists():
        if bulleted:
            out.append(f"<ul>{''.join(bulleted)}</ul>")
            bulleted.clear()
        if numbered:
            out.append(f"<ol>{''.join(numbered)}</ol>")
            numbered.clear()

    for block in blocks:
        if not isinstance(block, dict):
            continue
        t = block.get("type")

        if t == "bulleted_list_item":
            if numbered:
                out.append(f"<ol>{''.join(numbered)}</ol>")
                numbered.clear()
            bulleted.append(f"<li>{_block_text(block, t)}</li>")
            continue

        if t == "numbered_list_item":
            if bulleted:
                out.append(f"<ul>{''.join(bulleted)}</ul>")
                bulleted.clear()
            numbered.append(f"<li>{_block_text(block, t)}</li>")
            continue

        flush_lists()

        if t == "paragraph":
            out.append(f"<p>{_block_text(block, t)}</p>")
        elif t in MINIMAL_HEADING_TAGS:
            tag = MINIMAL_HEADING_TAGS[t]
            out.append(f"<{tag}>{_block_text(block, t)}</{tag}>")
        elif t == "quote":
            out.append(f"<blockquote>{_block_text(block, t)}</blockquote>")

    flush_lists()
    return "\n".join(out)
