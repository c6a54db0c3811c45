"""Ordered transform pipeline from block tree to HTML.

The pass order is fixed by ``build_pipeline`` and nowhere else:

    convert → sanitize → normalize-props → extensions → clean-text → tag-images
            → normalize-props → heading-anchors → serialize

Sanitizing first means every later pass, including caller extensions, can
rely on ``children`` lists and ``properties`` dicts being present. Properties
are normalized a second time because extensions and image tagging may add
elements.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from .blocks import Block
from .convert import blocks_to_tree
from .hast import Root, to_html
from .passes import (
    PassContext,
    clean_text,
    heading_anchors,
    normalize_properties,
    sanitize,
    tag_images,
)

logger = logging.getLogger("notion-sync")

# A pass may mutate the tree in place (returning None) or return a replacement Root
Pass = Callable[[Root, PassContext], Optional[Root]]


@dataclass
class RenderResult:
    html: str
    headings: list[dict] = field(default_factory=list)


@dataclass(frozen=True)
class Pipeline:
    """An assembled, immutable sequence of named passes."""
    passes: tuple[tuple[str, Pass], ...]

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self.passes]

    def transform(self, tree: Root, context: PassContext) -> Root:
        """Apply every pass in order. Exceptions propagate to the caller."""
        for _, pass_ in self.passes:
            result = pass_(tree, context)
            if result is not None:
                tree = result
        return tree

    def run(self, blocks: list[Block], image_paths: Sequence[str] = (), page_id: str = "") -> RenderResult:
        """Render a block tree to HTML plus its heading anchors."""
        context = PassContext(image_paths=list(image_paths), page_id=page_id)
        tree = self.transform(blocks_to_tree(blocks), context)
        html = to_html(tree)
        logger.debug(f"Rendered {page_id or 'blocks'}: {len(html)} chars, {len(context.headings)} headings")
        return RenderResult(html=html, headings=context.headings)


def build_pipeline(extensions: Sequence[Pass] = ()) -> Pipeline:
    """Assemble the pipeline once, placing caller extensions after the
    structural passes and before text/image handling.
    """
    passes: list[tuple[str, Pass]] = [
        ("sanitize", sanitize),
        ("normalize-properties", normalize_properties),
    ]
    for i, extension in enumerate(extensions):
        passes.append((getattr(extension, "__name__", f"extension-{i}"), extension))
    passes += [
        ("clean-text", clean_text),
        ("tag-images", tag_images),
        ("renormalize-properties", normalize_properties),
        ("heading-anchors", heading_anchors),
    ]
    return Pipeline(tuple(passes))
