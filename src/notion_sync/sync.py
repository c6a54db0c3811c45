"""Incremental synchronization of a Notion database into the page store.

Per run:

1. Enumerate every page matching the query. Any error here aborts the run
   before anything is deleted.
2. Skip pages whose ``last_edited_time`` equals the stored digest.
3. Render the rest concurrently (bounded), committing each entry only after a
   complete render. A page that cannot be rendered keeps its previous entry.
4. Delete entries for pages the query no longer returns.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .assets import AssetFetcher
from .client import NotionClient, get_database_title
from .config import SyncConfig
from .errors import PathEscape, StoreWriteFailure
from .filters import build_query
from .pipeline import Pipeline, build_pipeline
from .properties import page_title
from .render import PageRenderer, RenderedPage
from .retry import RetryPolicy
from .store import FileStore, StoreEntry

logger = logging.getLogger("notion-sync")


class PageState(Enum):
    UNCHANGED = "unchanged"
    COMMITTED = "committed"
    FAILED_KEEP_PREVIOUS = "failed_keep_previous"
    DELETED = "deleted"


@dataclass
class SyncReport:
    """Terminal state of every page touched by one run."""
    states: dict[str, PageState] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    fallbacks: list[str] = field(default_factory=list)
    page_count: int = 0

    def pages_in(self, state: PageState) -> list[str]:
        return sorted(page_id for page_id, s in self.states.items() if s is state)

    @property
    def rendered(self) -> int:
        """Number of pages a render was attempted for."""
        return len(self.pages_in(PageState.COMMITTED)) + len(self.pages_in(PageState.FAILED_KEEP_PREVIOUS))

    def summary(self) -> str:
        counts = ", ".join(f"{len(self.pages_in(s))} {s.value}" for s in PageState)
        return f"{self.page_count} pages from API: {counts}"


def _is_full_page(page) -> bool:
    return (
        isinstance(page, dict)
        and isinstance(page.get("id"), str)
        and isinstance(page.get("last_edited_time"), str)
        and "properties" in page
    )


def _page_metadata(page: dict) -> str:
    title = page_title(page)
    return f'{f"{title!r}" if title else "Untitled"} (last edited {page["last_edited_time"][:10]})'


class SyncEngine:
    """Drives one database's sync runs.

    Args:
        client: NotionClient for queries and block listing.
        store: Persistent page store.
        assets: Image fetcher.
        config: Sync settings (database, query, concurrency, covers).
        pipeline: Transform pipeline; built from ``config.extensions`` if omitted.
        render_retry: Page-level backoff for renders still rate limited after
            the client's own retries.
    """

    def __init__(
        self,
        client: NotionClient,
        store: FileStore,
        assets: AssetFetcher,
        config: SyncConfig,
        pipeline: Optional[Pipeline] = None,
        render_retry: Optional[RetryPolicy] = None,
    ):
        self.client = client
        self.store = store
        self.assets = assets
        self.config = config
        self.pipeline = pipeline or build_pipeline(config.extensions)
        self.render_retry = render_retry or RetryPolicy(max_retries=5, base_delay=1.0, max_delay=10.0)

    async def _query_params(self) -> tuple[Optional[dict], Optional[list]]:
        """Compile filter / sort expressions against the database schema."""
        cfg = self.config
        if not isinstance(cfg.filter, str) and not isinstance(cfg.sorts, str):
            return cfg.filter, cfg.sorts
        database = await self.client.retrieve_database(cfg.database_id)
        logger.info(f"Compiling query for database {get_database_title(database)!r}")
        return build_query(database.get("properties") or {}, cfg.filter, cfg.sorts)

    async def _enumerate(self) -> list[dict]:
        filter_obj, sorts = await self._query_params()
        pages = []
        async for page in self.client.query_database(
            self.config.database_id,
            filter_obj=filter_obj,
            sorts=sorts,
            page_size=self.config.page_size,
            archived=self.config.archived,
        ):
            if _is_full_page(page):
                pages.append(page)
        return pages

    async def _render(self, page: dict) -> tuple[dict, RenderedPage]:
        renderer = PageRenderer(
            self.client,
            page,
            self.assets,
            self.pipeline,
            cache_cover=self.config.cache_cover,
            src_root=self.config.src_root,
            root_alias=self.config.root_alias,
        )
        data = await renderer.get_page_data()
        rendered = await renderer.render()
        return data, rendered

    async def _sync_page(self, page: dict, was_stored: bool, semaphore: asyncio.Semaphore,
                         report: SyncReport) -> None:
        page_id = page["id"]
        log = logger.getChild(page_id[:6])

        async with semaphore:
            try:
                data, rendered = await self.render_retry.call(
                    lambda: self._render(page), label=f"render {page_id[:6]}"
                )
            except PathEscape as e:
                log.error(f"Asset path escaped its root, check the asset configuration: {e}")
                report.states[page_id] = PageState.FAILED_KEEP_PREVIOUS
                report.errors[page_id] = str(e)
                return
            except Exception as e:
                log.error(f"Keeping previous version, render failed: {type(e).__name__}: {e}")
                report.states[page_id] = PageState.FAILED_KEEP_PREVIOUS
                report.errors[page_id] = str(e)
                return

            entry = StoreEntry(
                id=page_id,
                digest=page["last_edited_time"],
                data=data,
                html=rendered.html,
                headings=rendered.headings,
                asset_paths=rendered.image_paths,
            )
            try:
                await self.store.set(entry)
            except StoreWriteFailure as e:
                log.error(f"Keeping previous version, store write failed: {e}")
                report.states[page_id] = PageState.FAILED_KEEP_PREVIOUS
                report.errors[page_id] = str(e)
                return

        if rendered.fallback:
            report.fallbacks.append(page_id)
        report.states[page_id] = PageState.COMMITTED
        log.info(f"{'Updated' if was_stored else 'Created'} page {_page_metadata(page)}")

    async def run(self) -> SyncReport:
        """Run one sync pass.

        Raises:
            Any enumeration error (API failure, rate limit exhaustion, invalid
            filter); the store is left untouched in that case.
        """
        report = SyncReport()
        previously_known = set(self.store.keys())
        logger.info(f"Loading database, found {len(previously_known)} pages in store")

        pages = await self._enumerate()
        report.page_count = len(pages)

        pending: list[tuple[dict, bool]] = []
        for page in pages:
            page_id = page["id"]
            was_stored = page_id in previously_known
            previously_known.discard(page_id)

            existing = await self.store.get(page_id) if was_stored else None
            if existing is not None and existing.digest == page["last_edited_time"]:
                report.states[page_id] = PageState.UNCHANGED
                logger.getChild(page_id[:6]).debug(f"Skipped page {_page_metadata(page)}")
            else:
                pending.append((page, was_stored))

        if pending:
            logger.info(f"Rendering {len(pending)} updated pages")
            semaphore = asyncio.Semaphore(self.config.concurrency)
            await asyncio.gather(*[
                self._sync_page(page, was_stored, semaphore, report)
                for page, was_stored in pending
            ])
            logger.info(f"Rendered {len(pending)} pages")

        # Only after every render has finished
        for page_id in sorted(previously_known):
            try:
                await self.store.delete(page_id)
            except StoreWriteFailure as e:
                logger.getChild(page_id[:6]).error(f"Failed to delete page: {e}")
                report.errors[page_id] = str(e)
                continue
            report.states[page_id] = PageState.DELETED
            logger.getChild(page_id[:6]).info("Deleted page")

        logger.info(f"Loaded database, {report.summary()}")
        return report


async def run_sync(config: SyncConfig) -> SyncReport:
    """Build the client, fetcher and store from a config and run one sync."""
    assets = AssetFetcher(config.content_root, config.asset_dir)
    store = FileStore(config.store_dir)
    async with NotionClient(config.token) as client:
        try:
            engine = SyncEngine(client, store, assets, config)
            return await engine.run()
        finally:
            await assets.aclose()
