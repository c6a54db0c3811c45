"""MCP server exposing database syncs and the synced pages.

Tools:
- notion_sync: run one incremental sync of the configured database
- notion_pages: list synced pages
- notion_page: rendered record (data, HTML, headings, assets) for one page

Token: passed via --token-file <path> at startup.
"""

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Optional

from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from .assets import DEFAULT_ASSET_DIR
from .config import DEFAULT_CONTENT_ROOT, DEFAULT_STORE_DIR, SyncConfig, load_token
from .errors import FilterParseError, NotionAPIError, RateLimited
from .store import FileStore, dump_entry
from .sync import PageState, SyncReport, run_sync

logger = logging.getLogger("notion-sync")

mcp = FastMCP("notion-sync", host="127.0.0.1", port=2053)

_config: Optional[SyncConfig] = None


def _get_config() -> SyncConfig:
    """Get the sync configuration (set by main)."""
    if _config is None:
        raise RuntimeError("Server not configured. Start it with --token-file and --database-id.")
    return _config


def _error(code: str, message: str, hint: str | None = None) -> str:
    """Format an error with an optional hint."""
    parts = [f"error: {code} - {message}"]
    if hint:
        parts.append(f"hint: {hint}")
    return "\n".join(parts)


HINTS = {
    "rate_limited": "Too many requests. Wait a moment and run the sync again.",
    "invalid_token": "Token is invalid or expired. Check the token file.",
    "missing_capability": "Share the database with the integration: open in Notion → Share → invite the integration.",
    "filter": "Check property names and operators against the database schema.",
}


def format_report(report: SyncReport) -> str:
    """Render a sync report as compact text."""
    lines = [report.summary()]
    for state in (PageState.COMMITTED, PageState.FAILED_KEEP_PREVIOUS, PageState.DELETED):
        for page_id in report.pages_in(state):
            line = f"{state.value} {page_id}"
            if page_id in report.errors:
                line += f" ({report.errors[page_id]})"
            elif page_id in report.fallbacks:
                line += " (minimal fallback)"
            lines.append(line)
    return "\n".join(lines)


@mcp.tool()
async def notion_sync() -> str:
    """Sync the configured Notion database into the local page store.

    Only pages edited since the last sync are re-rendered; pages removed
    from the database are removed from the store.

    Returns:
        Summary line followed by one line per created/updated/failed/deleted page.
    """
    try:
        report = await run_sync(_get_config())
    except RuntimeError as e:
        return _error("NOT_CONFIGURED", str(e))
    except RateLimited as e:
        return _error("RATE_LIMITED", str(e), hint=HINTS["rate_limited"])
    except FilterParseError as e:
        return _error("INVALID_QUERY", str(e), hint=HINTS["filter"])
    except NotionAPIError as e:
        if e.status == 401:
            return _error("INVALID_TOKEN", str(e), hint=HINTS["invalid_token"])
        if e.status in (403, 404):
            return _error("NO_ACCESS", str(e), hint=HINTS["missing_capability"])
        return _error("HTTP_ERROR", str(e))
    return format_report(report)


@mcp.tool()
async def notion_pages() -> str:
    """List pages in the local store.

    Returns:
        One line per page: id, title, heading count and asset count.
    """
    try:
        store = FileStore(_get_config().store_dir)
    except RuntimeError as e:
        return _error("NOT_CONFIGURED", str(e))
    records = await store.records()
    if not records:
        return "no pages synced"
    lines = []
    for record in records:
        title = next(
            (v for k, v in record.data.get("flat", {}).items()
             if record.data.get("properties", {}).get(k, {}).get("type") == "title"),
            "Untitled",
        )
        lines.append(f"{record.id} {title!r} headings={len(record.headings)} assets={len(record.asset_paths)}")
    return "\n".join(lines)


@mcp.tool()
async def notion_page(page_id: str) -> str:
    """Get the rendered record of one synced page.

    Args:
        page_id: Notion page UUID (as stored).

    Returns:
        JSON with id, data, html, headings and asset_paths.
    """
    try:
        store = FileStore(_get_config().store_dir)
        entry = await store.get(page_id)
    except RuntimeError as e:
        return _error("NOT_CONFIGURED", str(e))
    except ValueError as e:
        return _error("INVALID_ID", str(e))
    if entry is None:
        return _error("NOT_FOUND", f"No synced page {page_id}", hint="Run notion_sync first.")
    return dump_entry(entry.to_record())


# =============================================================================
# HTTP Endpoints (/health)
# =============================================================================

async def health_endpoint(request: Request) -> JSONResponse:
    """Health check endpoint for easy testing."""
    configured = _config is not None
    pages = len(FileStore(_config.store_dir).keys()) if configured else None
    return JSONResponse({
        "status": "ok",
        "configured": configured,
        "pages": pages,
    })


# =============================================================================
# Main Entry Point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Notion database sync server")
    parser.add_argument("--token-file", required=True, help="Path to file containing Notion API token")
    parser.add_argument("--database-id", required=True, help="Notion database to sync")
    parser.add_argument("--content-root", default=DEFAULT_CONTENT_ROOT,
                        help="Root directory cached assets must stay within")
    parser.add_argument("--asset-dir", default=DEFAULT_ASSET_DIR,
                        help="Image directory relative to the content root")
    parser.add_argument("--store-dir", default=DEFAULT_STORE_DIR, help="Directory of the page store")
    parser.add_argument("--filter", default=None, help='Filter expression, e.g. \'Published = true\'')
    parser.add_argument("--sort", default=None, help="Sort expression, e.g. '-Date, Name'")
    parser.add_argument("--concurrency", type=int, default=3, help="Pages rendered concurrently")
    parser.add_argument("--cache-cover", action="store_true", help="Cache uploaded cover images")
    parser.add_argument("--once", action="store_true", help="Run one sync, print the report and exit")
    parser.add_argument("--http", action="store_true",
                        help="Run as HTTP server on localhost:2053 instead of stdio")
    return parser


def main():
    """Run a sync or start the MCP server.

    Usage:
        notion-sync --token-file secrets/notion_token --database-id <id> --once
        notion-sync --token-file secrets/notion_token --database-id <id>          # stdio
        notion-sync --token-file secrets/notion_token --database-id <id> --http   # localhost:2053
    """
    args = build_parser().parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    global _config
    try:
        token = load_token(args.token_file)
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        raise SystemExit(1)
    logger.info(f"Notion token loaded from {Path(args.token_file).expanduser()}")

    try:
        _config = SyncConfig(
            database_id=args.database_id,
            token=token,
            content_root=Path(args.content_root),
            asset_dir=args.asset_dir,
            store_dir=Path(args.store_dir),
            filter=args.filter,
            sorts=args.sort,
            concurrency=args.concurrency,
            cache_cover=args.cache_cover,
        )
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        raise SystemExit(1)

    if args.once:
        report = asyncio.run(run_sync(_config))
        print(format_report(report))
        return

    if args.http:
        import uvicorn

        app = mcp.streamable_http_app()
        app.add_route("/health", health_endpoint, methods=["GET"])

        logger.info("Starting Notion sync server on http://127.0.0.1:2053")
        uvicorn.run(app, host="127.0.0.1", port=2053, log_level="warning")
    else:
        mcp.run()


if __name__ == "__main__":
    main()
