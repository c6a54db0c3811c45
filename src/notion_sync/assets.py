"""Local caching of images referenced by Notion pages.

A remote file such as::

    https://prod-files-secure.s3.us-west-2.amazonaws.com/ed3b245b-.../d16195b7-.../image.png?X-Amz-...

is parsed into parent id ``ed3b245b-...``, object id ``d16195b7-...`` and file
name ``image.png``, and saved to ``{destination_root}/ed3b245b-.../d16195b7-....png``.
The path depends only on the URL, so a file that already exists is reused
without downloading again.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union
from urllib.parse import urlsplit

import aiofiles
import httpx

from .errors import DownloadError, DownloadTimeout, InvalidDescriptor, PathEscape

logger = logging.getLogger("notion-sync")

DEFAULT_ASSET_DIR = "assets/images/notion"
DOWNLOAD_TIMEOUT = 10.0  # seconds, whole download

Descriptor = Union[str, dict]


@dataclass(frozen=True)
class AssetResult:
    """Outcome of a fetch: where the file lives and whether it was downloaded."""
    path: str  # forward-slash path relative to the content root
    outcome: str  # "download" or "cached"
    object_id: str


def descriptor_url(descriptor: Any) -> str:
    """Extract the URL from a URL string or a Notion file object.

    Accepts ``{"type": "external", "external": {"url": ...}}``,
    ``{"type": "file", "file": {"url": ...}}``, a bare ``{"url": ...}``,
    or a ``file`` value that is already a string.

    Raises:
        InvalidDescriptor: If no URL string can be found.
    """
    if isinstance(descriptor, str):
        return descriptor
    if isinstance(descriptor, dict):
        file_type = descriptor.get("type")
        if file_type and file_type in descriptor:
            inner = descriptor[file_type]
            if isinstance(inner, str):
                return inner
            if isinstance(inner, dict) and isinstance(inner.get("url"), str):
                return inner["url"]
        if isinstance(descriptor.get("url"), str):
            return descriptor["url"]
    raise InvalidDescriptor(f"No URL in file descriptor: {descriptor!r}"[:200])


def parse_asset_url(url: str) -> tuple[str, str, str]:
    """Split a file URL into (parent_id, object_id, file_name).

    The first three non-empty path segments are used; query strings (such as
    signed-URL tokens) are ignored.

    Raises:
        InvalidDescriptor: If the URL has no scheme/host, too few segments,
            or a ``.`` / ``..`` segment.
    """
    try:
        parts = urlsplit(url.strip())
    except ValueError as e:
        raise InvalidDescriptor(f"Invalid URL: {url}") from e
    if not parts.scheme or not parts.netloc:
        raise InvalidDescriptor(f"Invalid URL: {url}")

    segments = [s for s in parts.path.split("/") if s]
    if len(segments) < 3:
        raise InvalidDescriptor(f"URL path must contain parent, object and file name: {url}")
    parent_id, object_id, file_name = segments[0], segments[1], segments[2]
    if any(s in (".", "..") for s in (parent_id, object_id, file_name)):
        raise InvalidDescriptor(f"URL path has relative segments: {url}")
    return parent_id, object_id, file_name


def _within(path: Path, root: Path) -> bool:
    """Prefix check on resolved paths."""
    path_str, root_str = str(path), str(root)
    return path_str == root_str or path_str.startswith(root_str.rstrip(os.sep) + os.sep)


def _strictly_within(path: Path, root: Path) -> bool:
    """Like ``_within`` but the path may not be the root itself."""
    return path != root and _within(path, root)


def _as_posix_relative(path: Path, root: Path) -> str:
    rel = os.path.relpath(path, root)
    if rel.startswith(".."):
        raise PathEscape(f"Resolved path escaped {root}: {path}")
    return rel.replace(os.sep, "/")


class AssetFetcher:
    """Downloads remote images into an asset root under a fixed content root.

    Args:
        content_root: Root every asset must live under; returned paths are
            relative to it.
        asset_dir: Default destination, relative to ``content_root``.
        timeout: Seconds allowed for one whole download.
        transport: Optional httpx transport (tests).
    """

    def __init__(
        self,
        content_root: Union[str, Path],
        asset_dir: Union[str, Path] = DEFAULT_ASSET_DIR,
        *,
        timeout: float = DOWNLOAD_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.content_root = Path(content_root).resolve()
        self.asset_root = (self.content_root / asset_dir).resolve()
        if not _within(self.asset_root, self.content_root):
            raise PathEscape(f"Asset directory must be within {self.content_root}: {self.asset_root}")
        self.timeout = timeout
        self._http = httpx.AsyncClient(transport=transport, follow_redirects=True)
        # path -> (lock, number of fetches holding or waiting on it)
        self._locks: dict[Path, list] = {}
        self.analytics = {"download": 0, "cached": 0}

    async def aclose(self) -> None:
        await self._http.aclose()

    def resolve_destination(self, url: str, destination_root: Optional[Union[str, Path]] = None) -> tuple[Path, str]:
        """Compute the absolute file path for a URL without touching the disk.

        Returns:
            Tuple of (absolute file path, object id).

        Raises:
            InvalidDescriptor: If the URL cannot be decomposed.
            PathEscape: If the destination root is outside the content root
                or the file would land outside the destination root.
        """
        root = Path(destination_root).resolve() if destination_root is not None else self.asset_root
        if not _within(root, self.content_root):
            raise PathEscape(f"Asset directory must be within {self.content_root}: {root}")

        parent_id, object_id, file_name = parse_asset_url(url)
        ext = file_name.rsplit(".", 1)[-1] if "." in file_name else ""
        target_name = f"{object_id}.{ext}" if ext else object_id

        file_path = (root / parent_id / target_name).resolve()
        if not _strictly_within(file_path, root):
            raise PathEscape(f"Asset path escaped {root}: {parent_id}/{target_name}")
        return file_path, object_id

    async def fetch(self, descriptor: Descriptor,
                    destination_root: Optional[Union[str, Path]] = None) -> AssetResult:
        """Make a remote file available locally.

        Args:
            descriptor: URL string or Notion file object.
            destination_root: Directory to save under (defaults to the asset root).

        Returns:
            AssetResult with the content-root-relative path and the outcome.

        Raises:
            InvalidDescriptor, PathEscape, DownloadTimeout, DownloadError.
        """
        url = descriptor_url(descriptor)
        file_path, object_id = self.resolve_destination(url, destination_root)
        rel_path = _as_posix_relative(file_path, self.content_root)

        async with self._path_lock(file_path):
            if file_path.exists():
                self.analytics["cached"] += 1
                logger.debug(f"Skipped caching image {file_path.name}, cached at {rel_path}")
                return AssetResult(rel_path, "cached", object_id)

            try:
                file_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise DownloadError(f"Cannot create directory for image {file_path.name}: {e}") from e
            try:
                await asyncio.wait_for(self._download(url, file_path), self.timeout)
            except asyncio.TimeoutError as e:
                raise DownloadTimeout(f"Timeout downloading image: {file_path.name}") from e

        self.analytics["download"] += 1
        logger.debug(f"Saved image {file_path.name} to {rel_path}")
        return AssetResult(rel_path, "download", object_id)

    @asynccontextmanager
    async def _path_lock(self, file_path: Path):
        """Serialize fetches of one path; the lock is dropped once unused."""
        entry = self._locks.setdefault(file_path, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if not entry[1]:
                del self._locks[file_path]

    async def _download(self, url: str, file_path: Path) -> None:
        """Stream a URL into place; never leaves a partial file behind."""
        part_path = file_path.with_name(file_path.name + ".part")
        done = False
        try:
            async with self._http.stream("GET", url) as response:
                if not response.is_success:
                    raise DownloadError(
                        f"Failed to fetch image {file_path.name}: "
                        f"{response.status_code} {response.reason_phrase}"
                    )
                async with aiofiles.open(part_path, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        await f.write(chunk)
            os.replace(part_path, file_path)
            done = True
        except httpx.TimeoutException as e:
            raise DownloadTimeout(f"Timeout downloading image: {file_path.name}") from e
        except httpx.HTTPError as e:
            raise DownloadError(f"Failed to download image {file_path.name}: {e}") from e
        except OSError as e:
            raise DownloadError(f"Failed to save image {file_path.name}: {e}") from e
        finally:
            if not done:
                part_path.unlink(missing_ok=True)

    def cover_path(self, rel_path: str, src_root: Union[str, Path]) -> str:
        """Re-express a content-root-relative asset path relative to ``src_root``.

        Raises:
            PathEscape: If the path leaves the content root or ``src_root``.
        """
        abs_path = (self.content_root / rel_path).resolve()
        if not _within(abs_path, self.content_root):
            raise PathEscape(f"Image path escaped content root: {rel_path}")
        return _as_posix_relative(abs_path, Path(src_root).resolve())
