"""Persistent keyed store of rendered pages.

One JSON document per page id. Writes go to a temporary file that is then
``os.replace``d over the old document, so a reader sees either the previous
entry or the new one, never a mix.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import aiofiles

from .errors import StoreWriteFailure

logger = logging.getLogger("notion-sync")

ENTRY_SUFFIX = ".json"


@dataclass
class PageRecord:
    """What consumers of the synced content see for one page."""
    id: str
    data: dict
    html: str
    headings: list[dict] = field(default_factory=list)
    asset_paths: list[str] = field(default_factory=list)


@dataclass
class StoreEntry:
    """A committed render of one page, keyed by page id."""
    id: str
    digest: str
    data: dict
    html: str
    headings: list[dict] = field(default_factory=list)
    asset_paths: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict) -> "StoreEntry":
        return cls(
            id=raw["id"],
            digest=raw.get("digest", ""),
            data=raw.get("data") or {},
            html=raw.get("html", ""),
            headings=raw.get("headings") or [],
            asset_paths=raw.get("asset_paths") or [],
        )

    def to_record(self) -> PageRecord:
        return PageRecord(self.id, self.data, self.html, self.headings, self.asset_paths)


class FileStore:
    """Directory-backed store with atomic per-key set and delete.

    Distinct keys live in distinct files, so concurrent writers for different
    pages never touch the same file.
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not key or key in (".", "..") or "/" in key or "\\" in key or "\0" in key:
            raise ValueError(f"Invalid store key: {key!r}")
        return self.directory / f"{key}{ENTRY_SUFFIX}"

    def keys(self) -> list[str]:
        """Ids of every stored page."""
        return sorted(
            p.name[: -len(ENTRY_SUFFIX)]
            for p in self.directory.glob(f"*{ENTRY_SUFFIX}")
            if not p.name.startswith(".")
        )

    async def get(self, key: str) -> Optional[StoreEntry]:
        """Load an entry; unreadable documents count as absent."""
        path = self._path(key)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                raw = json.loads(await f.read())
            return StoreEntry.from_dict(raw)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable store entry {key}: {e}")
            return None

    async def set(self, entry: StoreEntry) -> None:
        """Atomically write an entry.

        Raises:
            StoreWriteFailure: If the entry cannot be serialized or written.
        """
        path = self._path(entry.id)
        tmp_path = path.with_name(f".{path.name}.tmp")
        try:
            payload = json.dumps(entry.to_dict(), ensure_ascii=False, indent=2, sort_keys=True)
        except (TypeError, ValueError) as e:
            raise StoreWriteFailure(f"Cannot serialize entry {entry.id}: {e}") from e

        done = False
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(payload)
            os.replace(tmp_path, path)
            done = True
        except OSError as e:
            raise StoreWriteFailure(f"Cannot write entry {entry.id}: {e}") from e
        finally:
            if not done:
                tmp_path.unlink(missing_ok=True)

    async def delete(self, key: str) -> None:
        """Remove an entry if present.

        Raises:
            StoreWriteFailure: If the document exists but cannot be removed.
        """
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StoreWriteFailure(f"Cannot delete entry {key}: {e}") from e

    async def records(self) -> list[PageRecord]:
        """Consumer view of every stored page."""
        records = []
        for key in self.keys():
            entry = await self.get(key)
            if entry is not None:
                records.append(entry.to_record())
        return records


def dump_entry(entry: Any) -> str:
    """JSON text for an entry or record (used by the server tools)."""
    return json.dumps(asdict(entry), ensure_ascii=False, indent=2)
