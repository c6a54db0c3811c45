"""Sync configuration."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from .assets import DEFAULT_ASSET_DIR

DEFAULT_CONTENT_ROOT = "src/content/notion"
DEFAULT_STORE_DIR = ".notion-sync/store"


def load_token(token_file: Union[str, Path]) -> str:
    """Read a Notion token from a file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty.
    """
    token_path = Path(token_file).expanduser()
    if not token_path.exists():
        raise FileNotFoundError(f"Token file not found: {token_path}")
    token = token_path.read_text().strip()
    if not token:
        raise ValueError(f"Token file is empty: {token_path}")
    return token


@dataclass
class SyncConfig:
    """Everything one sync run needs.

    Attributes:
        database_id: Notion database to mirror.
        token: Integration token sent with every API call.
        content_root: Root all cached assets must live under.
        asset_dir: Image directory, relative to ``content_root``.
        store_dir: Directory of the persistent page store.
        src_root: Directory cached cover paths are made relative to
            (defaults to ``content_root``).
        root_alias: Prefix for cached cover paths.
        filter: Filter expression (see ``filters``) or raw Notion filter.
        sorts: Sort expression or raw Notion sorts list.
        archived: Forwarded to the database query when set.
        page_size: Results per query request.
        concurrency: Pages rendered at the same time.
        cache_cover: Cache uploaded cover images locally.
        extensions: Extra tree passes, run after structural normalization.
    """
    database_id: str
    token: str = field(repr=False)
    content_root: Path = Path(DEFAULT_CONTENT_ROOT)
    asset_dir: str = DEFAULT_ASSET_DIR
    store_dir: Path = Path(DEFAULT_STORE_DIR)
    src_root: Optional[Path] = None
    root_alias: str = "src"
    filter: Union[str, dict, None] = None
    sorts: Union[str, list, None] = None
    archived: Optional[bool] = None
    page_size: int = 25
    concurrency: int = 3
    cache_cover: bool = False
    extensions: list = field(default_factory=list)

    def __post_init__(self):
        if not self.database_id:
            raise ValueError("database_id is required")
        if not self.token:
            raise ValueError("token is required")
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if not 1 <= self.page_size <= 100:
            raise ValueError("page_size must be between 1 and 100")
        self.content_root = Path(self.content_root)
        self.store_dir = Path(self.store_dir)
        if self.src_root is not None:
            self.src_root = Path(self.src_root)
