"""Notion database → HTML content sync.

Pulls pages from a Notion database, caches their images, renders their block
trees to sanitized HTML and keeps a local store in step with the database.
"""

from .assets import AssetFetcher, AssetResult
from .blocks import Block, build_tree
from .client import NotionClient
from .config import SyncConfig, load_token
from .errors import (
    AssetDownloadFailure,
    DownloadError,
    DownloadTimeout,
    FilterParseError,
    InvalidDescriptor,
    MalformedRemoteShape,
    NotionAPIError,
    NotionSyncError,
    PathEscape,
    PipelineTransformFailure,
    RateLimited,
    StoreWriteFailure,
)
from .pipeline import Pipeline, RenderResult, build_pipeline
from .properties import page_data, project
from .retry import RetryPolicy
from .store import FileStore, PageRecord, StoreEntry
from .sync import PageState, SyncEngine, SyncReport, run_sync

__version__ = "0.1.0"
