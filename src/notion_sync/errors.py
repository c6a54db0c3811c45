"""Exception types raised by the ingestion and rendering pipeline.

Retryable:     RateLimited
Page-local:    MalformedRemoteShape, AssetDownloadFailure, PipelineTransformFailure,
               StoreWriteFailure
Fatal:         PathEscape (configuration/security defect)
"""

from typing import Optional


class NotionSyncError(Exception):
    """Base class for all pipeline errors."""


class NotionAPIError(NotionSyncError):
    """A non-success response from the Notion API."""

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.code = code

    def __str__(self) -> str:
        prefix = f"[{self.status}] " if self.status is not None else ""
        suffix = f" ({self.code})" if self.code else ""
        return f"{prefix}{self.args[0]}{suffix}"


class RateLimited(NotionAPIError):
    """The API asked the caller to slow down. The only retry-eligible API error."""

    def __init__(
        self,
        message: str = "rate limited",
        status: Optional[int] = 429,
        code: Optional[str] = "rate_limited",
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status=status, code=code)
        self.retry_after = retry_after


class MalformedRemoteShape(NotionSyncError):
    """An API response could not be normalized into a block tree."""


class AssetDownloadFailure(NotionSyncError):
    """An image could not be cached locally."""


class InvalidDescriptor(AssetDownloadFailure):
    """The file descriptor has no parseable URL, or its path lacks parent/object/filename."""


class DownloadTimeout(AssetDownloadFailure):
    """The download did not finish within the fetch timeout."""


class DownloadError(AssetDownloadFailure):
    """The download returned a non-success status or failed in transport."""


class PathEscape(NotionSyncError):
    """A computed local path resolved outside its allowed root."""


class PipelineTransformFailure(NotionSyncError):
    """A transform pass failed while rendering a page."""


class StoreWriteFailure(NotionSyncError):
    """A store entry could not be written or removed."""


class FilterParseError(NotionSyncError):
    """A filter or sort expression could not be parsed or compiled."""

    def __init__(self, message: str, position: Optional[int] = None):
        super().__init__(message)
        self.position = position
