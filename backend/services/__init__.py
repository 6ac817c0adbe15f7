"""Services for the Book Viewer."""
from .errors import (
    ViewerError,
    BookViewerError,
    NotFoundError,
    InvalidDocumentError,
    NetworkError,
    DocumentTimeoutError,
    RuntimeLoadError,
)
from .book_catalog import BookCatalog
from .asset_resolver import AssetResolver
from .decode_engine import DecodeEngineClient, WorkerSourceConfig, RenderedPage
from .rasterizer import PageRasterizer, render_placeholder, classify_open_failure
from .lifecycle import CancellationToken, LifecycleGuard
from .page_navigator import PageNavigator
from .viewer_session import ViewerSession
from .session_registry import SessionRegistry

__all__ = ['ViewerError', 'BookViewerError', 'NotFoundError', 'InvalidDocumentError', 'NetworkError', 'DocumentTimeoutError', 'RuntimeLoadError', 'BookCatalog', 'AssetResolver', 'DecodeEngineClient', 'WorkerSourceConfig', 'RenderedPage', 'PageRasterizer', 'render_placeholder', 'classify_open_failure', 'CancellationToken', 'LifecycleGuard', 'PageNavigator', 'ViewerSession', 'SessionRegistry']
