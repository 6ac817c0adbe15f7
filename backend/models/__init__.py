"""Data models for the Book Viewer service."""
from .document import DocumentReference, PageImage, DecodeProgress
from .viewer import ViewerState
from .api import BookInfo, Progress, ErrorInfo, SessionResponse

__all__ = [
    "DocumentReference",
    "PageImage",
    "DecodeProgress",
    "ViewerState",
    "BookInfo",
    "Progress",
    "ErrorInfo",
    "SessionResponse",
]
