"""Error taxonomy surfaced by the book viewer pipeline."""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class ViewerError:
    """Structured error information shown on the viewer's error screen."""
    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


class BookViewerError(Exception):
    """Base exception for fatal viewer errors, carrying a structured ViewerError."""

    code = "UNKNOWN_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.error = ViewerError(
            code=self.code,
            message=message,
            details=dict(details or {})
        )
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.error.code,
            "message": self.error.message,
            "details": self.error.details,
        }


class NotFoundError(BookViewerError):
    """The slug or file reference does not lead to a retrievable document."""
    code = "NOT_FOUND"


class InvalidDocumentError(BookViewerError):
    """The bytes at the resolved URL are not a readable PDF."""
    code = "INVALID_DOCUMENT"


class NetworkError(BookViewerError):
    """Connectivity or HTTP response problem while fetching the document."""
    code = "NETWORK_ERROR"


class DocumentTimeoutError(BookViewerError):
    """Opening the document took longer than the configured bound."""
    code = "TIMEOUT_ERROR"


class RuntimeLoadError(BookViewerError):
    """The decode worker could not be started from the active worker source."""
    code = "RUNTIME_LOAD_ERROR"
