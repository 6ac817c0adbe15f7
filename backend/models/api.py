"""API request/response models."""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class BookInfo(BaseModel):
    """Resolved book shown in the viewer header."""
    slug: str
    title: str
    file_url: str


class Progress(BaseModel):
    """Rasterization progress for the loading screen."""
    completed_pages: int
    total_pages: int
    fraction: float


class ErrorInfo(BaseModel):
    """Fatal error shown on the full-screen error state."""
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class SessionResponse(BaseModel):
    """Snapshot of a viewer session."""
    session_id: str
    state: str
    book: Optional[BookInfo] = None
    progress: Optional[Progress] = None
    current_page: int = 0
    total_pages: int = 0
    pending_page: Optional[int] = None
    can_go_next: bool = False
    can_go_prev: bool = False
    placeholder_pages: List[int] = Field(default_factory=list)
    error: Optional[ErrorInfo] = None
