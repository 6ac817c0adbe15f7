"""Document data models."""
import base64
from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class DocumentReference:
    """Identifies one viewable book: its slug, where to fetch it, and its title."""
    slug: str
    source_url: str
    title: str

    def to_record(self) -> Dict[str, str]:
        """Row shape used by the ``books`` catalog table."""
        return {
            "slug": self.slug,
            "file_url": self.source_url,
            "title": self.title,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "DocumentReference":
        return cls(
            slug=record["slug"],
            source_url=record["file_url"],
            title=record["title"],
        )


@dataclass(frozen=True)
class PageImage:
    """Represents a single rasterized page of a document."""
    page_number: int  # 1-indexed
    data: bytes
    mime_type: str
    width: int
    height: int
    placeholder: bool = False

    @property
    def data_uri(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass(frozen=True)
class DecodeProgress:
    """Pages rasterized so far out of the document total."""
    completed_pages: int
    total_pages: int

    def __post_init__(self):
        if self.total_pages < 0 or not 0 <= self.completed_pages <= self.total_pages:
            raise ValueError(
                f"Invalid progress {self.completed_pages}/{self.total_pages}"
            )

    @property
    def fraction(self) -> float:
        # An empty document is complete as soon as it is opened
        if self.total_pages == 0:
            return 1.0
        return self.completed_pages / self.total_pages

    @property
    def is_complete(self) -> bool:
        return self.completed_pages == self.total_pages
