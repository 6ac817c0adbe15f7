"""Page-by-page rasterization of PDF documents."""
import asyncio
import logging
from concurrent.futures import BrokenExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional

import fitz  # PyMuPDF
import httpx

from models.document import DecodeProgress, PageImage
from services.decode_engine import PIXMAP_OUTPUTS, DecodeEngineClient
from services.errors import (
    BookViewerError,
    DocumentTimeoutError,
    InvalidDocumentError,
    NetworkError,
    NotFoundError,
    RuntimeLoadError,
)
from services.lifecycle import CancellationToken
from config import RENDER_SCALE, PAGE_IMAGE_FORMAT, OPEN_TIMEOUT_SECONDS, MAX_OPEN_RETRIES

logger = logging.getLogger(__name__)

MIME_TYPES = {"png": "image/png", "jpeg": "image/jpeg"}

# Letter size in points, used when a page could not be measured
PLACEHOLDER_PAGE_SIZE = (612, 792)

# Substrings of error messages that point at the worker rather than the document
RUNTIME_HINTS = ("worker", "runtime", "executor", "process pool", "can't start new thread")

ProgressCallback = Callable[[DecodeProgress], None]


@dataclass
class DocumentHandle:
    """A document loaded into the decode worker."""
    url: str
    engine: DecodeEngineClient
    document_id: str
    page_count: int
    closed: bool = False

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.engine.release_document(self.document_id)


def render_placeholder(page_number: int, scale: float, image_format: str = "png") -> PageImage:
    """Build the "failed to load" image shown in place of a page that did not render."""
    width, height = PLACEHOLDER_PAGE_SIZE
    with fitz.open() as document:
        page = document.new_page(width=width, height=height)
        page.draw_rect(page.rect, color=None, fill=(0.95, 0.95, 0.95))
        page.insert_text((72, height / 2 - 12), f"Page {page_number}", fontsize=28, color=(0.35, 0.35, 0.35))
        page.insert_text((72, height / 2 + 24), "Failed to load", fontsize=18, color=(0.55, 0.55, 0.55))
        pixmap = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
        return PageImage(
            page_number=page_number,
            data=pixmap.tobytes(PIXMAP_OUTPUTS[image_format]),
            mime_type=MIME_TYPES[image_format],
            width=pixmap.width,
            height=pixmap.height,
            placeholder=True
        )


def classify_open_failure(error: Exception, url: str) -> BookViewerError:
    """
    Map a failure to open a document onto the viewer error taxonomy.

    Args:
        error: Exception raised while fetching or opening the document
        url: Document URL, included in the error details

    Returns:
        The most specific BookViewerError for the failure
    """
    if isinstance(error, BookViewerError):
        return error

    details = {
        "url": url,
        "original_error": str(error),
        "error_type": type(error).__name__
    }

    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return DocumentTimeoutError("Timed out while opening the document", details)

    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        details["status_code"] = status
        if status in (404, 410):
            return NotFoundError("Document not found at its storage location", details)
        return NetworkError(f"Document request failed with status {status}", details)

    if isinstance(error, httpx.RequestError):
        return NetworkError(f"Network error while fetching the document: {error}", details)

    if isinstance(error, BrokenExecutor):
        return RuntimeLoadError(f"Decode worker failed: {error}", details)

    if isinstance(error, fitz.FileDataError):
        return InvalidDocumentError("The file is not a valid PDF document", details)

    message = str(error).lower()
    if any(hint in message for hint in RUNTIME_HINTS):
        return RuntimeLoadError(f"Decode worker failed: {error}", details)

    return InvalidDocumentError(f"Failed to process PDF: {error}", details)


class PageRasterizer:
    """Open a PDF and render its pages in order, one at a time."""

    def __init__(
        self,
        engine: DecodeEngineClient,
        scale: float = RENDER_SCALE,
        image_format: str = PAGE_IMAGE_FORMAT,
        open_timeout: float = OPEN_TIMEOUT_SECONDS,
        max_retries: int = MAX_OPEN_RETRIES,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the rasterizer.

        Args:
            engine: Process-wide decode engine client
            scale: Render scale factor (2.0 renders at 144 dpi)
            image_format: "png" or "jpeg"
            open_timeout: Seconds allowed for fetching and opening the document
            max_retries: Open retries after worker start-up failures
            transport: Optional httpx transport (used by tests)
        """
        if image_format not in MIME_TYPES:
            raise ValueError(f"Unsupported page image format: {image_format}")
        if scale <= 0:
            raise ValueError("scale must be positive")

        self.engine = engine
        self.scale = scale
        self.image_format = image_format
        self.open_timeout = open_timeout
        self.max_retries = max_retries
        self.transport = transport

    async def rasterize(
        self,
        document_url: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> List[PageImage]:
        """
        Render every page of a document to an image.

        Pages are rendered strictly in order. A page that fails to render is
        replaced by a placeholder so the result always has one image per page.

        Args:
            document_url: URL of the PDF
            on_progress: Called after every page with the pages done so far
            cancel_token: Checked before every page; when cancelled, the pages
                rendered so far are returned

        Returns:
            List of PageImage, one per page in document order

        Raises:
            BookViewerError: If the document cannot be opened
        """
        handle = await self.open(document_url)
        try:
            total_pages = handle.page_count
            pages: List[PageImage] = []

            if total_pages == 0:
                logger.info(f"Document has no pages: {document_url}")
                self._report(on_progress, DecodeProgress(0, 0))
                return pages

            for page_number in range(1, total_pages + 1):
                if cancel_token is not None and cancel_token.cancelled:
                    logger.info(f"Rasterization cancelled after {len(pages)}/{total_pages} pages")
                    return pages

                pages.append(await self._render(handle, page_number))
                self._report(on_progress, DecodeProgress(page_number, total_pages))

            placeholders = sum(1 for page in pages if page.placeholder)
            logger.info(
                f"Rasterized {total_pages} pages ({placeholders} placeholders) from {document_url}"
            )
            return pages
        finally:
            handle.close()

    async def open(self, document_url: str) -> DocumentHandle:
        """
        Fetch and open a document, falling back to other worker sources.

        Raises:
            BookViewerError: Classified open failure
        """
        self.engine.configure_initial()
        retries = 0

        while True:
            try:
                return await asyncio.wait_for(self._open_once(document_url), timeout=self.open_timeout)
            except Exception as e:
                error = classify_open_failure(e, document_url)

                if isinstance(error, DocumentTimeoutError):
                    # The worker may still be busy with the abandoned open
                    self.engine.discard_executor()

                if (
                    isinstance(error, RuntimeLoadError)
                    and retries < self.max_retries
                    and self.engine.advance_source()
                ):
                    retries += 1
                    logger.warning(
                        f"Retrying open of {document_url} with worker source "
                        f"{self.engine.active_source} ({retries}/{self.max_retries})"
                    )
                    continue

                logger.error(
                    f"Failed to open {document_url}: {error.error.message}",
                    extra={"error_code": error.error.code, "error_details": error.error.details}
                )
                if error is e:
                    raise
                raise error from e

    async def _open_once(self, document_url: str) -> DocumentHandle:
        async with httpx.AsyncClient(
            timeout=self.open_timeout,
            transport=self.transport,
            follow_redirects=True
        ) as client:
            response = await client.get(document_url)
            response.raise_for_status()

        data = response.content
        if not data:
            raise InvalidDocumentError("The document is empty", details={"url": document_url})

        loaded = await self.engine.open_document(data)
        logger.debug(f"Opened {document_url}: {loaded.page_count} pages, {len(data)} bytes")
        return DocumentHandle(
            url=document_url,
            engine=self.engine,
            document_id=loaded.document_id,
            page_count=loaded.page_count
        )

    async def _render(self, handle: DocumentHandle, page_number: int) -> PageImage:
        try:
            rendered = await self.engine.render_page(
                handle.document_id,
                page_number,
                self.scale,
                self.image_format
            )
        except Exception as e:
            logger.warning(f"Page {page_number} failed to render, using placeholder: {e}")
            return render_placeholder(page_number, self.scale, self.image_format)

        return PageImage(
            page_number=page_number,
            data=rendered.data,
            mime_type=MIME_TYPES[self.image_format],
            width=rendered.width,
            height=rendered.height
        )

    @staticmethod
    def _report(on_progress: Optional[ProgressCallback], progress: DecodeProgress) -> None:
        if on_progress is not None:
            on_progress(progress)
