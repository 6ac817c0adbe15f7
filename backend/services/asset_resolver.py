"""Resolve a book slug or file URL to a retrievable document reference."""
import logging
from typing import Optional
from urllib.parse import quote, unquote, urlparse

import httpx

from models.document import DocumentReference
from services.book_catalog import BookCatalog
from services.errors import NotFoundError
from services.slugs import filename_from_slug, slug_from_filename, strip_pdf_extension, title_from_slug
from config import STORAGE_PUBLIC_URL, BOOKS_BUCKET, HEAD_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class AssetResolver:
    """Find where a book lives, preferring the catalog over derived storage URLs."""

    def __init__(
        self,
        catalog: BookCatalog,
        storage_public_url: str = STORAGE_PUBLIC_URL,
        bucket: str = BOOKS_BUCKET,
        timeout: float = HEAD_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None
    ):
        """
        Initialize the resolver.

        Args:
            catalog: Persisted slug -> reference table
            storage_public_url: Base URL of the public object storage area
            bucket: Storage bucket holding the book PDFs
            timeout: Timeout in seconds for the existence check
            transport: Optional httpx transport (used by tests)
        """
        if not storage_public_url:
            raise ValueError("STORAGE_PUBLIC_URL or SUPABASE_URL environment variable is required")

        self.catalog = catalog
        self.storage_public_url = storage_public_url.rstrip("/")
        self.bucket = bucket
        self.timeout = timeout
        self.transport = transport

    def resolve(self, slug: Optional[str] = None, file: Optional[str] = None) -> DocumentReference:
        """
        Resolve the viewer's route input to a document reference.

        Args:
            slug: Book slug from ``/book/{slug}``
            file: Explicit file URL from ``/book-viewer?file=...``

        Returns:
            DocumentReference for the book

        Raises:
            NotFoundError: If nothing retrievable matches the input
        """
        if slug:
            return self._resolve_slug(slug)
        if file:
            return self._resolve_file(file)
        raise NotFoundError("No book specified. Please provide either a slug or file parameter.")

    def storage_url(self, filename: str) -> str:
        """Public URL of a file in the books bucket."""
        return f"{self.storage_public_url}/{self.bucket}/{quote(filename)}"

    def _resolve_slug(self, slug: str) -> DocumentReference:
        reference = self.catalog.get(slug)
        if reference is not None:
            logger.info(f"Resolved {slug} from catalog")
            return reference

        filename = filename_from_slug(slug)
        candidate_url = self.storage_url(filename)

        if not self._exists(candidate_url):
            raise NotFoundError(
                f'Book with slug "{slug}" not found',
                details={"slug": slug, "candidate_url": candidate_url}
            )

        reference = DocumentReference(
            slug=slug,
            source_url=candidate_url,
            title=title_from_slug(slug)
        )
        logger.info(f"Resolved {slug} from storage: {candidate_url}")

        # Save for future lookups; failures are logged by the catalog
        self.catalog.save(reference)
        return reference

    def _resolve_file(self, file: str) -> DocumentReference:
        parsed = urlparse(file)
        if not parsed.scheme or not parsed.netloc:
            raise NotFoundError(
                f"Invalid file reference: {file}",
                details={"file": file}
            )

        filename = unquote(parsed.path.rstrip("/").split("/")[-1]) or "Unknown Book"
        reference = DocumentReference(
            slug=slug_from_filename(filename),
            source_url=file,
            title=strip_pdf_extension(filename)
        )

        if not reference.slug:
            logger.warning(f"Not cataloging {file}: filename gives no usable slug")
            return reference

        self.catalog.save(reference)
        return reference

    def _exists(self, url: str) -> bool:
        """Metadata-only existence check for a storage URL."""
        try:
            with httpx.Client(
                timeout=self.timeout,
                transport=self.transport,
                follow_redirects=True
            ) as client:
                response = client.head(url)
        except httpx.HTTPError as e:
            logger.warning(f"Existence check failed for {url}: {e}")
            return False

        logger.debug(f"HEAD {url} -> {response.status_code}")
        return response.is_success
