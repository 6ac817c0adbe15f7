"""
Catalog Sync Script for the Book Viewer.

This script:
1. Lists every PDF in the books storage bucket
2. Derives a slug and title for each file
3. Upserts the books into the catalog table

Usage:
    python sync_catalog.py
    python sync_catalog.py --dry-run
"""
import sys
import argparse
import logging
from pathlib import Path
from typing import List

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent))

from models.document import DocumentReference
from services.asset_resolver import AssetResolver
from services.book_catalog import BookCatalog
from services.slugs import PDF_EXTENSION, slug_from_filename, strip_pdf_extension
from config import BOOKS_BUCKET

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

PAGE_SIZE = 100


def list_bucket_pdfs(catalog: BookCatalog, bucket: str = BOOKS_BUCKET) -> List[str]:
    """
    List the PDF filenames stored in the bucket.

    Args:
        catalog: BookCatalog whose Supabase client is reused for storage
        bucket: Storage bucket name

    Returns:
        Sorted list of filenames ending in .pdf
    """
    filenames: List[str] = []
    offset = 0

    while True:
        entries = catalog.client.storage.from_(bucket).list(
            "",
            {"limit": PAGE_SIZE, "offset": offset, "sortBy": {"column": "name", "order": "asc"}}
        )
        filenames.extend(
            entry["name"] for entry in entries
            if entry.get("name", "").lower().endswith(PDF_EXTENSION)
        )
        if len(entries) < PAGE_SIZE:
            break
        offset += PAGE_SIZE

    return sorted(filenames)


def build_references(resolver: AssetResolver, filenames: List[str]) -> List[DocumentReference]:
    """Catalog entries for bucket files, skipping names that produce no slug."""
    references = []
    for filename in filenames:
        slug = slug_from_filename(filename)
        if not slug:
            logger.warning(f"  ✗ Skipping {filename}: no usable slug")
            continue
        references.append(DocumentReference(
            slug=slug,
            source_url=resolver.storage_url(filename),
            title=strip_pdf_extension(filename)
        ))
    return references


def main(argv=None):
    """Main sync process."""
    parser = argparse.ArgumentParser(description="Sync the books bucket into the catalog")
    parser.add_argument("--dry-run", action="store_true", help="Only print what would be saved")
    args = parser.parse_args(argv)

    try:
        logger.info("=" * 60)
        logger.info("Starting Book Catalog Sync")
        logger.info("=" * 60)

        # Step 1: Initialize services
        logger.info("\n[1/3] Initializing services...")
        catalog = BookCatalog()
        catalog.ensure_table()
        resolver = AssetResolver(catalog)
        logger.info("✓ Catalog initialized")

        # Step 2: List bucket
        logger.info(f"\n[2/3] Listing PDFs in bucket '{BOOKS_BUCKET}'...")
        filenames = list_bucket_pdfs(catalog)
        references = build_references(resolver, filenames)
        logger.info(f"✓ Found {len(filenames)} PDFs, {len(references)} with usable slugs")

        # Step 3: Save
        logger.info("\n[3/3] Saving books to catalog...")
        existing = {reference.slug for reference in catalog.list_all()}
        saved = 0
        for reference in references:
            status = "update" if reference.slug in existing else "new"
            if args.dry_run:
                logger.info(f"  - [{status}] {reference.slug}: {reference.title} ({reference.source_url})")
                continue
            if catalog.save(reference):
                saved += 1
                logger.info(f"  ✓ [{status}] {reference.slug}")
            else:
                logger.warning(f"  ✗ {reference.slug}")

        logger.info("\n" + "=" * 60)
        logger.info("SYNC COMPLETE!" if not args.dry_run else "DRY RUN COMPLETE!")
        logger.info("=" * 60)
        logger.info(f"PDFs in bucket: {len(filenames)}")
        logger.info(f"Books saved: {saved}")
        return 0

    except KeyboardInterrupt:
        logger.warning("\nSync interrupted by user")
        return 1
    except Exception as e:
        logger.error(f"\nSync failed: {str(e)}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
