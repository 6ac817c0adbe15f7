"""Conversions between book titles, storage filenames, and URL slugs."""
import re

PDF_EXTENSION = ".pdf"

_PDF_SUFFIX = re.compile(r"\.pdf$", re.IGNORECASE)
_WORD_START = re.compile(r"\b\w")


def strip_pdf_extension(filename: str) -> str:
    return _PDF_SUFFIX.sub("", filename)


def slug_from_filename(filename: str) -> str:
    """
    Generate a URL slug from a storage filename.

    "Trip Journal (2023).pdf" -> "trip-journal-2023"

    Args:
        filename: Filename with or without the .pdf extension

    Returns:
        Lowercase slug containing only [a-z0-9-]
    """
    slug = strip_pdf_extension(filename).lower()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip().strip("-")


def title_from_slug(slug: str) -> str:
    """
    Best-effort inverse of slug_from_filename.

    Hyphens become spaces and the first letter of every word is upper-cased;
    the rest of each word is left untouched. Punctuation and acronyms from
    the original title cannot be recovered.
    """
    return _WORD_START.sub(lambda match: match.group().upper(), slug.replace("-", " "))


def filename_from_slug(slug: str) -> str:
    return title_from_slug(slug) + PDF_EXTENSION
