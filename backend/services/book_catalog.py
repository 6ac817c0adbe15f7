"""Book catalog backed by a Supabase PostgreSQL table."""
import logging
from typing import List, Optional
from supabase import create_client, Client

from models.document import DocumentReference
from config import SUPABASE_URL, SUPABASE_KEY, BOOKS_TABLE

logger = logging.getLogger(__name__)

BOOKS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    id SERIAL PRIMARY KEY,
    slug VARCHAR(255) UNIQUE NOT NULL,
    file_url TEXT NOT NULL,
    title VARCHAR(255) NOT NULL,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);
"""


class BookCatalog:
    """Persisted slug -> document reference lookup table."""

    def __init__(
        self,
        supabase_url: str = SUPABASE_URL,
        supabase_key: str = SUPABASE_KEY,
        table_name: str = BOOKS_TABLE
    ):
        """
        Initialize the catalog with a Supabase client.

        Args:
            supabase_url: Supabase project URL
            supabase_key: Supabase API key
            table_name: Name of the catalog table

        Raises:
            ValueError: If Supabase credentials are missing
        """
        if not supabase_url or not supabase_key:
            raise ValueError("SUPABASE_URL and SUPABASE_KEY environment variables are required")

        self.table_name = table_name
        self.client: Client = create_client(supabase_url, supabase_key)

        logger.info(f"Initialized BookCatalog with table: {table_name}")

    def ensure_table(self) -> bool:
        """
        Create the catalog table if it does not exist yet.

        Relies on an ``exec_sql`` RPC being installed in the project. This is
        best-effort: projects without the RPC simply keep whatever table the
        migrations created.

        Returns:
            True if the table exists afterwards, False if that is unknown
        """
        try:
            self.client.rpc(
                "exec_sql",
                {"sql": BOOKS_TABLE_DDL.format(table=self.table_name)}
            ).execute()
            return True
        except Exception as e:
            if "already exists" in str(e):
                return True
            logger.warning(f"Could not create {self.table_name} table: {e}")
            return False

    def get(self, slug: str) -> Optional[DocumentReference]:
        """
        Look up a book by exact slug match.

        Read failures are logged and reported as a miss so that resolution
        can fall back to deriving the location from the slug.

        Args:
            slug: Book slug

        Returns:
            Stored DocumentReference, or None if absent
        """
        try:
            result = self.client.table(self.table_name).select("*").eq("slug", slug).limit(1).execute()
        except Exception as e:
            logger.error(f"Error looking up book {slug}: {e}")
            return None

        if not result.data:
            logger.debug(f"Book {slug} not in catalog")
            return None

        return DocumentReference.from_record(result.data[0])

    def save(self, reference: DocumentReference) -> bool:
        """
        Insert or update a catalog row keyed by slug.

        Args:
            reference: Book to persist

        Returns:
            True on success, False if the write failed (the failure is logged)
        """
        try:
            self.client.table(self.table_name).upsert(
                reference.to_record(),
                on_conflict="slug"
            ).execute()
            logger.info(f"Saved book {reference.slug} to catalog")
            return True
        except Exception as e:
            logger.warning(
                f"Could not save book {reference.slug} to catalog: {e}",
                extra={"slug": reference.slug}
            )
            return False

    def list_all(self) -> List[DocumentReference]:
        """
        Get every book in the catalog, ordered by slug.

        Raises:
            RuntimeError: If the database operation fails
        """
        try:
            result = self.client.table(self.table_name).select("*").order("slug").execute()
        except Exception as e:
            error_msg = f"Failed to list books: {str(e)}"
            logger.error(error_msg)
            raise RuntimeError(error_msg)

        return [DocumentReference.from_record(row) for row in result.data or []]
