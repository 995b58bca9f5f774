"""
Supabase client wrapper: system key/value rows, bulk upserts keyed by natural id,
child-set replacement and the sync run log.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from supabase import Client, create_client

from kvsync.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


class SupabaseServiceError(Exception):
    """Raised when a Supabase (PostgREST) call fails."""

    def __init__(self, message: str, table: str | None = None, detail: Any = None) -> None:
        self.message = message
        self.table = table
        self.detail = detail
        super().__init__(message)


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class SupabaseService:
    """
    Thin data-access layer over one Supabase client. The client is passed in
    (one per process) so the token store, sinks and tests share the same instance.
    """

    def __init__(self, client: Client) -> None:
        self.client = client

    # -------------------------------------------------------------------------
    # System key/value (system table)
    # -------------------------------------------------------------------------

    def get_system_value(self, title: str) -> Optional[Any]:
        """Return system.value for title, or None if no row exists."""
        try:
            response = (
                self.client.table("system")
                .select("value")
                .eq("title", title)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error("Get system value error (title=%s): %s", title, str(e))
            raise SupabaseServiceError(f"Failed to read system value {title!r}: {e!s}", table="system") from e
        if response.data and len(response.data) > 0:
            return response.data[0].get("value")
        return None

    def upsert_system_value(self, title: str, value: Any) -> None:
        """Insert or overwrite the system row for title."""
        try:
            self.client.table("system").upsert(
                {"title": title, "value": value, "updated_at": _iso_now()},
                on_conflict="title",
            ).execute()
        except Exception as e:
            logger.error("Upsert system value error (title=%s): %s", title, str(e))
            raise SupabaseServiceError(f"Failed to write system value {title!r}: {e!s}", table="system") from e

    # -------------------------------------------------------------------------
    # Catalog tables
    # -------------------------------------------------------------------------

    def upsert_rows(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        on_conflict: str = "kiotviet_id",
    ) -> None:
        """Bulk upsert; on conflict every sent column is updated and the surrogate id kept."""
        if not rows:
            return
        try:
            self.client.table(table).upsert(
                rows,
                on_conflict=on_conflict,
                ignore_duplicates=False,
            ).execute()
        except Exception as e:
            logger.error("Upsert %d rows into %s error: %s", len(rows), table, str(e))
            raise SupabaseServiceError(f"Failed to upsert into {table}: {e!s}", table=table) from e

    def get_ids_by_natural_key(
        self,
        table: str,
        natural_ids: Iterable[Any],
        natural_key: str = "kiotviet_id",
    ) -> Dict[Any, int]:
        """Map natural id -> surrogate id for the given natural ids (single query)."""
        ids = list(dict.fromkeys(natural_ids))
        if not ids:
            return {}
        try:
            response = (
                self.client.table(table)
                .select(f"id, {natural_key}")
                .in_(natural_key, ids)
                .execute()
            )
        except Exception as e:
            logger.error("Lookup ids in %s error: %s", table, str(e))
            raise SupabaseServiceError(f"Failed to look up ids in {table}: {e!s}", table=table) from e
        return {row[natural_key]: row["id"] for row in (response.data or [])}

    def replace_children(
        self,
        table: str,
        match: Dict[str, Any],
        rows: List[Dict[str, Any]],
    ) -> None:
        """Delete rows matching every column in match, then insert rows in one statement."""
        try:
            query = self.client.table(table).delete()
            for column, value in match.items():
                query = query.eq(column, value)
            query.execute()
            if rows:
                self.client.table(table).insert(rows).execute()
        except Exception as e:
            logger.error("Replace children in %s (%s) error: %s", table, match, str(e))
            raise SupabaseServiceError(f"Failed to replace rows in {table}: {e!s}", table=table) from e

    # -------------------------------------------------------------------------
    # Sync run log
    # -------------------------------------------------------------------------

    def insert_sync_run(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Append a sealed sync run record."""
        try:
            response = self.client.table(table).insert(row).execute()
        except Exception as e:
            logger.error("Insert sync run error: %s", str(e))
            raise SupabaseServiceError(f"Failed to record sync run: {e!s}", table=table) from e
        if response.data and len(response.data) > 0:
            return dict(response.data[0])
        return row


def get_supabase_service(settings: Settings | None = None) -> SupabaseService:
    """Build the process-wide service from settings."""
    settings = settings or get_settings()
    return SupabaseService(create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_KEY))
