"""
KiotViet credential persistence in the Supabase system table (title='kiotviet').
"""

import logging
from datetime import datetime

from kvsync.schemas.credential import Credential
from kvsync.services.supabase_service import SupabaseService

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "kiotviet"


class TokenStore:
    """Reads either stored value shape; always writes {token, expires_at}."""

    def __init__(self, supabase: SupabaseService, title: str = DEFAULT_TITLE) -> None:
        self._supabase = supabase
        self.title = title

    def load(self) -> Credential | None:
        value = self._supabase.get_system_value(self.title)
        if value is None:
            return None
        credential = Credential.from_value(value)
        if credential is None:
            logger.warning("system row %r holds no usable token (type=%s)", self.title, type(value).__name__)
        return credential

    def save(self, token: str, expires_at: datetime) -> None:
        credential = Credential(token=token, expires_at=expires_at)
        self._supabase.upsert_system_value(self.title, credential.to_value())
        logger.info("Stored KiotViet token (expires %s)", expires_at.isoformat())
