# Services: KiotViet API, token handling, Supabase

from kvsync.services.kiotviet_service import (
    KiotVietService,
    KiotVietServiceError,
    Page,
    TokenAcquisitionError,
    UpstreamAuthError,
    UpstreamContractError,
    UpstreamTransientError,
)
from kvsync.services.supabase_service import (
    SupabaseService,
    SupabaseServiceError,
    get_supabase_service,
)
from kvsync.services.token_provider import TokenProvider
from kvsync.services.token_store import TokenStore

__all__ = [
    "KiotVietService",
    "KiotVietServiceError",
    "Page",
    "TokenAcquisitionError",
    "UpstreamAuthError",
    "UpstreamContractError",
    "UpstreamTransientError",
    "SupabaseService",
    "SupabaseServiceError",
    "get_supabase_service",
    "TokenProvider",
    "TokenStore",
]
