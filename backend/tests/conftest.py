"""Shared pytest fixtures. The doubles themselves live in tests/fakes.py."""

import pytest

from kvsync.core.config import Settings
from kvsync.services.supabase_service import SupabaseService
from kvsync.services.token_store import TokenStore
from tests.fakes import Clock, FakeSupabaseClient

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        SUPABASE_URL="https://example.supabase.co",
        SUPABASE_SERVICE_KEY="service-key",
        KIOTVIET_BASE_URL="https://id.kiotviet.test",
        KIOTVIET_PUBLIC_API_URL="https://public.kiotapi.test",
        KIOTVIET_CLIENT_ID="client-id",
        KIOTVIET_CLIENT_SECRET="client-secret",
        KIOTVIET_RETAILER="gaolamthuy",
        KIOTVIET_REQUEST_DELAY_SECONDS=0,
        KIOTVIET_BACKOFF_BASE_SECONDS=1,
        KIOTVIET_MAX_BACKOFF_SECONDS=8,
    )


@pytest.fixture
def fake_client() -> FakeSupabaseClient:
    return FakeSupabaseClient()


@pytest.fixture
def supabase(fake_client) -> SupabaseService:
    return SupabaseService(fake_client)


@pytest.fixture
def token_store(supabase) -> TokenStore:
    return TokenStore(supabase)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def sleeps() -> list[float]:
    return []
