"""Tests for TokenProvider: cache, stored credential, exchange, retries and the refresh lock."""

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
import requests

from kvsync.services.kiotviet_service import TokenAcquisitionError
from kvsync.services.supabase_service import SupabaseServiceError
from kvsync.services.token_provider import TokenProvider
from tests.fakes import NOW, FakeKiotViet, make_response


@pytest.fixture
def api():
    return FakeKiotViet()


@pytest.fixture
def provider(token_store, settings, api, clock, sleeps):
    return TokenProvider(token_store, settings=settings, session=api, clock=clock, sleep=sleeps.append)


def test_absent_row_exchanges_and_stores_structured_credential(provider, api, fake_client):
    assert provider.get() == "T"

    assert api.token_calls == 1
    value = fake_client.rows("system")[0]["value"]
    assert value["token"] == "T"
    # expires_in 86400 less the 60s skew
    assert value["expires_at"] == (NOW + timedelta(seconds=86340)).isoformat().replace("+00:00", "Z")


def test_cached_token_is_reused(provider, api):
    provider.get()
    provider.get()
    assert api.token_calls == 1


def test_valid_stored_token_skips_exchange(provider, api, fake_client):
    fake_client.add_row(
        "system",
        {"title": "kiotviet", "value": {"token": "stored", "expires_at": "2024-07-01T12:00:00Z"}},
    )

    assert provider.get() == "stored"
    assert api.token_calls == 0


def test_expired_stored_token_is_refreshed(provider, api, fake_client):
    fake_client.add_row(
        "system",
        {"title": "kiotviet", "value": {"token": "old", "expires_at": "2024-06-30T23:59:30Z"}},
    )

    assert provider.get() == "T"
    assert api.token_calls == 1


def test_raw_stored_token_triggers_refresh(provider, api, fake_client):
    fake_client.add_row("system", {"title": "kiotviet", "value": "legacy-raw-token"})

    assert provider.get() == "T"
    assert api.token_calls == 1
    assert fake_client.rows("system")[0]["value"]["token"] == "T"


def test_cache_expiry_goes_back_to_store(provider, api, clock):
    provider.get()
    clock.advance(days=2)

    assert provider.get() == "T2"
    assert api.token_calls == 2


def test_invalidate_skips_rejected_stored_token(provider, api, fake_client):
    fake_client.add_row(
        "system",
        {"title": "kiotviet", "value": {"token": "stored", "expires_at": "2024-07-01T12:00:00Z"}},
    )
    assert provider.get() == "stored"

    provider.invalidate("stored")

    assert provider.get() == "T"
    assert api.token_calls == 1


def test_exchange_sends_client_credentials(token_store, settings, clock):
    seen = {}

    class Session:
        def post(self, url, data=None, headers=None, timeout=None):
            seen.update(url=url, data=data, timeout=timeout)
            return make_response(200, {"access_token": "abc", "expires_in": 3600})

    TokenProvider(token_store, settings=settings, session=Session(), clock=clock).get()

    assert seen["url"] == "https://id.kiotviet.test/connect/token"
    assert seen["data"] == {
        "grant_type": "client_credentials",
        "client_id": "client-id",
        "client_secret": "client-secret",
        "scopes": "PublicApi.Access",
    }
    assert seen["timeout"] == settings.request_timeout_seconds


def test_transient_token_errors_are_retried(provider, api, sleeps):
    api.token_queue = [requests.ConnectionError("reset"), make_response(503, text="busy")]

    assert provider.get() == "T3"
    assert api.token_calls == 3
    assert sleeps == [1, 2]


def test_refused_credentials_fail_without_retry(provider, api):
    api.token_queue = [make_response(400, {"error": "invalid_client"})]

    with pytest.raises(TokenAcquisitionError) as exc_info:
        provider.get()

    assert exc_info.value.status_code == 400
    assert api.token_calls == 1


def test_exhausted_retries_raise(provider, api, settings):
    api.token_queue = [make_response(500, text="down")] * settings.token_max_attempts

    with pytest.raises(TokenAcquisitionError):
        provider.get()
    assert api.token_calls == settings.token_max_attempts


def test_response_without_access_token_raises(provider, api):
    api.token_queue = [make_response(200, {"expires_in": 3600})]

    with pytest.raises(TokenAcquisitionError, match="access_token"):
        provider.get()


def test_save_failure_still_returns_token(provider, fake_client):
    fake_client.failures[("system", "upsert")] = Exception("connection refused")

    assert provider.get() == "T"


def test_store_read_failure_propagates(provider, fake_client):
    fake_client.failures[("system", "select")] = Exception("connection refused")

    with pytest.raises(SupabaseServiceError):
        provider.get()


def test_concurrent_get_issues_single_token_request(token_store, settings, clock):
    calls = []

    class SlowSession:
        def post(self, url, data=None, headers=None, timeout=None):
            calls.append(url)
            time.sleep(0.05)
            return make_response(200, {"access_token": "shared", "expires_in": 86400})

    provider = TokenProvider(token_store, settings=settings, session=SlowSession(), clock=clock)
    results = []
    start = threading.Barrier(8)

    def worker():
        start.wait()
        results.append(provider.get())

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(calls) == 1
    assert results == ["shared"] * 8


def test_refresh_forces_exchange(provider, api):
    provider.get()
    credential = provider.refresh()

    assert credential.token == "T2"
    assert api.token_calls == 2
    assert credential.expires_at == NOW + timedelta(seconds=86340)
    assert isinstance(credential.expires_at, datetime)
    assert credential.expires_at.tzinfo == timezone.utc
