"""
KiotViet bearer provider: in-memory cache, then the system table, then the
OAuth client-credentials endpoint. Refresh is serialised per provider.
"""

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable

import requests

from kvsync.core.config import Settings, get_settings
from kvsync.schemas.credential import Credential
from kvsync.services.kiotviet_service import (
    RETRY_STATUS_CODES,
    TokenAcquisitionError,
    backoff_delay,
    body_excerpt,
)
from kvsync.services.supabase_service import SupabaseServiceError
from kvsync.services.token_store import TokenStore

logger = logging.getLogger(__name__)

TOKEN_SCOPES = "PublicApi.Access"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenProvider:
    """
    Share one instance per process. Every path runs under self._lock, so K
    concurrent callers with a stale cache produce a single token request;
    the rest wait and pick up the cached result.
    """

    def __init__(
        self,
        store: TokenStore,
        settings: Settings | None = None,
        session: requests.Session | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._session = session or requests.Session()
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._cached: Credential | None = None
        self._rejected: str | None = None

    @property
    def skew_seconds(self) -> int:
        return self._settings.token_skew_seconds

    def get(self) -> str:
        """Return a bearer with at least skew seconds left, refreshing if needed."""
        with self._lock:
            now = self._clock()
            if self._cached and self._cached.is_valid_at(now, self.skew_seconds):
                return self._cached.token

            stored = self._store.load()
            if (
                stored is not None
                and stored.shape == "structured"
                and stored.token != self._rejected
                and stored.is_valid_at(now, self.skew_seconds)
            ):
                logger.info("Using KiotViet token from system table (expires %s)", stored.expires_at)
                self._cached = stored
                return stored.token

            if stored is not None and stored.shape == "raw":
                logger.info("Stored KiotViet token has no expiry; exchanging for a new one")
            return self._refresh_locked().token

    def refresh(self) -> Credential:
        """Force a token exchange regardless of cache state."""
        with self._lock:
            return self._refresh_locked()

    def invalidate(self, token: str) -> None:
        """Forget token after the API rejected it; the next get() goes to the token endpoint."""
        with self._lock:
            self._rejected = token
            if self._cached and self._cached.token == token:
                self._cached = None

    def _refresh_locked(self) -> Credential:
        access_token, expires_in = self._exchange()
        now = self._clock()
        expires_at = now + timedelta(seconds=expires_in - self.skew_seconds)
        credential = Credential(token=access_token, expires_at=expires_at)
        try:
            self._store.save(access_token, expires_at)
        except SupabaseServiceError as e:
            # The bearer is still good for this process; the next run refreshes again.
            logger.error("Could not persist KiotViet token: %s", e.message)
        self._cached = credential
        self._rejected = None
        logger.info("KiotViet token refreshed; valid until %s", expires_at.isoformat())
        return credential

    def _exchange(self) -> tuple[str, int]:
        """POST client credentials to /connect/token; return (access_token, expires_in)."""
        settings = self._settings
        form = {
            "grant_type": "client_credentials",
            "client_id": settings.KIOTVIET_CLIENT_ID,
            "client_secret": settings.KIOTVIET_CLIENT_SECRET,
            "scopes": TOKEN_SCOPES,
        }
        attempts = settings.token_max_attempts
        last_error = "no attempt made"

        for attempt in range(1, attempts + 1):
            try:
                resp = self._session.post(
                    settings.token_url,
                    data=form,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                    timeout=settings.request_timeout_seconds,
                )
            except requests.RequestException as e:
                last_error = str(e)
                logger.warning("KiotViet token request failed (attempt %d): %s", attempt, e)
            else:
                if resp.ok:
                    return self._parse_token_response(resp)
                last_error = f"HTTP {resp.status_code}: {body_excerpt(resp)}"
                if resp.status_code not in RETRY_STATUS_CODES and resp.status_code < 500:
                    raise TokenAcquisitionError(
                        f"KiotViet token endpoint refused credentials ({last_error})",
                        status_code=resp.status_code,
                        detail=body_excerpt(resp),
                    )
                logger.warning("KiotViet token endpoint returned %s (attempt %d)", resp.status_code, attempt)
            if attempt < attempts:
                self._sleep(backoff_delay(attempt - 1, settings.backoff_base_seconds, settings.max_backoff_seconds))

        raise TokenAcquisitionError(f"KiotViet token request failed after {attempts} attempts: {last_error}")

    def _parse_token_response(self, resp: requests.Response) -> tuple[str, int]:
        try:
            body = resp.json()
        except ValueError as e:
            raise TokenAcquisitionError(
                "KiotViet token endpoint returned a non-JSON body",
                status_code=resp.status_code,
                detail=body_excerpt(resp),
            ) from e
        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            raise TokenAcquisitionError(
                "No access_token returned from KiotViet",
                status_code=resp.status_code,
                detail=body_excerpt(resp),
            )
        try:
            expires_in = int(body.get("expires_in"))
        except (TypeError, ValueError) as e:
            raise TokenAcquisitionError(
                "KiotViet token response has no usable expires_in",
                status_code=resp.status_code,
                detail=body_excerpt(resp),
            ) from e
        return str(access_token), expires_in
