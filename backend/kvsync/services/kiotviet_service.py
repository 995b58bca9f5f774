"""
KiotViet Public API client: paged list endpoints and single-invoice lookup.
Bearer auth via TokenProvider, retries with backoff on 429/5xx/network, one
token refresh on 401, polite spacing between list requests.
"""

import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Iterator

import requests
from pydantic import BaseModel

from kvsync.core.config import Settings, get_settings

if TYPE_CHECKING:
    from kvsync.services.token_provider import TokenProvider

logger = logging.getLogger(__name__)

RETRY_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
MAX_PAGE_SIZE = 100
BODY_EXCERPT_CHARS = 500


class KiotVietServiceError(Exception):
    """Raised when a KiotViet API call fails."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        detail: Any = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


class TokenAcquisitionError(KiotVietServiceError):
    """Token endpoint refused or was unreachable after retries."""


class UpstreamTransientError(KiotVietServiceError):
    """429/5xx/network failure that outlasted every retry."""


class UpstreamAuthError(KiotVietServiceError):
    """401 after one bearer refresh."""


class UpstreamContractError(KiotVietServiceError):
    """Response body is not the documented {total, data} shape."""


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before retry number attempt (0-based): base, 2*base, 4*base, ... capped."""
    return min(base * (2 ** attempt), cap)


def body_excerpt(response: requests.Response) -> str:
    try:
        return (response.text or "")[:BODY_EXCERPT_CHARS]
    except Exception:
        return ""


def _query_value(value: Any) -> Any:
    # KiotViet expects lowercase booleans
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


class Page(BaseModel):
    data: list[Any]  # items are validated per record by the sink
    total: int
    cursor: int  # offset after this page
    page_number: int


class KiotVietService:
    """
    KiotViet Public API service. One requests.Session per instance; the token
    provider may be shared between instances running in parallel.
    """

    def __init__(
        self,
        token_provider: "TokenProvider",
        settings: Settings | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._tokens = token_provider
        self._session = session or requests.Session()
        self._sleep = sleep
        self._base_url = self._settings.KIOTVIET_PUBLIC_API_URL.rstrip("/")

    def authenticate(self) -> str:
        """Acquire a bearer up front so token failures surface before the first page."""
        return self._tokens.get()

    def clone(self) -> "KiotVietService":
        """Same settings and token provider, separate HTTP session (one per thread)."""
        return KiotVietService(self._tokens, settings=self._settings, sleep=self._sleep)

    def _get_headers(self, token: str) -> dict[str, str]:
        return {
            "Retailer": self._settings.KIOTVIET_RETAILER,
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    def _handle_error(self, response: requests.Response) -> None:
        """Interpret a non-retryable error response and raise KiotVietServiceError."""
        try:
            body = response.json()
        except Exception:
            body = body_excerpt(response) or None
        msg = f"KiotViet API error: {response.status_code}"
        if isinstance(body, dict):
            status = body.get("responseStatus") or {}
            detail = body.get("message") or (status.get("message") if isinstance(status, dict) else None)
            if isinstance(detail, str):
                msg += f" - {detail}"
        elif isinstance(body, str) and body:
            msg += f" - {body[:BODY_EXCERPT_CHARS]}"
        raise KiotVietServiceError(msg, status_code=response.status_code, detail=body)

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
    ) -> requests.Response:
        """
        Send one logical request. Network errors, 429 and 5xx are retried with
        exponential backoff up to max_attempts; a 401 drops the bearer and is
        retried once with a fresh one. Other responses are returned as-is.
        """
        url = f"{self._base_url}/{path.lstrip('/')}"
        max_attempts = self._settings.max_attempts
        token = self._tokens.get()
        refreshed = False
        attempt = 0

        while True:
            attempt += 1
            try:
                resp = self._session.request(
                    method=method,
                    url=url,
                    headers=self._get_headers(token),
                    params=params,
                    timeout=self._settings.request_timeout_seconds,
                )
            except requests.RequestException as e:
                if attempt >= max_attempts:
                    raise UpstreamTransientError(
                        f"KiotViet request {method} {path} failed after {attempt} attempts: {e!s}"
                    ) from e
                wait = self._backoff(attempt)
                logger.warning("KiotViet request failed (attempt %d): %s; retrying in %.1fs", attempt, e, wait)
                self._sleep(wait)
                continue

            if resp.status_code == 401:
                if refreshed:
                    raise UpstreamAuthError(
                        f"KiotViet rejected a freshly issued token for {method} {path}",
                        status_code=401,
                        detail=body_excerpt(resp),
                    )
                logger.warning("KiotViet 401 on %s %s; refreshing bearer", method, path)
                refreshed = True
                attempt -= 1
                self._tokens.invalidate(token)
                token = self._tokens.get()
                continue

            if resp.status_code in RETRY_STATUS_CODES or resp.status_code >= 500:
                if attempt >= max_attempts:
                    raise UpstreamTransientError(
                        f"KiotViet {method} {path} still failing with {resp.status_code} after {attempt} attempts",
                        status_code=resp.status_code,
                        detail=body_excerpt(resp),
                    )
                wait = self._backoff(attempt)
                logger.warning(
                    "KiotViet %s on %s %s (attempt %d), retrying in %.1fs",
                    resp.status_code,
                    method,
                    path,
                    attempt,
                    wait,
                )
                self._sleep(wait)
                continue

            return resp

    def _backoff(self, attempt: int) -> float:
        return backoff_delay(
            attempt - 1,
            self._settings.backoff_base_seconds,
            self._settings.max_backoff_seconds,
        )

    # -------------------------------------------------------------------------
    # Paged lists
    # -------------------------------------------------------------------------

    def fetch_pages(
        self,
        collection: str,
        params: dict[str, Any] | None = None,
    ) -> Iterator[Page]:
        """
        Walk a list endpoint by currentItem offset, ordered by modifiedDate ascending.
        Lazy: one request per next(); stops on an empty page or once cursor reaches total.
        """
        query: dict[str, Any] = {
            "orderBy": "modifiedDate",
            "orderDirection": "Asc",
        }
        query.update(params or {})
        page_size = min(int(query.get("pageSize") or self._settings.page_size), MAX_PAGE_SIZE)
        query["pageSize"] = page_size
        query = {k: _query_value(v) for k, v in query.items() if v is not None}

        cursor = 0
        page_number = 0
        while True:
            if page_number > 0 and self._settings.request_delay_seconds > 0:
                self._sleep(self._settings.request_delay_seconds)
            query["currentItem"] = cursor
            resp = self._request("GET", f"/{collection}", params=dict(query))
            if not resp.ok:
                self._handle_error(resp)

            data, total = self._parse_page(collection, resp)
            page_number += 1
            cursor += len(data)
            logger.info(
                "Fetched %s page %d: %d items (%d/%d)",
                collection,
                page_number,
                len(data),
                cursor,
                total,
            )
            if data:
                yield Page(data=data, total=total, cursor=cursor, page_number=page_number)
            if not data or cursor >= total:
                return

    def _parse_page(self, collection: str, resp: requests.Response) -> tuple[list[Any], int]:
        try:
            body = resp.json()
        except ValueError as e:
            raise UpstreamContractError(
                f"KiotViet /{collection} returned a non-JSON body",
                status_code=resp.status_code,
                detail=body_excerpt(resp),
            ) from e
        if not isinstance(body, dict) or "data" not in body or "total" not in body:
            raise UpstreamContractError(
                f"KiotViet /{collection} response is missing 'total' or 'data'",
                status_code=resp.status_code,
                detail=body_excerpt(resp),
            )
        data = body["data"]
        if data is None:
            data = []
        if not isinstance(data, list):
            raise UpstreamContractError(
                f"KiotViet /{collection} 'data' is not a list",
                status_code=resp.status_code,
                detail=body_excerpt(resp),
            )
        try:
            total = int(body["total"])
        except (TypeError, ValueError) as e:
            raise UpstreamContractError(
                f"KiotViet /{collection} 'total' is not an integer",
                status_code=resp.status_code,
                detail=body_excerpt(resp),
            ) from e
        return data, total

    # -------------------------------------------------------------------------
    # Invoices
    # -------------------------------------------------------------------------

    def get_invoice_by_code(self, code: str) -> dict[str, Any] | None:
        """Fetch a single invoice (with details) by its code, e.g. 'HD057370'. None if unknown."""
        if not code:
            raise ValueError("Invoice code is required")
        resp = self._request("GET", f"/invoices/code/{code}")
        if resp.status_code == 404:
            return None
        if not resp.ok:
            self._handle_error(resp)
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamContractError(
                f"KiotViet invoice {code} returned a non-JSON body",
                status_code=resp.status_code,
                detail=body_excerpt(resp),
            ) from e
        if not isinstance(data, dict) or not data.get("id"):
            return None
        return data
