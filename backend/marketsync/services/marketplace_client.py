"""Bearer-authenticated calls to the marketplace REST API.

One :class:`AccountSession` per account per run. It owns the current access
token, retries 429/5xx on a fixed delay schedule, refreshes at most once per
call that hit 401, and follows ``next`` links for paged collections.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Dict, Iterable, Optional

import httpx
from sqlalchemy.orm import Session

from marketsync.config import SyncConfig
from marketsync.errors import (
    RemoteClientError,
    RemoteRateLimited,
    NeedsReauth,
    RemoteServerError,
    TokenExpired,
)
from marketsync.models_sqlalchemy.models import MarketplaceAccount
from marketsync.services.endpoints import api_base
from marketsync.services.token_manager import DEFAULT_REFRESH_SCOPE, TokenLifecycleManager
from marketsync.utils.logger import logger

LOCALIZATION_ERROR_ID = 25709
INVALID_SKU_ERROR_ID = 25707


def is_transient(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def response_error_ids(resp: httpx.Response) -> set:
    try:
        body = resp.json()
    except ValueError:
        return set()
    if not isinstance(body, dict):
        return set()
    ids = set()
    for err in body.get("errors") or []:
        if isinstance(err, dict) and err.get("errorId") is not None:
            try:
                ids.add(int(err["errorId"]))
            except (TypeError, ValueError):
                continue
    return ids


def raise_for_marketplace_status(resp: httpx.Response) -> None:
    code = resp.status_code
    if 200 <= code < 300:
        return
    if code == 401:
        raise TokenExpired("marketplace rejected the access token", code="token_expired")
    if code == 429:
        raise RemoteRateLimited("rate limited", status_code=code, payload=resp.text)
    if code >= 500:
        raise RemoteServerError(f"marketplace returned HTTP {code}", status_code=code, payload=resp.text)
    raise RemoteClientError(f"marketplace returned HTTP {code}", status_code=code, payload=resp.text)


class AccountSession:
    def __init__(
        self,
        client: "MarketplaceClient",
        db: Session,
        account: MarketplaceAccount,
        *,
        default_scope: str = DEFAULT_REFRESH_SCOPE,
    ):
        self.client = client
        self.config = client.config
        self.db = db
        self.account = account
        self.default_scope = default_scope
        self.token = client.tokens.resolve(db, account)
        self.base_url = api_base(account.environment)
        self.retries = 0
        self.refreshes = 0
        self._refresh_lock = asyncio.Lock()
        self._refresh_failed = False

    @property
    def access_token(self) -> str:
        return self.token.access_token

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith("http://") or path_or_url.startswith("https://"):
            return path_or_url
        return f"{self.base_url}{path_or_url}"

    def _headers(self, extra: Optional[Dict[str, str]]) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Content-Language": "en-US",
        }
        if extra:
            headers.update(extra)
        return headers

    async def _refresh_once(self) -> None:
        result = await self.client.tokens.refresh(
            self.db, self.account, self.token, default_scope=self.default_scope
        )
        self.refreshes += 1
        if not result.success:
            self._refresh_failed = True
            self.client.tokens.mark_needs_reauth(self.db, self.account, result.error_code or "refresh_failed")
            raise TokenExpired(
                f"refresh failed for account {self.account.id}: {result.error_code}",
                code="token_expired",
            )
        self.token = self.client.tokens.resolve(self.db, self.account)

    async def request(
        self,
        method: str,
        path_or_url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """Send one logical call; the final response is returned whatever its status.

        Raises :class:`TokenExpired` when the call still gets 401 after one
        refresh (or the refresh itself fails) and :class:`RemoteServerError`
        when the transport keeps failing.
        """
        url = self._url(path_or_url)
        delays = list(self.config.retry_delays_ms)
        refreshed = False
        attempt = 0

        while True:
            sent_with = self.access_token
            try:
                resp = await self.client.http.request(
                    method, url, params=params, json=json, headers=self._headers(headers)
                )
            except httpx.TransportError as exc:
                if attempt < len(delays):
                    await asyncio.sleep(delays[attempt] / 1000)
                    attempt += 1
                    self.retries += 1
                    continue
                raise RemoteServerError(f"transport error calling marketplace: {exc}") from exc

            if resp.status_code == 401:
                if refreshed:
                    raise TokenExpired("access token rejected after refresh", code="token_expired")
                async with self._refresh_lock:
                    if self._refresh_failed:
                        raise NeedsReauth(f"account {self.account.id} needs re-authorization")
                    # a concurrent call may already have swapped the token
                    if self.access_token == sent_with:
                        logger.info("[http] 401 from %s %s, refreshing token for account %s", method, url, self.account.id)
                        await self._refresh_once()
                refreshed = True
                continue

            if is_transient(resp.status_code) and attempt < len(delays):
                logger.warning(
                    "[http] %s %s returned %s, retry %s/%s",
                    method, url, resp.status_code, attempt + 1, len(delays),
                )
                await asyncio.sleep(delays[attempt] / 1000)
                attempt += 1
                self.retries += 1
                continue

            return resp

    async def request_localized(
        self,
        method: str,
        path_or_url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        languages: Optional[Iterable[str]] = None,
    ) -> httpx.Response:
        """Like :meth:`request`, replaying with alternate Accept-Language on error 25709."""
        resp = await self.request(method, path_or_url, params=params, json=json)
        if resp.status_code < 400 or LOCALIZATION_ERROR_ID not in response_error_ids(resp):
            return resp
        for language in languages or self.config.accept_language_fallbacks:
            self.retries += 1
            resp = await self.request(
                method, path_or_url, params=params, json=json,
                headers={"Accept-Language": language, "Content-Language": language},
            )
            if resp.status_code < 400 or LOCALIZATION_ERROR_ID not in response_error_ids(resp):
                return resp
        return resp

    async def get_json(self, path_or_url: str, *, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        resp = await self.request("GET", path_or_url, params=params)
        raise_for_marketplace_status(resp)
        return resp.json() if resp.content else {}

    async def iter_next_pages(
        self, path: str, *, params: Optional[Dict[str, Any]] = None
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield pages until the payload's ``next`` link runs out."""
        url: Optional[str] = path
        page_params = params
        seen = set()
        while url:
            if url in seen:
                logger.warning("[http] pagination loop detected at %s", url)
                return
            seen.add(url)
            payload = await self.get_json(url, params=page_params)
            yield payload
            url = payload.get("next") or None
            page_params = None


class MarketplaceClient:
    def __init__(self, config: SyncConfig, tokens: TokenLifecycleManager, http: httpx.AsyncClient):
        self.config = config
        self.tokens = tokens
        self.http = http

    def session(
        self, db: Session, account: MarketplaceAccount, *, default_scope: str = DEFAULT_REFRESH_SCOPE
    ) -> AccountSession:
        """Open a per-account session; raises :class:`TokenMissing` when no token is stored."""
        return AccountSession(self, db, account, default_scope=default_scope)
