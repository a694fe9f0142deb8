"""Consent handshake: authorize URL, pending token rows and the callback.

The ``state`` parameter is base64url JSON ``{"n": nonce, "environment": ...,
"account_id": ...}``; ``n`` correlates the callback with the pending token
row written when the consent URL was issued. A callback whose state cannot
be tied to a live pending row is sent back through consent once, guarded by
the ``gf_ebay_reauth_once`` cookie.
"""

from __future__ import annotations

import base64
import html
import json
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from sqlalchemy.orm import Session

from marketsync.config import SyncConfig
from marketsync.errors import ConfigurationError, RemoteClientError
from marketsync.services.account_service import MarketplaceAccountService
from marketsync.services.endpoints import REQUIRED_SCOPES, auth_url, identity_url, normalize_environment
from marketsync.services.token_manager import TokenLifecycleManager
from marketsync.utils.logger import logger, token_hash

STATUS_COOKIE = "gf_ebay"
REAUTH_ONCE_COOKIE = "gf_ebay_reauth_once"
COOKIE_MAX_AGE = 600
DEFAULT_EXPIRES_IN = 7200
EXPIRY_SKEW = timedelta(seconds=120)
USER_ACCESS_TOKEN = "User Access Token"


def encode_state(payload: Dict[str, Any]) -> str:
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_state(state: Optional[str]) -> Optional[Dict[str, Any]]:
    if not state:
        return None
    padded = state + "=" * (-len(state) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (ValueError, UnicodeError):
        return None
    if not isinstance(payload, dict) or not payload.get("n"):
        return None
    return payload


@dataclass
class Cookie:
    name: str
    value: str
    max_age: int = COOKIE_MAX_AGE


@dataclass
class CallbackOutcome:
    """What the HTTP layer should send back to the browser."""

    kind: str  # redirect | html | error
    status_code: int = 302
    location: Optional[str] = None
    body: Optional[str] = None
    error: Optional[str] = None
    cookies: List[Cookie] = field(default_factory=list)
    account_id: Optional[str] = None


class OAuthFlowService:
    def __init__(self, config: SyncConfig, accounts: MarketplaceAccountService, tokens: TokenLifecycleManager):
        self.config = config
        self.accounts = accounts
        self.tokens = tokens

    def _utcnow(self) -> datetime:
        return datetime.now(timezone.utc)

    def start_authorization(
        self, db: Session, *, environment: Optional[str] = None, account_id: Optional[str] = None
    ) -> Dict[str, Any]:
        environment = normalize_environment(environment or self.config.environment)
        runame = self.config.runame_for(environment)
        if not self.config.app_id or not runame:
            raise ConfigurationError("marketplace app id / RuName not configured", code="missing_app_credentials")

        nonce = secrets.token_urlsafe(24)
        pending = self.accounts.create_pending_token(db, environment=environment, nonce=nonce, account_id=account_id)
        state_payload = {"n": nonce, "environment": environment}
        if account_id:
            state_payload["account_id"] = account_id
        state = encode_state(state_payload)
        query = urlencode({
            "client_id": self.config.app_id,
            "redirect_uri": runame,
            "response_type": "code",
            "scope": " ".join(REQUIRED_SCOPES),
            "state": state,
        })
        logger.info("[oauth] consent started env=%s account=%s", environment, account_id or "-")
        return {
            "url": f"{auth_url(environment)}?{query}",
            "state": state,
            "expires_at": pending.expires_at.isoformat() if pending.expires_at else None,
        }

    def _frontend(self, **params) -> str:
        return f"{self.config.frontend_url}/pricing?{urlencode({'provider': 'ebay', **params})}"

    def _error(self, code: str, *, status_code: int = 302) -> CallbackOutcome:
        logger.warning("[oauth] callback failed: %s", code)
        if status_code != 302:
            return CallbackOutcome(kind="error", status_code=status_code, error=code)
        return CallbackOutcome(
            kind="redirect",
            location=self._frontend(error=code),
            error=code,
            cookies=[Cookie(STATUS_COOKIE, "error"), Cookie(REAUTH_ONCE_COOKIE, "", max_age=0)],
        )

    def _reconsent(self, db: Session, state: Optional[Dict[str, Any]], reauth_once: bool) -> CallbackOutcome:
        environment = (state or {}).get("environment") or self.config.environment
        account_id = (state or {}).get("account_id")
        start = self.start_authorization(db, environment=environment, account_id=account_id)
        if reauth_once:
            link = html.escape(start["url"], quote=True)
            body = (
                "<!doctype html><html><body>"
                "<p>The marketplace connection could not be confirmed.</p>"
                f'<p><a href="{link}">Reconnect the account</a></p>'
                "</body></html>"
            )
            return CallbackOutcome(kind="html", status_code=200, body=body, error="state_mismatch")
        return CallbackOutcome(
            kind="redirect",
            location=start["url"],
            error="state_mismatch",
            cookies=[Cookie(REAUTH_ONCE_COOKIE, "1"), Cookie(STATUS_COOKIE, "reauth")],
        )

    async def _seller_identity(self, access_token: str, environment: str) -> Dict[str, Optional[str]]:
        try:
            resp = await self.tokens.http.get(
                identity_url(environment),
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.warning("[oauth] identity lookup failed: %s", exc)
            return {}
        if not resp.is_success:
            return {}
        body = resp.json()
        return {"user_id": body.get("userId"), "username": body.get("username")}

    async def handle_callback(
        self,
        db: Session,
        *,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        reauth_once: bool = False,
    ) -> CallbackOutcome:
        if error:
            return self._error(f"provider_{error}")

        decoded = decode_state(state)
        pending = self.accounts.find_pending_token(db, decoded["n"]) if decoded else None
        if pending is not None:
            expires_at = self.accounts._to_utc(pending.expires_at)
            if expires_at is not None and expires_at <= self._utcnow():
                db.delete(pending)
                db.commit()
                pending = None
        if decoded is None or pending is None:
            return self._reconsent(db, decoded, reauth_once)
        if not code:
            return self._error("missing_code")

        environment = normalize_environment(decoded.get("environment") or pending.environment)
        try:
            payload = await self.tokens.exchange_authorization_code(code, environment)
        except RemoteClientError as exc:
            return self._error(exc.code)

        access_token = payload.get("access_token")
        refresh_token = payload.get("refresh_token")
        if not access_token:
            return self._error("missing_access_token")
        if not refresh_token:
            return self._error("missing_refresh_token", status_code=502)
        token_type = payload.get("token_type")
        if token_type and token_type != USER_ACCESS_TOKEN:
            return self._error("invalid_token_type")

        check = await self.tokens.verify_scopes(payload.get("scope"), access_token, environment)
        if not check.accepted:
            return self._error("insufficient_scope")

        identity = await self._seller_identity(access_token, environment)
        account = self.accounts.upsert_connected_account(
            db,
            environment=environment,
            provider_account_id=identity.get("user_id") or self.config.app_id,
            display_name=identity.get("username") or f"eBay {'Sandbox' if environment == 'sandbox' else 'Production'}",
            reconnect_account_id=decoded.get("account_id") or pending.account_id,
        )
        expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
        self.accounts.store_connected_token(
            db,
            account,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=self._utcnow() + timedelta(seconds=expires_in) - EXPIRY_SKEW,
            scope=payload.get("scope") or " ".join(REQUIRED_SCOPES),
            token_type=token_type,
        )
        db.delete(pending)
        db.commit()

        logger.info(
            "[oauth] account %s connected (scope via %s, token_hash=%s)",
            account.id, check.via, token_hash(access_token),
        )
        return CallbackOutcome(
            kind="redirect",
            location=self._frontend(connected="1"),
            cookies=[Cookie(STATUS_COOKIE, "connected"), Cookie(REAUTH_ONCE_COOKIE, "", max_age=0)],
            account_id=account.id,
        )
