"""Access-token lifecycle for marketplace accounts.

``resolve`` hands out the current access token, ``refresh`` exchanges the
stored (encrypted) refresh token for a new one and never raises, and the
authorization-code helpers back the consent callback, including the scope
sufficiency check with its live privilege probe.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Literal, Optional, Sequence

import httpx
from sqlalchemy.orm import Session

from marketsync.config import SyncConfig
from marketsync.errors import ConfigurationError, RemoteClientError, TokenMissing, truncate_payload
from marketsync.models_sqlalchemy.models import MarketplaceAccount, OAuthToken
from marketsync.services.account_service import MarketplaceAccountService
from marketsync.services.endpoints import (
    PRIVILEGE_PATH,
    REQUIRED_SCOPES,
    SCOPE_INVENTORY,
    api_base,
    token_url,
)
from marketsync.services.token_state import (
    Active,
    NeedsReauthState,
    Refreshing,
    classify,
    transition,
)
from marketsync.utils.logger import MarketplaceConnectLogger, connect_logger, logger, token_hash

DEFAULT_REFRESH_SCOPE = SCOPE_INVENTORY


@dataclass
class TokenRefreshResult:
    success: bool
    access_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "token_hash": token_hash(self.access_token),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


@dataclass
class ScopeCheck:
    accepted: bool
    via: Literal["scope", "probe", "none"]
    missing: list = field(default_factory=list)


def _basic_auth(client_id: str, client_secret: str) -> str:
    raw = f"{client_id}:{client_secret}".encode("utf-8")
    return "Basic " + base64.b64encode(raw).decode("ascii")


def missing_scopes(granted: Optional[str], required: Sequence[str] = REQUIRED_SCOPES) -> list:
    granted_set = set((granted or "").split())
    return [s for s in required if s not in granted_set]


class TokenLifecycleManager:
    def __init__(
        self,
        config: SyncConfig,
        accounts: MarketplaceAccountService,
        http: httpx.AsyncClient,
        *,
        connect_log: Optional[MarketplaceConnectLogger] = None,
    ):
        self.config = config
        self.accounts = accounts
        self.http = http
        self.connect_log = connect_log or connect_logger

    def resolve(self, db: Session, account: MarketplaceAccount) -> OAuthToken:
        """Authoritative usable token row for ``account``; raises :class:`TokenMissing`."""
        token = self.accounts.get_usable_token(db, account.id)
        if token is None or not token.access_token:
            raise TokenMissing(f"no usable token for account {account.id}", code="missing_token")
        return token

    async def refresh(
        self,
        db: Session,
        account: MarketplaceAccount,
        token: OAuthToken,
        *,
        default_scope: str = DEFAULT_REFRESH_SCOPE,
    ) -> TokenRefreshResult:
        """Exchange the stored refresh token; failures come back as a result, never raised."""
        state = transition(classify(None, token), Refreshing(token_id=token.id))

        credentials = self.accounts.resolve_app_credentials(db, account)
        if not credentials:
            return self._fail(db, token, "missing_client_credentials", "no app credentials for account")

        refresh_token = self.accounts.open_refresh_token(db, token)
        if not refresh_token:
            return self._fail(db, token, "missing_refresh_token", "no decryptable refresh token stored")

        client_id, client_secret = credentials
        url = token_url(account.environment)
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "scope": token.scope or default_scope,
        }
        self.connect_log.log_event(
            "token_refresh_request",
            f"Refreshing access token for account {account.id}",
            request_data={"url": url, "client_id": client_id, "refresh_token": refresh_token},
        )
        try:
            resp = await self.http.post(
                url,
                data=data,
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Authorization": _basic_auth(client_id, client_secret),
                },
            )
        except httpx.HTTPError as exc:
            return self._fail(db, token, "network_error", f"{type(exc).__name__}: {exc}")

        if resp.status_code < 200 or resp.status_code >= 300:
            return self._fail(
                db, token, "refresh_rejected",
                f"HTTP {resp.status_code}: {truncate_payload(resp.text)}",
            )

        try:
            payload = resp.json()
        except ValueError:
            return self._fail(db, token, "invalid_response", "token endpoint returned non-JSON body")
        access_token = payload.get("access_token")
        if not access_token:
            return self._fail(db, token, "invalid_response", "token endpoint returned no access_token")

        token = self.accounts.save_refreshed_access_token(
            db,
            token,
            access_token,
            payload.get("expires_in"),
            refresh_token=payload.get("refresh_token"),
        )
        self.accounts.clear_needs_reauth(db, account)
        state = transition(state, Active(token_id=token.id, expires_at=token.expires_at))
        self.connect_log.log_event(
            "token_refresh_success",
            f"Access token refreshed for account {account.id}",
            response_data={"access_token": access_token, "expires_in": payload.get("expires_in")},
        )
        logger.info("[token] account=%s state=%s token_hash=%s", account.id, state.kind, token_hash(access_token))
        return TokenRefreshResult(success=True, access_token=access_token, expires_at=token.expires_at)

    def _fail(self, db: Session, token: OAuthToken, code: str, message: str) -> TokenRefreshResult:
        self.accounts.record_refresh_error(db, token, f"{code}: {message}")
        self.connect_log.log_event(
            "token_refresh_error",
            f"Refresh failed for account {token.account_id}",
            status="error",
            error=f"{code}: {message}",
        )
        return TokenRefreshResult(success=False, error_code=code, error_message=message)

    def mark_needs_reauth(self, db: Session, account: MarketplaceAccount, reason: str) -> NeedsReauthState:
        self.accounts.mark_needs_reauth(db, account, reason)
        return NeedsReauthState(reason=reason)

    # -- authorization code grant ----------------------------------------

    async def exchange_authorization_code(self, code: str, environment: str) -> Dict[str, Any]:
        client_id, client_secret = self.config.app_id, self.config.cert_id
        redirect_uri = self.config.runame_for(environment)
        if not client_id or not client_secret or not redirect_uri:
            raise ConfigurationError("marketplace app credentials are not configured", code="missing_app_credentials")

        url = token_url(environment)
        self.connect_log.log_event(
            "code_exchange_request",
            f"Exchanging authorization code ({environment})",
            request_data={"url": url, "client_id": client_id, "code": code},
        )
        resp = await self.http.post(
            url,
            data={"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri},
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Authorization": _basic_auth(client_id, client_secret),
            },
        )
        if resp.status_code < 200 or resp.status_code >= 300:
            self.connect_log.log_event(
                "code_exchange_error", "Authorization code exchange rejected",
                status="error", error=f"HTTP {resp.status_code}",
            )
            raise RemoteClientError(
                "authorization code exchange failed",
                status_code=resp.status_code,
                payload=resp.text,
                code="token_exchange_failed",
            )
        payload = resp.json()
        self.connect_log.log_event(
            "code_exchange_success",
            "Authorization code exchanged",
            response_data={k: payload.get(k) for k in ("access_token", "refresh_token", "expires_in", "token_type")},
        )
        return payload

    async def verify_scopes(self, granted_scope: Optional[str], access_token: str, environment: str) -> ScopeCheck:
        """Accept when every required scope was echoed back, else when a live probe succeeds."""
        missing = missing_scopes(granted_scope)
        if not missing:
            return ScopeCheck(accepted=True, via="scope")

        try:
            resp = await self.http.get(
                f"{api_base(environment)}{PRIVILEGE_PATH}",
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.warning("[oauth] privilege probe failed: %s", exc)
            return ScopeCheck(accepted=False, via="none", missing=missing)

        if 200 <= resp.status_code < 300:
            logger.info("[oauth] scope string incomplete (%s missing) but privilege probe passed", len(missing))
            return ScopeCheck(accepted=True, via="probe", missing=missing)
        return ScopeCheck(accepted=False, via="none", missing=missing)
