from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from marketsync.models_sqlalchemy.models import (
    PENDING_ACCESS_TOKEN,
    PROVIDER_EBAY,
    MarketplaceAccount,
    OAuthToken,
    ProviderAppCredential,
)
from marketsync.services.endpoints import normalize_environment
from marketsync.services.token_state import classify
from marketsync.utils.crypto import CredentialVault, SealedSecret, VaultDecryptError
from marketsync.utils.logger import logger

PENDING_TTL = timedelta(minutes=10)


class MarketplaceAccountService:
    """Durable account and token records for the marketplace provider."""

    def __init__(self, vault: CredentialVault, *, fallback_credentials: Optional[Tuple[str, str]] = None):
        self.vault = vault
        self.fallback_credentials = fallback_credentials

    @staticmethod
    def _to_utc(dt: Optional[datetime]) -> Optional[datetime]:
        if dt is None:
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

    def get_account(self, db: Session, account_id: str) -> Optional[MarketplaceAccount]:
        return db.query(MarketplaceAccount).filter(MarketplaceAccount.id == account_id).first()

    def list_active_accounts(self, db: Session, account_id: Optional[str] = None) -> List[MarketplaceAccount]:
        query = db.query(MarketplaceAccount).filter(
            MarketplaceAccount.provider == PROVIDER_EBAY,
            MarketplaceAccount.is_active.is_(True),
        )
        if account_id:
            query = query.filter(MarketplaceAccount.id == account_id)
        return query.order_by(MarketplaceAccount.created_at.asc()).all()

    # -- tokens ---------------------------------------------------------

    def get_usable_token(self, db: Session, account_id: str) -> Optional[OAuthToken]:
        """Most recently updated non-pending, non-consumed token for the account."""
        return (
            db.query(OAuthToken)
            .filter(
                OAuthToken.account_id == account_id,
                OAuthToken.access_token != PENDING_ACCESS_TOKEN,
                OAuthToken.status != "consumed",
            )
            .order_by(OAuthToken.updated_at.desc(), OAuthToken.created_at.desc())
            .first()
        )

    def open_refresh_token(self, db: Session, token: OAuthToken) -> Optional[str]:
        """Decrypt the stored refresh token, persisting the canonical form of legacy rows."""
        if not token.refresh_token_enc:
            return None
        try:
            opened = self.vault.open(token.refresh_token_enc, token.refresh_token_iv)
        except VaultDecryptError as exc:
            logger.error("[token] refresh token for account %s could not be decrypted: %s", token.account_id, exc)
            return None
        if opened.was_legacy:
            token.refresh_token_enc = opened.sealed.ciphertext
            token.refresh_token_iv = opened.sealed.iv
            db.commit()
            logger.info("[token] normalized legacy refresh token encoding for account %s", token.account_id)
        return opened.plaintext

    def save_refreshed_access_token(
        self,
        db: Session,
        token: OAuthToken,
        access_token: str,
        expires_in: Optional[int],
        *,
        refresh_token: Optional[str] = None,
    ) -> OAuthToken:
        now = datetime.now(timezone.utc)
        token.access_token = access_token
        if expires_in:
            token.expires_at = now + timedelta(seconds=int(expires_in))
        if refresh_token:
            sealed = self.vault.encrypt(refresh_token)
            token.refresh_token_enc = sealed.ciphertext
            token.refresh_token_iv = sealed.iv
        token.refresh_error = None
        token.last_refreshed_at = now
        token.updated_at = now
        db.commit()
        db.refresh(token)
        return token

    def record_refresh_error(self, db: Session, token: OAuthToken, error: str) -> None:
        token.refresh_error = error[:500]
        db.commit()

    # -- reauth flag ----------------------------------------------------

    def mark_needs_reauth(self, db: Session, account: MarketplaceAccount, reason: str) -> None:
        if account.needs_reauth and account.last_error == reason:
            return
        account.needs_reauth = True
        account.last_error = reason
        db.commit()
        logger.warning("[token] account %s marked needs_reauth (%s)", account.id, reason)

    def clear_needs_reauth(self, db: Session, account: MarketplaceAccount) -> None:
        if not account.needs_reauth and not account.last_error:
            return
        account.needs_reauth = False
        account.last_error = None
        db.commit()

    # -- app credentials ------------------------------------------------

    def resolve_app_credentials(self, db: Session, account: MarketplaceAccount) -> Optional[Tuple[str, str]]:
        """Account-scoped credentials first, then the provider-wide table, then process config."""
        if account.client_id and account.client_secret_enc:
            try:
                secret = self.vault.open(account.client_secret_enc, account.client_secret_iv).plaintext
                return account.client_id, secret
            except VaultDecryptError as exc:
                logger.warning("[token] account %s client secret unreadable: %s", account.id, exc)

        row = (
            db.query(ProviderAppCredential)
            .filter(
                ProviderAppCredential.provider == account.provider,
                ProviderAppCredential.environment == normalize_environment(account.environment),
            )
            .first()
        )
        if row is not None:
            try:
                secret = self.vault.open(row.client_secret_enc, row.client_secret_iv).plaintext
                return row.client_id, secret
            except VaultDecryptError as exc:
                logger.warning("[token] provider credentials for %s unreadable: %s", row.environment, exc)

        if self.fallback_credentials and all(self.fallback_credentials):
            return self.fallback_credentials
        return None

    def set_account_credentials(self, db: Session, account: MarketplaceAccount, client_id: str, client_secret: str) -> None:
        sealed = self.vault.encrypt(client_secret)
        account.client_id = client_id
        account.client_secret_enc = sealed.ciphertext
        account.client_secret_iv = sealed.iv
        db.commit()

    # -- consent handshake ----------------------------------------------

    def create_pending_token(
        self, db: Session, *, environment: str, nonce: str, account_id: Optional[str] = None
    ) -> OAuthToken:
        now = datetime.now(timezone.utc)
        row = OAuthToken(
            id=str(uuid.uuid4()),
            account_id=account_id,
            provider=PROVIDER_EBAY,
            environment=normalize_environment(environment),
            access_token=PENDING_ACCESS_TOKEN,
            state_nonce=nonce,
            status="pending",
            expires_at=now + PENDING_TTL,
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        return row

    def find_pending_token(self, db: Session, nonce: str) -> Optional[OAuthToken]:
        if not nonce:
            return None
        return (
            db.query(OAuthToken)
            .filter(OAuthToken.state_nonce == nonce, OAuthToken.access_token == PENDING_ACCESS_TOKEN)
            .first()
        )

    def purge_expired_pending(self, db: Session, *, now: Optional[datetime] = None) -> int:
        now = self._to_utc(now) or datetime.now(timezone.utc)
        rows = db.query(OAuthToken).filter(OAuthToken.access_token == PENDING_ACCESS_TOKEN).all()
        removed = 0
        for row in rows:
            expires_at = self._to_utc(row.expires_at)
            if expires_at is None or expires_at <= now:
                db.delete(row)
                removed += 1
        if removed:
            db.commit()
            logger.info("[oauth] purged %s expired pending token rows", removed)
        return removed

    def upsert_connected_account(
        self,
        db: Session,
        *,
        environment: str,
        provider_account_id: Optional[str],
        display_name: Optional[str],
        reconnect_account_id: Optional[str] = None,
    ) -> MarketplaceAccount:
        environment = normalize_environment(environment)
        account = None
        if reconnect_account_id:
            account = self.get_account(db, reconnect_account_id)
        if account is None and provider_account_id:
            account = (
                db.query(MarketplaceAccount)
                .filter(
                    MarketplaceAccount.provider == PROVIDER_EBAY,
                    MarketplaceAccount.environment == environment,
                    MarketplaceAccount.provider_account_id == provider_account_id,
                )
                .order_by(MarketplaceAccount.updated_at.desc())
                .first()
            )
        if account is None:
            account = MarketplaceAccount(
                id=str(uuid.uuid4()),
                provider=PROVIDER_EBAY,
                environment=environment,
            )
            db.add(account)
            logger.info(f"Creating marketplace account for {provider_account_id or 'unknown seller'} ({environment})")

        if provider_account_id:
            account.provider_account_id = provider_account_id
        if display_name:
            account.display_name = display_name
        account.is_active = True
        account.needs_reauth = False
        account.last_error = None
        db.flush()
        return account

    def store_connected_token(
        self,
        db: Session,
        account: MarketplaceAccount,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        scope: Optional[str],
        token_type: Optional[str],
    ) -> OAuthToken:
        sealed: SealedSecret = self.vault.encrypt(refresh_token)
        now = datetime.now(timezone.utc)
        # Older usable rows are superseded, not deleted.
        for old in db.query(OAuthToken).filter(
            OAuthToken.account_id == account.id,
            OAuthToken.access_token != PENDING_ACCESS_TOKEN,
            OAuthToken.status != "consumed",
        ):
            old.status = "consumed"
        token = OAuthToken(
            id=str(uuid.uuid4()),
            account_id=account.id,
            provider=account.provider,
            environment=account.environment,
            access_token=access_token,
            refresh_token_enc=sealed.ciphertext,
            refresh_token_iv=sealed.iv,
            scope=scope,
            token_type=token_type,
            expires_at=expires_at,
            status="active",
            created_at=now,
            updated_at=now,
        )
        db.add(token)
        db.flush()
        return token

    # -- overview -------------------------------------------------------

    def list_accounts_overview(self, db: Session) -> List[Dict]:
        """Active accounts, one canonical row per seller identity."""
        groups: Dict[str, List[Tuple[MarketplaceAccount, Optional[OAuthToken]]]] = {}
        for account in self.list_active_accounts(db):
            key = account.provider_account_id or account.id
            groups.setdefault(key, []).append((account, self.get_usable_token(db, account.id)))

        def _rank(item):
            account, token = item
            updated = self._to_utc(account.updated_at) or datetime.min.replace(tzinfo=timezone.utc)
            return (token is not None, updated)

        overview = []
        for members in groups.values():
            account, token = max(members, key=_rank)
            state = classify(account, token)
            overview.append({
                "id": account.id,
                "provider": account.provider,
                "environment": account.environment,
                "provider_account_id": account.provider_account_id,
                "display_name": account.display_name,
                "token_state": state.kind,
                "connected": token is not None and not account.needs_reauth,
                "needs_reauth": bool(account.needs_reauth),
                "duplicates": [a.id for a, _ in members if a.id != account.id],
            })
        return overview
