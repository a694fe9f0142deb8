from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

load_dotenv()


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./marketsync.db"
    FRONTEND_URL: str = "http://localhost:5173"
    ALLOWED_ORIGINS: str = "http://localhost:5173"

    # base64 of 32 random bytes; any other string is stretched with HKDF
    ENCRYPTION_KEY_B64: Optional[str] = None

    EBAY_ENVIRONMENT: str = "production"
    EBAY_APP_ID: Optional[str] = None
    EBAY_CERT_ID: Optional[str] = None
    EBAY_RUNAME_PROD: Optional[str] = None
    EBAY_RUNAME_SANDBOX: Optional[str] = None

    EBAY_STOCK_ID: Optional[str] = None
    EBAY_STOCK_NAME: str = "EBAY"

    EBAY_MAX_SKUS_PER_RUN: int = 300
    EBAY_CONCURRENCY: int = 3
    EBAY_BATCH_DELAY_MS: int = 250
    EBAY_BULK_BATCH_SIZE: int = 25
    ORDERS_LOOKBACK_MINUTES: int = 120

    SYNC_LOOP_ENABLED: bool = True
    SYNC_LOOP_INTERVAL_SECONDS: int = 600

    @property
    def allowed_origins(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    class Config:
        env_file = None
        case_sensitive = True
        extra = "ignore"


settings = Settings()


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


@dataclass(frozen=True)
class SyncConfig:
    """Tuning and secrets handed to every sync component at construction.

    Built from :class:`Settings` at the process edge (routers, worker loop);
    tests construct it directly so no component reads the environment.
    """

    encryption_key: Optional[str] = None
    environment: str = "production"
    app_id: Optional[str] = None
    cert_id: Optional[str] = None
    runame_production: Optional[str] = None
    runame_sandbox: Optional[str] = None
    frontend_url: str = "http://localhost:5173"
    stock_bucket_id: Optional[str] = None
    stock_bucket_name: str = "EBAY"
    max_skus_per_run: int = 300
    concurrency: int = 3
    batch_delay_ms: int = 250
    bulk_batch_size: int = 25
    orders_lookback_minutes: int = 120
    retry_delays_ms: tuple[int, ...] = (500, 1000, 2000)
    accept_language_fallbacks: tuple[str, ...] = ("en-US", "fr-FR")
    http_timeout_seconds: float = 30.0

    @classmethod
    def from_settings(cls, s: Settings) -> "SyncConfig":
        return cls(
            encryption_key=s.ENCRYPTION_KEY_B64,
            environment=(s.EBAY_ENVIRONMENT or "production").lower(),
            app_id=s.EBAY_APP_ID,
            cert_id=s.EBAY_CERT_ID,
            runame_production=s.EBAY_RUNAME_PROD,
            runame_sandbox=s.EBAY_RUNAME_SANDBOX,
            frontend_url=s.FRONTEND_URL.rstrip("/"),
            stock_bucket_id=s.EBAY_STOCK_ID or None,
            stock_bucket_name=s.EBAY_STOCK_NAME or "EBAY",
            max_skus_per_run=_clamp(s.EBAY_MAX_SKUS_PER_RUN, 1, 5000),
            concurrency=_clamp(s.EBAY_CONCURRENCY, 1, 10),
            batch_delay_ms=_clamp(s.EBAY_BATCH_DELAY_MS, 0, 10_000),
            bulk_batch_size=_clamp(s.EBAY_BULK_BATCH_SIZE, 1, 25),
            orders_lookback_minutes=_clamp(s.ORDERS_LOOKBACK_MINUTES, 1, 7 * 24 * 60),
        )

    def runame_for(self, environment: str) -> Optional[str]:
        if environment == "sandbox":
            return self.runame_sandbox
        return self.runame_production
