# settings.py
# ============================================================================
# CASE LIFECYCLE SERVICE - CONFIGURATION
# ============================================================================
# One explicit Settings object, built from the environment at start-up and
# handed to every component. Nothing below reads os.environ after that.
# ============================================================================

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


@dataclass
class Settings:
    """Service configuration."""

    # Server
    env: str = "development"
    port: int = 8000
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    # Record store
    database_url: Optional[str] = None
    db_min_pool_size: int = 5
    db_max_pool_size: int = 20

    # Payment gateway
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_price_id: Optional[str] = None
    site_url: Optional[str] = None
    checkout_expiry_minutes: int = 30
    checkout_source: str = "case-portal"

    # Extraction worker
    extraction_webhook_url: Optional[str] = None
    extraction_webhook_secret: Optional[str] = None
    extraction_timeout_seconds: float = 15.0
    extraction_dispatch_delay_seconds: float = 2.0
    extraction_error_excerpt_chars: int = 1500
    extraction_stall_minutes: int = 15

    # Read-after-write lookup
    lookup_max_retries: int = 3
    lookup_retry_delay_seconds: float = 1.0

    @property
    def is_development(self) -> bool:
        return self.env == "development"

    @property
    def extraction_configured(self) -> bool:
        return bool(self.extraction_webhook_url and self.extraction_webhook_secret)

    @property
    def checkout_configured(self) -> bool:
        return bool(self.stripe_secret_key and self.stripe_price_id and self.site_url)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            env=os.getenv("ENV", "development"),
            port=_env_int("PORT", "8000"),
            cors_origins=os.getenv("CORS_ORIGINS", "*").split(","),
            database_url=os.getenv("DATABASE_URL") or None,
            db_min_pool_size=_env_int("DB_MIN_POOL_SIZE", "5"),
            db_max_pool_size=_env_int("DB_MAX_POOL_SIZE", "20"),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
            stripe_price_id=os.getenv("STRIPE_PRICE_ID") or None,
            site_url=(os.getenv("SITE_URL") or "").rstrip("/") or None,
            checkout_expiry_minutes=_env_int("CHECKOUT_EXPIRY_MINUTES", "30"),
            checkout_source=os.getenv("CHECKOUT_SOURCE", "case-portal"),
            extraction_webhook_url=os.getenv("DOC_EXTRACT_WEBHOOK_URL") or None,
            extraction_webhook_secret=(os.getenv("DOC_EXTRACT_WEBHOOK_SECRET") or "").strip() or None,
            extraction_timeout_seconds=_env_float("EXTRACTION_TIMEOUT", "15.0"),
            extraction_dispatch_delay_seconds=_env_float("EXTRACTION_DISPATCH_DELAY", "2.0"),
            extraction_stall_minutes=_env_int("EXTRACTION_STALL_MINUTES", "15"),
            lookup_max_retries=_env_int("CASE_LOOKUP_MAX_RETRIES", "3"),
            lookup_retry_delay_seconds=_env_float("CASE_LOOKUP_RETRY_DELAY", "1.0"),
        )
