from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]

DARAJA_SANDBOX_URL = "https://sandbox.safaricom.co.ke"
DARAJA_PRODUCTION_URL = "https://api.safaricom.co.ke"


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except Exception:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    base_url: str = Field(default="http://localhost:8000", alias="BASE_URL")
    admin_api_token: str = Field(default="", alias="ADMIN_API_TOKEN")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="stkpay", alias="MONGODB_DB_NAME")

    # Redis (ARQ worker + initiation throttle)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # M-Pesa Daraja
    mpesa_environment: str = Field(default="sandbox", alias="MPESA_ENVIRONMENT")
    mpesa_base_url_override: str = Field(default="", alias="MPESA_BASE_URL")
    mpesa_consumer_key: str = Field(default="", alias="MPESA_CONSUMER_KEY")
    mpesa_consumer_secret: str = Field(default="", alias="MPESA_CONSUMER_SECRET")
    mpesa_shortcode: str = Field(default="174379", alias="MPESA_SHORTCODE")
    mpesa_passkey: str = Field(default="", alias="MPESA_PASSKEY")
    mpesa_callback_url_raw: str = Field(default="", alias="MPESA_CALLBACK_URL")
    mpesa_account_reference: str = Field(default="ORDER", alias="MPESA_ACCOUNT_REFERENCE")
    mpesa_country_code: str = Field(default="254", alias="MPESA_COUNTRY_CODE")
    mpesa_timezone: str = Field(default="Africa/Nairobi", alias="MPESA_TIMEZONE")
    mpesa_http_timeout_seconds: float = Field(default=30.0, alias="MPESA_HTTP_TIMEOUT_SECONDS")
    mpesa_token_expiry_skew_seconds: int = Field(default=60, alias="MPESA_TOKEN_EXPIRY_SKEW_SECONDS")

    # Reconciliation
    order_update_max_attempts: int = Field(default=3, alias="ORDER_UPDATE_MAX_ATTEMPTS")
    order_update_backoff_seconds: float = Field(default=0.5, alias="ORDER_UPDATE_BACKOFF_SECONDS")
    stale_pending_minutes: int = Field(default=5, alias="STALE_PENDING_MINUTES")
    unsynced_lookback_hours: int = Field(default=24, alias="UNSYNCED_LOOKBACK_HOURS")

    # Throttle
    initiations_per_phone_per_hour: int = Field(default=10, alias="INITIATIONS_PER_PHONE_PER_HOUR")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    @property
    def mpesa_base_url(self) -> str:
        if self.mpesa_base_url_override:
            return self.mpesa_base_url_override.rstrip("/")
        return DARAJA_SANDBOX_URL if self.mpesa_environment == "sandbox" else DARAJA_PRODUCTION_URL

    @property
    def mpesa_callback_url(self) -> str:
        """Publicly reachable URL the gateway posts results to."""
        if self.mpesa_callback_url_raw:
            return self.mpesa_callback_url_raw
        return f"{self.base_url.rstrip('/')}/v1/mpesa/callback"


@lru_cache
def get_settings() -> Settings:
    return Settings()
