import os
import warnings
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

INSECURE_DEV_SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_optional_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value else None


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, built once and passed to every component"""

    database_url: str = "sqlite:///./salonpay.db"
    secret_key: str = INSECURE_DEV_SECRET_KEY

    # Frontend base URL for redirects and booking links
    frontend_url: str = "http://localhost:3000"
    # Public base URL of this API, used for provider callbacks
    public_api_base_url: str = "http://localhost:8000"

    # Mercado Pago OAuth application
    mp_client_id: Optional[str] = None
    mp_client_secret: Optional[str] = None
    mp_redirect_uri: Optional[str] = None
    mp_api_url: str = "https://api.mercadopago.com"
    mp_auth_url: str = "https://auth.mercadopago.com.ar/authorization"
    mp_currency: str = "ARS"
    mp_http_timeout_seconds: float = 15.0

    # Symmetric key for tokens at rest (never persisted)
    mp_token_key: Optional[str] = None

    # Webhook shared secret; when unset, signature verification is skipped
    mp_webhook_secret: Optional[str] = None
    # Replay window for the X-Signature timestamp; None disables the check
    mp_webhook_max_age_seconds: Optional[int] = None

    payment_link_ttl_days: int = 30
    token_refresh_skew_seconds: int = 300
    orphan_appointment_minutes: int = 60
    webhook_max_attempts: int = 5

    rate_limit_enabled: bool = True
    # Requests per minute per client IP on public endpoints
    public_rate_limit: int = 60
    redis_url: Optional[str] = None

    @property
    def oauth_redirect_uri(self) -> str:
        return self.mp_redirect_uri or f"{self.public_api_base_url}/mercadopago/oauth/callback"

    @property
    def webhook_url(self) -> str:
        return f"{self.public_api_base_url}/webhooks/mercadopago"

    @classmethod
    def from_env(cls) -> "Settings":
        secret_key = os.getenv("SECRET_KEY")
        if not secret_key:
            warnings.warn(
                "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION",
                RuntimeWarning,
                stacklevel=2,
            )
            secret_key = INSECURE_DEV_SECRET_KEY

        frontend_url = os.getenv("FRONTEND_URL", "http://localhost:3000")

        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./salonpay.db"),
            secret_key=secret_key,
            frontend_url=frontend_url.rstrip("/"),
            public_api_base_url=os.getenv("PUBLIC_API_BASE_URL", "http://localhost:8000").rstrip("/"),
            mp_client_id=os.getenv("MP_CLIENT_ID"),
            mp_client_secret=os.getenv("MP_CLIENT_SECRET"),
            mp_redirect_uri=os.getenv("MP_REDIRECT_URI"),
            mp_api_url=os.getenv("MP_API_URL", "https://api.mercadopago.com").rstrip("/"),
            mp_auth_url=os.getenv("MP_AUTH_URL", "https://auth.mercadopago.com.ar/authorization"),
            mp_currency=os.getenv("MP_CURRENCY", "ARS"),
            mp_http_timeout_seconds=float(os.getenv("MP_HTTP_TIMEOUT_SECONDS", "15")),
            mp_token_key=os.getenv("MP_TOKEN_KEY"),
            mp_webhook_secret=os.getenv("MP_WEBHOOK_SECRET"),
            mp_webhook_max_age_seconds=_env_optional_int("MP_WEBHOOK_MAX_AGE_SECONDS"),
            payment_link_ttl_days=_env_int("PAYMENT_LINK_TTL_DAYS", 30),
            orphan_appointment_minutes=_env_int("ORPHAN_APPOINTMENT_MINUTES", 60),
            webhook_max_attempts=_env_int("WEBHOOK_MAX_ATTEMPTS", 5),
            rate_limit_enabled=os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true",
            public_rate_limit=_env_int("PUBLIC_RATE_LIMIT", 60),
            redis_url=os.getenv("REDIS_URL"),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
