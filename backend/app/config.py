import os
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/pantrypal')
        # Comma-separated list of allowed CORS origins for browser/mobile clients.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:5173", "http://127.0.0.1:5173"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # Shared secret used by the payment provider to sign checkout callbacks
        # (HMAC over "<subscription_or_order_id>|<payment_id>").
        self.payment_key_secret = os.getenv("PAYMENT_KEY_SECRET", "").strip()
        # Separate secret for provider webhooks (HMAC over the raw body).
        self.payment_webhook_secret = os.getenv("PAYMENT_WEBHOOK_SECRET", "").strip()

        # Onboarding tokens are short-lived JWTs exchanged once for an organization.
        self.onboarding_token_secret = os.getenv("ONBOARDING_TOKEN_SECRET", "").strip()
        self.onboarding_token_ttl_minutes = _env_int("ONBOARDING_TOKEN_TTL_MINUTES", 60)

        # Upper bounds for a single mutating transaction. Exceeding them cancels the
        # statement and the whole transaction rolls back.
        self.txn_statement_timeout_ms = _env_int("TXN_STATEMENT_TIMEOUT_MS", 5000)
        self.txn_lock_timeout_ms = _env_int("TXN_LOCK_TIMEOUT_MS", 3000)

        self.invite_ttl_hours = _env_int("INVITE_TTL_HOURS", 72)

    @property
    def debug_errors(self) -> bool:
        return self.env in {"local", "dev"}


settings = Settings()
