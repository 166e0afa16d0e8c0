"""
Application configuration using Pydantic Settings.
All config is loaded from environment variables / .env file.
"""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    # ── App ──────────────────────────────────────────────
    APP_NAME: str = "classroom-sync"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:5174"  # comma-separated

    # ── Registry ─────────────────────────────────────────
    REGISTRY_BACKEND: str = "supabase"  # supabase | memory
    SUPABASE_URL: str = ""
    SUPABASE_KEY: str = ""  # anon/public key
    SUPABASE_SERVICE_KEY: str = ""  # service_role key (for admin ops)
    REGISTRY_CONNECT_RETRIES: int = 5
    REGISTRY_RETRY_DELAY_SECONDS: float = 5.0

    # ── Security ─────────────────────────────────────────
    ENCRYPTION_SECRET_KEY: str = ""  # Fernet key for device secrets at rest
    JWT_SECRET_KEY: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    MESSAGE_AUTH_REQUIRED: bool = False  # require sig on state_update / switch_result
    ALLOW_INSECURE_IDENTIFY: bool = False  # accept identify with a wrong/missing secret

    # ── Gateway ──────────────────────────────────────────
    LIVENESS_PROBE_INTERVAL_SECONDS: int = 30
    OFFLINE_SWEEP_INTERVAL_SECONDS: int = 60
    STALE_DEVICE_SECONDS: int = 60
    STATE_RATE_LIMIT_COUNT: int = 5
    STATE_RATE_WINDOW_SECONDS: float = 5.0

    # ── Commands ─────────────────────────────────────────
    TOGGLE_COOLDOWN_SECONDS: float = 1.0
    RECONCILE_DELAY_SECONDS: float = 3.0
    QUEUE_FLUSH_DELAY_SECONDS: float = 2.0

    # ── Schedules ────────────────────────────────────────
    SCHEDULE_UTC_OFFSET_MINUTES: int = 330  # Asia/Kolkata (UTC+5:30)
    MOTION_RECENCY_MINUTES: int = 5
    SCHEDULE_SYNC_INTERVAL_MINUTES: int = 5

    # ── Zalo Bot (alert push) ────────────────────────────
    ZALO_BOT_TOKEN: str = ""  # Token from Zalo Bot Creator
    ZALO_CHAT_ID: str = ""    # Operator chat ID

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance (singleton)."""
    return Settings()
