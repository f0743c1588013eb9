import json
import os

from pydantic_settings import BaseSettings


INSECURE_JWT_KEYS = {"change_me", "your-secret-key-here-change-in-production", "secret", "jwt_secret", "changeme", ""}


class Settings(BaseSettings):
    app_name: str = "Wishlisty API"
    environment: str = "local"
    backend_cors_origins_raw: str = ""  # Comma-separated or JSON array

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "allow",
    }

    @property
    def backend_cors_origins(self) -> list[str]:
        """Parse CORS origins from raw string."""
        raw = os.getenv("BACKEND_CORS_ORIGINS", self.backend_cors_origins_raw).strip()
        if not raw:
            return ["http://localhost:3000", "http://127.0.0.1:3000"]
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
                if isinstance(parsed, list):
                    return [str(item).strip() for item in parsed if str(item).strip()]
            except ValueError:
                pass
        return [item.strip() for item in raw.split(",") if item.strip()]

    # Database: sqlite+aiosqlite:///./wishlisty.db (dev) | postgresql+asyncpg://... (prod)
    postgres_dsn: str = "sqlite+aiosqlite:///./wishlisty.db"
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_recycle: int = 1800
    db_pool_timeout: int = 30

    # Empty string disables the cross-instance sweep lock
    redis_dsn: str = "redis://localhost:6379/0"

    # Tokens are issued by the auth service; we only verify them
    jwt_secret_key: str = "CHANGE_ME"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7

    log_level: str = "INFO"
    log_file: str = ""

    default_locale: str = "en"

    # Push gateway (FCM-compatible HTTP relay). Empty URL disables push.
    push_gateway_url: str = ""
    push_gateway_key: str = ""
    push_timeout_seconds: float = 5.0
    push_android_channel: str = "wishlisty_notifications"

    # Reservation lifecycle
    reservation_hold_days: int = 14
    reservation_max_extensions: int = 2
    reservation_reminder_hours: int = 48

    # Scheduled sweeps
    scheduler_enabled: bool = True
    scheduler_timezone: str = "UTC"
    hourly_sweep_cron: str = "0 * * * *"
    daily_sweep_cron: str = "0 8 * * *"
    event_reminder_days_ahead: int = 2
    sweep_lock_ttl_seconds: int = 15 * 60

    def validate_secrets(self) -> None:
        """Refuse to start with insecure defaults."""
        if self.jwt_secret_key.strip().lower() in INSECURE_JWT_KEYS:
            raise RuntimeError(
                f"JWT_SECRET_KEY is a known placeholder ({self.jwt_secret_key!r}). "
                "Set the secret shared with the auth service via the JWT_SECRET_KEY environment variable."
            )
        if len(self.jwt_secret_key) < 32:
            raise RuntimeError(
                f"JWT_SECRET_KEY is too short ({len(self.jwt_secret_key)} chars). "
                "Minimum 32 characters required."
            )


settings = Settings()
