"""Runtime configuration for the booking service.

All limits and security knobs are read from the environment (and an
optional .env file) once at startup; modify them without touching code.
"""
import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

DEV_JWT_SECRET = "dev-only-secret-change-me-0123456789abcdef"


def _split_csv(raw: str) -> List[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


class Settings(BaseModel):
    """Process-wide settings with the production defaults."""
    database_url: str = Field(default="sqlite:///stylebook.db")
    log_level: str = Field(default="INFO")

    trusted_proxy_cidrs: List[str] = Field(default_factory=lambda: ["127.0.0.1/32", "::1/128"])

    booking_max_per_minute: int = Field(default=12, ge=1)
    booking_max_per_hour: int = Field(default=120, ge=1)

    ai_max_per_minute: int = Field(default=4, ge=1)
    ai_max_per_hour: int = Field(default=30, ge=1)
    ai_max_concurrent: int = Field(default=2)

    admin_cache_ttl_seconds: int = Field(default=180)

    jwt_secret: str = Field(default=DEV_JWT_SECRET)
    jwt_expiration_seconds: int = Field(default=28800, ge=60)

    cors_allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:5173"])

    # Optional first admin account, created at startup if absent
    admin_bootstrap_email: Optional[str] = Field(default=None)
    admin_bootstrap_password: Optional[str] = Field(default=None)

    # Store bounds for the in-memory limiters
    limiter_max_keys: int = Field(default=20_000, ge=1)
    booking_idle_seconds: int = Field(default=2 * 3600)
    backoff_idle_seconds: int = Field(default=24 * 3600)

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Build settings from environment variables.

        Unset variables fall back to the field defaults.
        """
        load_dotenv()
        values = {}

        env_map = {
            "DATABASE_URL": "database_url",
            "LOG_LEVEL": "log_level",
            "BOOKING_MAX_PER_MINUTE": "booking_max_per_minute",
            "BOOKING_MAX_PER_HOUR": "booking_max_per_hour",
            "AI_MAX_PER_MINUTE": "ai_max_per_minute",
            "AI_MAX_PER_HOUR": "ai_max_per_hour",
            "AI_MAX_CONCURRENT": "ai_max_concurrent",
            "ADMIN_CACHE_TTL_SECONDS": "admin_cache_ttl_seconds",
            "JWT_SECRET": "jwt_secret",
            "JWT_EXPIRATION_SECONDS": "jwt_expiration_seconds",
            "ADMIN_BOOTSTRAP_EMAIL": "admin_bootstrap_email",
            "ADMIN_BOOTSTRAP_PASSWORD": "admin_bootstrap_password",
        }
        for env_name, field_name in env_map.items():
            raw = os.getenv(env_name)
            if raw is not None and raw.strip():
                values[field_name] = raw.strip()

        cidrs = os.getenv("TRUSTED_PROXY_CIDRS")
        if cidrs is not None:
            values["trusted_proxy_cidrs"] = _split_csv(cidrs)

        origins = os.getenv("CORS_ALLOWED_ORIGINS")
        if origins is not None:
            values["cors_allowed_origins"] = _split_csv(origins)

        return cls(**values)

    @property
    def uses_dev_secret(self) -> bool:
        return self.jwt_secret == DEV_JWT_SECRET


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get settings singleton (read once per process)."""
    return Settings.from_env()
