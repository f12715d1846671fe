"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the identity service happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a SECRET_KEY with a
      warning; production mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing
       relies on key entropy -- a short key weakens every session token.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("ideabridge.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. Tests may also pass keyword
    overrides directly: Settings(debug=True, verification_max_attempts=3).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    cors_origins: list[str] = ["http://localhost:5173"]
    # Host headers accepted by TrustedHostMiddleware.
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_cookie_name: str = "ideabridge_session"
    access_token_ttl_seconds: int = Field(default=900, ge=1)
    session_ttl_seconds: int = Field(default=60 * 60 * 24 * 7, ge=1)

    # ------------------------------------------------------------------
    # Phone verification (OTP)
    # ------------------------------------------------------------------

    phone_verification_enabled: bool = True
    verification_code_length: int = Field(default=6, ge=1, le=10)
    verification_code_ttl_seconds: int = Field(default=600, ge=1)
    verification_resend_cooldown_seconds: int = Field(default=60, ge=0)
    verification_max_attempts: int = Field(default=5, ge=1)
    # Echo codes to the log when no SMS gateway is configured (local dev).
    verification_logging_enabled: bool = True

    # Optional HTTP gateway for SMS delivery. Empty string = log-only sender.
    sms_webhook_url: str = ""
    sms_webhook_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Rate limiting and cooldowns
    # ------------------------------------------------------------------

    submission_limit: int = Field(default=5, ge=1)
    submission_window_seconds: int = Field(default=60 * 60, ge=1)
    role_change_cooldown_seconds: int = Field(default=60 * 60 * 24, ge=0)
    # slowapi per-IP limit on the public auth endpoints.
    auth_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    # "sql" is the transactional backend; "memory" is test/offline only and
    # does not provide the atomic email-uniqueness guarantee.
    store_backend: Literal["sql", "memory"] = "sql"
    database_url: str = "sqlite:///ideabridge_identity.db"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
