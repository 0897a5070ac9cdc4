"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for FlexFlow happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. bearer_secret -> BEARER_SECRET).

  @model_validator(mode="after"): DEBUG-conditional BEARER_SECRET logic. Dev
      mode generates a key with a warning, production mode refuses to start.

Security notes:
  BEARER_SECRET shorter than 32 chars is rejected outright, as is the
  placeholder value DEFAULT_SECRET shipped in sample config files.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/ or cache/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("flexflow.config")

_DATA_DIR = Path(__file__).resolve().parent.parent
_PLACEHOLDER_SECRET = "DEFAULT_SECRET"
DEFAULT_BEARER_LIFETIME_MINUTES = 30


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
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
    database_url: str = f"sqlite:///{_DATA_DIR / 'flexflow.db'}"
    admin_email: str = "admin@localhost"
    log_file: str = ""

    # ------------------------------------------------------------------
    # Bearer tokens
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    bearer_secret: str = ""
    bearer_lifetime_minutes: int = DEFAULT_BEARER_LIFETIME_MINUTES
    bearer_audience: str = "flexflow"
    bearer_issuer: str = "flexflow"

    # "memory": per-process, lost on restart.
    # "sqlite": shared by every worker on the host via blacklist_db_path.
    blacklist_backend: str = "memory"
    blacklist_db_path: str = str(_DATA_DIR / "flexflow_blacklist.db")

    # ------------------------------------------------------------------
    # Sign-in policy
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    lockout_max_failed_attempts: int = 5
    lockout_minutes: int = 10

    password_min_length: int = 1
    password_require_digit: bool = False
    password_require_uppercase: bool = False
    password_require_non_alphanumeric: bool = False

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("bearer_lifetime_minutes", mode="before")
    @classmethod
    def coerce_lifetime(cls, value) -> int:
        """Fall back to the 30 minute default when the value is unset or unparseable."""
        try:
            minutes = int(value)
        except (TypeError, ValueError):
            logger.warning(
                "BEARER_LIFETIME_MINUTES=%r is not an integer; using %d",
                value,
                DEFAULT_BEARER_LIFETIME_MINUTES,
            )
            return DEFAULT_BEARER_LIFETIME_MINUTES
        if minutes <= 0:
            logger.warning(
                "BEARER_LIFETIME_MINUTES=%d must be positive; using %d",
                minutes,
                DEFAULT_BEARER_LIFETIME_MINUTES,
            )
            return DEFAULT_BEARER_LIFETIME_MINUTES
        return minutes

    @field_validator("blacklist_backend")
    @classmethod
    def check_blacklist_backend(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("memory", "sqlite"):
            raise ValueError("BLACKLIST_BACKEND must be 'memory' or 'sqlite'.")
        return value

    @model_validator(mode="after")
    def validate_bearer_secret(self) -> "Settings":
        """Enforce the BEARER_SECRET policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            BEARER_SECRET is missing or still the sample placeholder.

        Both modes: reject keys shorter than 32 characters.
        """
        if self.bearer_secret == _PLACEHOLDER_SECRET:
            raise ValueError("BEARER_SECRET is still set to the placeholder value DEFAULT_SECRET.")
        if not self.bearer_secret:
            if self.debug:
                self.bearer_secret = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated BEARER_SECRET. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "BEARER_SECRET is required in production mode. "
                    "Set BEARER_SECRET in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.bearer_secret) < 32:
            raise ValueError("BEARER_SECRET must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
