"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AccessGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, bcrypt_rounds -> BCRYPT_ROUNDS).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Enforces the SECRET_KEY policy and the hashing/token floors.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. API key digests
       are HMAC-SHA256 keyed with it -- a short key weakens every stored digest.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key would orphan every stored API key
       digest on restart.

  [S1] BCRYPT_ROUNDS and TOKEN_BYTES may be raised but never lowered below
       MIN_BCRYPT_ROUNDS / MIN_TOKEN_BYTES. Values below the floor refuse to
       start instead of being clamped, so a typo cannot silently weaken hashing.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("accessgate.config")

MIN_BCRYPT_ROUNDS = 10
MIN_TOKEN_BYTES = 32


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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    # Empty string means "use the default SQLite file next to auth/store.py".
    database_url: str = ""

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    token_bytes: int = MIN_TOKEN_BYTES

    # ------------------------------------------------------------------
    # Service API keys
    # ------------------------------------------------------------------

    api_key_prefix: str = "vkey_"
    api_key_header: str = "X-API-Key"

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost:5000", "http://localhost:5173"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued API keys will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Issued API keys will not validate after a restart."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_credential_floors(self) -> "Settings":
        """Reject work factors and token sizes below the safety floors [S1]."""
        if self.bcrypt_rounds < MIN_BCRYPT_ROUNDS:
            raise ValueError(f"BCRYPT_ROUNDS must be at least {MIN_BCRYPT_ROUNDS}.")
        if self.bcrypt_rounds > 31:
            raise ValueError("BCRYPT_ROUNDS must be at most 31.")
        if self.token_bytes < MIN_TOKEN_BYTES:
            raise ValueError(f"TOKEN_BYTES must be at least {MIN_TOKEN_BYTES}.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    All modules should call get_settings() rather than constructing Settings()
    directly. In tests: call get_settings.cache_clear() between test cases if
    you need to inject different environment variables.
    """
    return Settings()
