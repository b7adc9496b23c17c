"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for moodledger happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or accept a Settings instance from container.build_container().

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, session_ttl_seconds -> SESSION_TTL_SECONDS).

  @model_validator(mode="after"): cross-field validation once every field is
      resolved. Enforces the SECRET_KEY policy and sanity-checks the KDF cost.

Security notes:
  SECRET_KEY keys the HMAC applied to session ids before they reach the
  session store. A leaked sessions table therefore cannot be replayed as
  cookies without also knowing SECRET_KEY. Keys shorter than 32 chars are
  rejected outright.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a
  hard startup failure. A random per-process key would silently log every
  user out on restart.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, ledger/ or collectibles/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("moodledger.config")

SEVEN_DAYS = 7 * 24 * 60 * 60


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (DEBUG=true is still required to
    get an auto-generated SECRET_KEY).
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

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///moodledger.db"
    # Upper bound on any wait for a connection, lock or statement.
    storage_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_backend: Literal["database", "memory", "redis"] = "database"
    redis_url: str = "redis://localhost:6379/0"
    session_ttl_seconds: int = Field(default=SEVEN_DAYS, gt=0)
    # Sliding expiration is opt-in; the default is a fixed expiry from creation.
    session_sliding: bool = False
    secure_cookies: bool = False
    session_purge_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # Credentials (Argon2id)
    # ------------------------------------------------------------------

    argon2_time_cost: int = Field(default=3, ge=1)
    argon2_memory_cost: int = Field(default=65536, ge=8)  # KiB
    argon2_parallelism: int = Field(default=4, ge=1)
    min_password_length: int = Field(default=8, ge=1)

    # ------------------------------------------------------------------
    # Token economy
    # ------------------------------------------------------------------

    mint_cost: int = Field(default=350, gt=0)
    burn_beneficiary: Literal["pool", "owner"] = "pool"
    pool_target_tokens: int = Field(default=1_000_000, gt=0)
    # Round payout: each of the top N contributors gets an equal share of P% of the round.
    pool_top_contributors: int = Field(default=50, ge=1, le=1000)
    pool_top_share_percent: int = Field(default=85, ge=1, le=100)
    # One gift per collectible instance. False lets each new owner gift again.
    single_gift: bool = True

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    register_rate_limit: str = "5/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions stored in the database will not survive a restart.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
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
    def validate_argon2_memory(self) -> "Settings":
        """Argon2 requires at least 8 KiB of memory per lane."""
        if self.argon2_memory_cost < 8 * self.argon2_parallelism:
            raise ValueError("ARGON2_MEMORY_COST must be at least 8 * ARGON2_PARALLELISM KiB.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or pass a Settings instance
    straight to build_container().
    """
    return Settings()
