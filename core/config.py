"""
core/config.py -- Centralized access-guard configuration via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. suspension_threshold -> SUSPENSION_THRESHOLD). Type coercion and
      validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. A backoff cap below its base, or a threshold of zero, would
      make the throttle either useless or permanently closed, so both refuse
      to load.

Layer rule: core/ is the kernel. This module may not import from guard/.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("accessguard.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent.parent / 'guard' / 'accessguard_throttle.db'}"

_LOG_FORMAT = "%(asctime)s %(levelname)-5s %(name)s %(message)s"
_LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


class Settings(BaseSettings):
    """Access guard settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    throttle_db_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Throttling
    # ------------------------------------------------------------------

    # Failures tolerated before any delay is imposed.
    throttle_free_attempts: int = 3
    # Delay after the first failure past the free allowance; doubles per failure.
    throttle_backoff_base_seconds: float = 1.0
    throttle_backoff_cap_seconds: float = 900.0

    # ------------------------------------------------------------------
    # Suspension
    # ------------------------------------------------------------------

    # Failure count at which a principal is suspended automatically.
    suspension_threshold: int = 5
    # 0 = indefinite (only an administrator lifts it).
    suspension_seconds: int = 0

    # ------------------------------------------------------------------
    # Store failure policy
    # ------------------------------------------------------------------

    store_failure_policy: Literal["closed", "open"] = "closed"
    store_retry_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_policy(self) -> "Settings":
        """Reject policy combinations that cannot be enforced."""
        if self.suspension_threshold < 1:
            raise ValueError("SUSPENSION_THRESHOLD must be at least 1.")
        if self.throttle_free_attempts < 0:
            raise ValueError("THROTTLE_FREE_ATTEMPTS must not be negative.")
        if self.throttle_backoff_base_seconds <= 0:
            raise ValueError("THROTTLE_BACKOFF_BASE_SECONDS must be positive.")
        if self.throttle_backoff_cap_seconds < self.throttle_backoff_base_seconds:
            raise ValueError("THROTTLE_BACKOFF_CAP_SECONDS must be >= THROTTLE_BACKOFF_BASE_SECONDS.")
        if self.suspension_seconds < 0:
            raise ValueError("SUSPENSION_SECONDS must not be negative (0 means indefinite).")
        if self.store_retry_seconds <= 0:
            raise ValueError("STORE_RETRY_SECONDS must be positive.")
        if self.store_failure_policy == "open":
            logger.warning("STORE_FAILURE_POLICY=open: logins are allowed while the throttle store is down.")
        return self

    @property
    def suspension_is_indefinite(self) -> bool:
        return self.suspension_seconds == 0


def configure_logging(settings: Settings | None = None) -> None:
    """Install the root log handler with the project's format.

    Embedding applications that already configure logging can skip this;
    every module logs through a named "accessguard.*" logger.
    """
    cfg = settings or get_settings()
    logging.basicConfig(
        level=cfg.log_level.upper(),
        format=_LOG_FORMAT,
        datefmt=_LOG_DATEFMT,
    )


@lru_cache
def get_settings() -> Settings:
    """Return the Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or construct Settings(...)
    directly and pass it to AccessGuard.
    """
    return Settings()
