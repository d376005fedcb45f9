"""Engine settings loaded from environment variables.

Every setting is optional. A setting that is present in the environment
overrides the matching value from the parsed plan configuration; absent
settings leave the plan untouched.

    REQFLOW_LOG_LEVEL            logging level for the ``reqflow`` logger
    REQFLOW_LOG_DIR              enables rotating file logs in this directory
    REQFLOW_EXECUTION            sequential | parallel
    REQFLOW_MAX_CONCURRENCY      parallel admission limit
    REQFLOW_CONTINUE_ON_ERROR    keep going after a failed request
    REQFLOW_DRY_RUN              resolve and validate plans without calling out
    REQFLOW_TIMEOUT_MS           default per-request timeout
    REQFLOW_RETRY_COUNT          default retry count
    REQFLOW_RETRY_DELAY_MS       default base retry delay
    REQFLOW_STRICT_EXIT          any failure fails the run
    REQFLOW_FAIL_ON              failures tolerated before the run fails
    REQFLOW_FAIL_ON_PERCENTAGE   failure percentage tolerated
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from reqflow.constants import MAX_RESOLUTION_DEPTH


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="REQFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging
    log_level: str = "WARNING"
    log_dir: Optional[str] = None

    # Execution overrides
    execution: Optional[Literal["sequential", "parallel"]] = None
    max_concurrency: Optional[int] = Field(default=None, ge=1)
    continue_on_error: Optional[bool] = None
    dry_run: Optional[bool] = None
    timeout_ms: Optional[float] = Field(default=None, gt=0)
    retry_count: Optional[int] = Field(default=None, ge=0)
    retry_delay_ms: Optional[float] = Field(default=None, ge=0)
    plan_timeout_s: Optional[float] = Field(default=None, gt=0)

    # CI exit thresholds
    strict_exit: Optional[bool] = None
    fail_on: Optional[int] = Field(default=None, ge=0)
    fail_on_percentage: Optional[float] = Field(default=None, ge=0, le=100)

    # Variable resolution
    resolve_env: bool = True
    max_resolution_depth: int = Field(default=MAX_RESOLUTION_DEPTH, ge=1)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
