"""
Synthesis settings.

Loaded from environment variables (prefix ``MESHSYNTH_``) or a ``.env``
file. Values declared in a topology's ``env`` block and CLI flags take
precedence over these.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for synthesizing topologies."""

    model_config = SettingsConfigDict(
        env_prefix="MESHSYNTH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Target environment (left to deploy time when unset)
    # -------------------------------------------------------------------------
    account: str | None = Field(default=None, description="Target account id")
    region: str | None = Field(default=None, description="Target region")

    # -------------------------------------------------------------------------
    # Envoy sidecar image
    # -------------------------------------------------------------------------
    envoy_image_account: str = Field(
        default="840364872350",
        description="Registry account hosting the aws-appmesh-envoy image",
    )
    envoy_image_version: str = Field(
        default="v1.15.0.0-prod",
        description="Default aws-appmesh-envoy image tag",
    )

    # -------------------------------------------------------------------------
    # Output
    # -------------------------------------------------------------------------
    default_format: Literal["json", "yaml"] = "json"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"
    log_json: bool = False


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Call get_settings.cache_clear() to reload settings if needed.
    """
    return Settings()
