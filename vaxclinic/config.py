"""Configuration management.

Values come from the environment (prefix ``VAXCLINIC_``) via pydantic-settings.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="VAXCLINIC_")

    # Overall deadline for a reservation transaction, lock wait included.
    lock_timeout_seconds: float = Field(default=5.0, gt=0)
    batch_expiring_days_threshold: int = Field(default=30, ge=0)
    log_level: str = "INFO"
    seed_demo_data: bool = True


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
