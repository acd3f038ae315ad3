from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="REWARDS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: Literal["development", "staging", "production", "test"] = "development"
    service_name: str = "matricula-rewards-ledger"
    version: str = "1.0.0"

    log_level: str = "INFO"
    log_json: bool = False

    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])

    # Coins map 1:1 to USD; custom redemptions below this many coins are rejected.
    min_custom_redemption_coins: int = Field(default=10, ge=1)
    invoice_prefix: str = "INV"

    default_page_size: int = Field(default=50, ge=1)
    max_page_size: int = Field(default=200, ge=1)

    seed_data: bool = True

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings()
