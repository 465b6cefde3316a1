"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Iterable, Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SEARCH_TERMS: tuple[str, ...] = (
    "chase",
    "amex",
    "american express",
    "citi",
    "capital one",
    "discover",
    "wells fargo",
    "bank of america",
    "barclays",
    "us bank",
    "hsbc",
    "united",
    "delta",
    "southwest",
    "marriott",
    "hilton",
    "ihg",
    "hyatt",
    "travel",
    "cash",
    "business",
)

SEVEN_DAYS_SECONDS = 7 * 24 * 60 * 60


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="CardCatalog", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    rewards_api_url: HttpUrl = Field(
        default="https://rewards-credit-card-api.p.rapidapi.com",
        alias="REWARDS_API_URL",
    )
    rewards_api_key: str | None = Field(default=None, alias="REWARDS_API_KEY")
    rewards_api_host: str = Field(
        default="rewards-credit-card-api.p.rapidapi.com", alias="REWARDS_API_HOST"
    )
    image_base_url: HttpUrl = Field(
        default="https://www.offeroptimist.com", alias="IMAGE_BASE_URL"
    )

    catalog_ttl_seconds: int = Field(
        default=SEVEN_DAYS_SECONDS, alias="CATALOG_TTL", ge=60
    )
    search_terms: tuple[str, ...] = Field(
        default=DEFAULT_SEARCH_TERMS, alias="CATALOG_SEARCH_TERMS"
    )
    prefetch_limit: int = Field(default=10, alias="PREFETCH_LIMIT", ge=0, le=100)
    prefetch_concurrency: int = Field(
        default=10, alias="PREFETCH_CONCURRENCY", ge=1, le=50
    )

    request_timeout_seconds: float = Field(
        default=20.0, alias="REQUEST_TIMEOUT", gt=0
    )
    remote_max_retries: int = Field(
        default=2, alias="REMOTE_MAX_RETRIES", ge=0, le=10
    )
    retry_backoff_seconds: float = Field(
        default=0.5, alias="RETRY_BACKOFF", ge=0
    )

    image_cache_dir: Path = Field(
        default=Path("./card_images"), alias="IMAGE_CACHE_DIR"
    )
    image_memory_items: int = Field(
        default=100, alias="IMAGE_MEMORY_ITEMS", ge=1
    )
    image_memory_bytes: int = Field(
        default=50 * 1024 * 1024, alias="IMAGE_MEMORY_BYTES", ge=1024
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./cardcatalog.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("search_terms", mode="before")
    @classmethod
    def _parse_search_terms(cls, value: object) -> tuple[str, ...]:
        """Normalise search term selections from environment values."""

        if value is None:
            return DEFAULT_SEARCH_TERMS
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError("CATALOG_SEARCH_TERMS must be a string or iterable of strings")

        cleaned: list[str] = []
        for entry in raw_values:
            term = " ".join(entry.lower().split())
            if term and term not in cleaned:
                cleaned.append(term)
        if not cleaned:
            return DEFAULT_SEARCH_TERMS
        return tuple(cleaned)

    @property
    def has_api_key(self) -> bool:
        """Return whether remote catalog calls can be authenticated."""

        return bool((self.rewards_api_key or "").strip())

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
