from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = Field(..., alias="DATABASE_URL")

    basic_auth_username: str = Field(..., alias="BASIC_AUTH_USERNAME")
    basic_auth_password: str = Field(..., alias="BASIC_AUTH_PASSWORD")

    cors_origins: str | None = Field(None, alias="CORS_ORIGINS")

    # --- Order reconciliation ---
    order_sync_enabled: bool = Field(True, alias="ORDER_SYNC_ENABLED")
    order_sync_interval_seconds: int = Field(600, alias="ORDER_SYNC_INTERVAL_SECONDS")
    order_sync_lookback_hours: int = Field(24, alias="ORDER_SYNC_LOOKBACK_HOURS")
    order_sync_max_pages: int = Field(10, alias="ORDER_SYNC_MAX_PAGES")
    order_sync_page_size: int = Field(50, alias="ORDER_SYNC_PAGE_SIZE")
    order_status_monitor_interval_seconds: int = Field(300, alias="ORDER_STATUS_MONITOR_INTERVAL_SECONDS")
    order_status_monitor_batch_size: int = Field(100, alias="ORDER_STATUS_MONITOR_BATCH_SIZE")

    # --- Stock synchronization ---
    stock_sync_sweep_enabled: bool = Field(True, alias="STOCK_SYNC_SWEEP_ENABLED")
    stock_sync_sweep_interval_seconds: int = Field(300, alias="STOCK_SYNC_SWEEP_INTERVAL_SECONDS")
    stock_sync_sweep_window_seconds: int = Field(600, alias="STOCK_SYNC_SWEEP_WINDOW_SECONDS")
    stock_sync_sweep_batch_size: int = Field(100, alias="STOCK_SYNC_SWEEP_BATCH_SIZE")

    # --- Scheduler ---
    scheduler_lock_ttl_seconds: int = Field(900, alias="SCHEDULER_LOCK_TTL_SECONDS")
    scheduler_error_backoff_seconds: int = Field(60, alias="SCHEDULER_ERROR_BACKOFF_SECONDS")

    # --- Marketplace adapters ---
    marketplace_http_timeout_seconds: float = Field(30.0, alias="MARKETPLACE_HTTP_TIMEOUT_SECONDS")
    shopee_base_url: str = Field("https://partner.shopeemobile.com", alias="SHOPEE_BASE_URL")
    tokopedia_base_url: str = Field("https://fs.tokopedia.net", alias="TOKOPEDIA_BASE_URL")
    lazada_base_url: str = Field("https://api.lazada.com/rest", alias="LAZADA_BASE_URL")

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _normalize_cors_origins(cls, v: object) -> object:
        if v is None:
            return None
        if isinstance(v, str):
            origins = v.strip()
            return origins or None
        return v

    @field_validator("shopee_base_url", "tokopedia_base_url", "lazada_base_url", mode="after")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("order_sync_max_pages", "order_sync_page_size", mode="after")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        return max(1, int(v))

    @property
    def cors_origin_list(self) -> list[str]:
        if not self.cors_origins:
            return []
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
