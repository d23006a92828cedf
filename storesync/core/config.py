from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "storesync"
    env: str = "dev"
    database_url: str = Field(default="sqlite:///./storage/storesync.db")
    storage_dir: Path = Path("./storage")
    cache_ttl_hours: float = 168.0

    worker_count: int = 4
    use_workers: bool = True
    serial_threshold: int = 10
    poll_interval_seconds: float = 1.0
    progress_interval_seconds: float = 5.0
    item_delay_seconds: float = 0.1

    supplier_url: str = "https://api.supplier.example/soap"
    supplier_user: str = ""
    supplier_password: str = ""
    supplier_timeout_seconds: float = 30.0
    supplier_retry_count: int = 3
    supplier_retry_sleep_seconds: float = 1.0
    supplier_session_lifetime_seconds: int = 3000
    supplier_vendor: str = "Powerbody"

    storefront_shop: str = "example.myshopify.com"
    storefront_token: str = ""
    storefront_api_version: str = "2024-01"
    storefront_location_id: int | None = None
    storefront_timeout_seconds: float = 30.0
    storefront_max_retries: int = 3
    storefront_retry_backoff_seconds: float = 1.0

    order_id_prefix: str = "shopify_"
    order_tag: str = "powerbody-dropshipping"
    supplier_order_lookback_days: int = 7
    dead_letter_lookback_days: int = 7

    admin_token: str = "dev-admin-token"
    log_level: str = "INFO"
    log_file: Path | None = Path("./logs/app.log")

    model_config = SettingsConfigDict(env_file=".env", env_prefix="STORESYNC_")

    @property
    def cache_dir(self) -> Path:
        return self.storage_dir / "cache" / "products"

    @property
    def dead_letter_dir(self) -> Path:
        return self.storage_dir / "dead_letters"

    @property
    def temp_dir(self) -> Path:
        return self.storage_dir / "temp"


@lru_cache
def get_settings() -> Settings:
    return Settings()
