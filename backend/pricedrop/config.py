from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    DEBUG: bool = False

    # SQLite is fine for a single-process deployment; point DATABASE_URL at
    # Postgres when the auction record should live outside the container.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./pricedrop.db")

    # Shopify Admin API credentials. The shop URL may be given with or
    # without scheme ("my-shop.myshopify.com" or "https://my-shop.myshopify.com").
    SHOPIFY_SHOP_URL: Optional[str] = None
    SHOPIFY_ACCESS_TOKEN: Optional[str] = None
    SHOPIFY_API_VERSION: str = "2024-04"

    # Catalog reads
    CATALOG_PAGE_SIZE: int = 50
    CATALOG_VARIANTS_PER_PRODUCT: int = 100
    CATALOG_PAGE_DELAY_SECONDS: float = 0.25
    # Search query passed to products(query: ...). Only active products take
    # part in an auction; drafts are additionally filtered out in memory.
    CATALOG_STATUS_QUERY: str = "status:active"

    # Price mutations
    BULK_BATCH_SIZE: int = 100
    CHUNK_DELAY_SECONDS: float = 0.5
    MUTATION_CONCURRENCY: int = 4

    # Backoff on throttling: min(base * 2**n, max) seconds, at most N attempts.
    RETRY_MAX_ATTEMPTS: int = 5
    RETRY_BASE_SECONDS: float = 2.0
    RETRY_MAX_SECONDS: float = 15.0

    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Scheduler
    AUCTION_TICK_SECONDS: int = 60
    AUCTION_DEFAULT_TIMEZONE: str = "CET"
    START_SCHEDULER: bool = True

    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def shop_domain(self) -> Optional[str]:
        if not self.SHOPIFY_SHOP_URL:
            return None
        return (
            self.SHOPIFY_SHOP_URL.replace("https://", "")
            .replace("http://", "")
            .strip()
            .rstrip("/")
        )

    @property
    def shopify_graphql_url(self) -> Optional[str]:
        domain = self.shop_domain
        if not domain:
            return None
        return f"https://{domain}/admin/api/{self.SHOPIFY_API_VERSION}/graphql.json"


settings = Settings()
