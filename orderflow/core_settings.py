from pydantic_settings import BaseSettings
from pydantic import Field
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "orderflow"
    POSTGRES_USER: str = "orderflow"
    POSTGRES_PASSWORD: str = "orderflow"
    # Full SQLAlchemy URL; overrides the POSTGRES_* parts when set (sqlite for local runs)
    DATABASE_URL: Optional[str] = None

    JWT_SECRET: str = "change-me"
    JWT_ALG: str = "HS256"
    JWT_EXPIRES_MINUTES: int = 60

    WOOCOMMERCE_FUNCTION_URL: str = Field(
        default="http://backend:54321/functions/v1/woocommerce",
        description="Edge function performing WooCommerce order lookups",
    )
    WOOCOMMERCE_API_KEY: str = ""
    INVENTORY_SERVICE_URL: str = "http://inventory:8000"
    STORAGE_SERVICE_URL: str = "http://storage:8000"
    STORAGE_BUCKET: str = "order-files"
    HTTP_TIMEOUT_SECONDS: float = 5.0

    ORDERS_CACHE_TTL_SECONDS: int = Field(default=30, description="Per (user, role) order list cache")
    REFETCH_DEBOUNCE_SECONDS: float = Field(default=0.5, description="Change feed coalescing window")
    DELETE_BATCH_SIZE: int = 100
    MAX_ACTIVE_USERS: int = Field(default=500, description="Per-user order services kept in memory")
    SERVICE_IDLE_SECONDS: float = Field(default=900, description="Idle time before a user's service is dropped")

    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "*"

    class Config:
        env_file = ".env"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
