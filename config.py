from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "produce_logistics"

    # App Settings
    APP_NAME: str = "Produce Logistics Ops API"
    LOG_LEVEL: str = "INFO"
    PORT: int = 8000
    CORS_ORIGINS: List[str] = ["*"]

    # Crowd scoring
    CROWD_THRESHOLD: float = 2.0  # busy score at/above which a shelf is crowded
    NON_CROWDED_LIMIT: int = 10

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
