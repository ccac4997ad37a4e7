from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    DATABASE_URL: str
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Row store / change feed behaviour
    STORE_TIMEOUT_SECONDS: float = 10.0
    SUBSCRIBE_MAX_ATTEMPTS: int = 5
    SUBSCRIBE_BACKOFF_BASE_SECONDS: float = 0.5
    SUBSCRIBE_BACKOFF_MAX_SECONDS: float = 8.0

    CORS_ORIGINS: List[str] = ["*"]

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings():
    return Settings()
