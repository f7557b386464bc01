from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite+aiosqlite:///./catalog.db"
    REDIS_URL: str = "redis://localhost:6379/0"
    CACHE_BACKEND: str = "memory"  # "memory" or "redis"
    CACHE_TTL_SECONDS: int = 300
    CACHE_WARM_MINUTES: int = 5
    QUERY_DEFAULT_LIMIT: int = 12
    QUERY_MAX_LIMIT: int = 100
    FEATURED_DEFAULT_LIMIT: int = 6
    HUB_QUEUE_SIZE: int = 100
    RECONNECT_DELAY_SECONDS: float = 3.0

    class Config:
        env_file = ".env"

settings = Settings()
