from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite+aiosqlite:///./mcpchat.db"

    # Auth
    jwt_secret: str = "dev_secret_change_in_production"
    jwt_algorithm: str = "HS256"
    jwt_expires_hours: int = 12
    default_admin_password: str = "admin"

    # CORS
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
    ]

    # Upstream providers
    request_timeout: float = 10.0  # non-streaming calls, total
    first_byte_timeout: float = 30.0  # streaming calls, until the first body bytes
    failover_retry_delay: float = 0.1

    # Streaming
    subscriber_grace_period: float = 2.0
    keepalive_interval: float = 30.0
    fallback_chunk_size: int = 50
    fallback_chunk_delay: float = 0.05
    subscriber_queue_size: int = 1000
    session_idle_ttl: float = 300.0
    reaper_interval: float = 60.0

    # Optional YAML file with AI connections to seed on first start
    connections_file: Optional[str] = None

    # App settings
    log_level: str = "INFO"

    @field_validator("database_url")
    @classmethod
    def database_url_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("DATABASE_URL is required and cannot be empty")
        return v

    @field_validator("jwt_secret")
    @classmethod
    def jwt_secret_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("JWT_SECRET is required and cannot be empty")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache
def get_settings() -> Settings:
    return Settings()


# Singleton for convenient import
settings = get_settings()
