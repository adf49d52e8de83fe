"""Configuration module using Pydantic Settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Credentials (comma separated, e.g. OPENROUTER_API_KEYS=sk-or-v1-a,sk-or-v1-b)
    openrouter_api_keys: str = ""
    key_prefix: str = "sk-"

    # Upstream
    upstream_url: str = "https://openrouter.ai/api/v1/chat/completions"
    http_referer: str = "https://github.com/fengqiaozhu/openrouter-free-pool"
    x_title: str = "OpenRouter Free Pool"

    # HTTP Client
    http_timeout_connect: float = 10.0
    http_timeout_read: float | None = 300.0

    # Quota windows
    minute_limit: int = 20
    day_limit: int = 200
    quota_timezone: str | None = None  # IANA name, local time when unset

    # Counter store
    counter_backend: str = "memory"  # "memory" or "redis"
    redis_url: str | None = None
    redis_host: str | None = None
    redis_port: int = 6379
    redis_prefix: str = ""
    store_fallback_to_memory: bool = False

    # Logging
    log_level: str = "INFO"

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 3000

    @property
    def api_keys(self) -> list[str]:
        """Configured credentials in declaration order."""
        return [k.strip() for k in self.openrouter_api_keys.split(",") if k.strip()]

    @property
    def resolved_redis_url(self) -> str | None:
        """Redis URL, built from host/port when no URL is given."""
        if self.redis_url:
            return self.redis_url
        if self.redis_host:
            return f"redis://{self.redis_host}:{self.redis_port}"
        return None


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience function for quick access
settings = get_settings()
