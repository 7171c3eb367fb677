"""Application configuration."""

import os
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings from environment variables."""

    # Data storage
    data_dir: str = "/data"

    # Web server
    host: str = "0.0.0.0"
    port: int = 8080

    # Optional basic auth for the admin API
    username: Optional[str] = None
    password: Optional[str] = None

    # AES-256 key (64 hex chars) for stored device secrets
    encryption_key: Optional[str] = None

    # Device HTTP
    command_timeout: float = 10.0
    auth_timeout: float = 5.0
    default_http_port: int = 80
    default_https_port: int = 443
    verify_ssl: bool = False  # devices ship self-signed certs
    user_agent: str = "Hikvision-Adapter/1.0"

    # Secure session cache
    session_cache_ttl: int = 600  # seconds
    cache_backend: str = "memory"  # "memory" or "file"

    # Logging
    log_level: str = "INFO"

    model_config = {
        "env_prefix": "HIKGATE_",
        "env_file": ".env",
    }

    @property
    def devices_file(self) -> str:
        """Path to devices.json file."""
        return os.path.join(self.data_dir, "devices.json")

    @property
    def session_cache_file(self) -> str:
        """Path to sessions.json cache file."""
        return os.path.join(self.data_dir, "sessions.json")

    @property
    def auth_enabled(self) -> bool:
        """Check if basic auth is enabled."""
        return bool(self.username and self.password)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
