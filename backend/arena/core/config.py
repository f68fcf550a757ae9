"""
Sandbox Arena - Application Configuration
Pydantic Settings with environment variable support
"""

from functools import lru_cache
from typing import Dict, List, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    app_name: str = "Sandbox Arena"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "production"

    # ==========================================================================
    # Server
    # ==========================================================================
    host: str = "0.0.0.0"
    port: int = 8000

    # ==========================================================================
    # Security
    # ==========================================================================
    secret_key: str = Field(min_length=32)
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 30

    # ==========================================================================
    # CORS
    # ==========================================================================
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | List[str]) -> List[str]:
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    # ==========================================================================
    # Rate Limiting
    # ==========================================================================
    rate_limit_enabled: bool = True
    rate_limit_default: str = "100/minute"
    rate_limit_storage_uri: str = "memory://"

    # ==========================================================================
    # Logging
    # ==========================================================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "console"] = "json"

    # ==========================================================================
    # Container Runtime
    # ==========================================================================
    docker_url: str | None = None  # falls back to DOCKER_HOST / local socket
    docker_network: str = "bridge"
    sandbox_label_app: str = "arena"
    sandbox_default_image: str = "kalilinux/kali-rolling"
    sandbox_images: Dict[str, str] = Field(default_factory=dict)  # selector -> image tag
    sandbox_command: List[str] = Field(default_factory=lambda: ["/bin/bash"])
    sandbox_memory_limit_mb: int = 512
    sandbox_cpu_quota: float = 1.0
    sandbox_pids_limit: int = 256
    sandbox_max_age_seconds: int = 7200
    sandbox_cleanup_interval_seconds: int = 300
    sandbox_stop_timeout_seconds: int = 10
    sandbox_create_retries: int = 3

    # ==========================================================================
    # Terminal Sessions
    # ==========================================================================
    session_ttl_seconds: int = 7200  # 2 hours
    session_sweep_interval_seconds: int = 60
    session_stop_container_on_expiry: bool = True

    # ==========================================================================
    # Duels
    # ==========================================================================
    queue_entry_ttl_seconds: int = 600  # 10 minutes
    matchmaking_interval_seconds: int = 5
    duel_default_rating: int = 1000
    duel_default_score_change: int = 25
    duel_challenge_ttl_seconds: int = 86400  # 24 hours
    duel_image: str | None = None  # selector or tag; None means sandbox_default_image
    duel_auto_provision: bool = True


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
