"""Engine Settings - Central Configuration"""
from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Local durable mirror (MongoDB)
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db_prefix: str = "bpm_org_"
    local_persistence_enabled: bool = False

    # Remote document store (CouchDB-compatible). Empty = local-only operation
    remote_store_url: str = ""
    remote_db_prefix: str = "bpm_org_"
    remote_timeout_seconds: float = 15.0

    # Tenant used by the HTTP app on startup
    default_org_id: str = "default"

    # Scheduling
    sync_interval_seconds: int = 30
    condition_check_interval_seconds: int = 60
    timer_misfire_grace_seconds: int = 60
    max_immediate_chain: int = 25  # Guard against immediate -> immediate loops

    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"
    log_to_file: bool = False

    # CORS - set to "*" to allow all origins
    cors_origins: str = "*"

    # Environment
    environment: str = "development"
    debug: bool = True

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins string to list"""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def remote_sync_enabled(self) -> bool:
        """Check if a remote store is configured"""
        return bool(self.remote_store_url.strip())

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.environment.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
