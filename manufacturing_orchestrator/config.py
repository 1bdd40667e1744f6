"""
Orchestrator Configuration

Settings and configuration management.
"""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrchestratorSettings(BaseSettings):
    """Manufacturing orchestrator configuration settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Database
    database_url: str = "sqlite+aiosqlite:///./manufacturing_queue.db"

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 3000

    # Fishbowl
    fishbowl_server_url: str = ""
    fishbowl_username: Optional[str] = None
    fishbowl_password: Optional[str] = None
    fishbowl_app_name: str = "ManufacturingOrchestrator"
    fishbowl_app_description: str = "Queue-based work order processing"
    fishbowl_app_id: int = 20251022
    api_request_timeout_seconds: float = 30.0
    ssl_verify: bool = True

    # Queue processing
    batch_size: int = 100
    max_retries: int = 1
    concurrent_wo_limit: int = 1

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_check_interval_seconds: int = 60
    interactive_session_timeout_seconds: int = 1800

    # Shutdown
    drain_timeout_seconds: float = 30.0
    drain_poll_interval_seconds: float = 0.5

    @property
    def async_database_url(self) -> str:
        """Get the database URL with an async driver."""
        # Convert postgresql:// to postgresql+asyncpg:// if needed
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if self.database_url.startswith("sqlite:///"):
            return self.database_url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
        return self.database_url

    @property
    def normalized_server_url(self) -> str:
        """Fishbowl server URL without a trailing slash."""
        return self.fishbowl_server_url.rstrip("/")

    @property
    def has_service_credentials(self) -> bool:
        """Whether unattended (scheduler) login is possible."""
        return bool(self.fishbowl_server_url and self.fishbowl_username and self.fishbowl_password)
