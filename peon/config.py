"""
Peon Configuration Module.

This module provides configuration management for Peon using Pydantic
Settings. It handles environment variables, configuration validation, and
provides type-safe access to all application settings.

Environment Variables:
    PEON_LOG_LEVEL: Logging level (default: INFO)
    PEON_WORKING_DIRECTORY: Root for repository mirrors, cache and cleanup data
    PEON_DATABASE_URL: SQLAlchemy URL of the build database (default: SQLite
        file peon.db in the working directory)
    PEON_STATUS_DIRECTORY: Directory receiving rendered status pages
    PEON_STATUS_URL: Public URL of the status directory
    PEON_INDEX_BUILD_COUNT: Number of builds listed on the index page (default: 100)
    PEON_CACHE_VALIDITY: Cache archive lifetime in seconds (default: 7 days)
    PEON_CACHE_MAX_SIZE: Maximum total size of cache archives in bytes
    PEON_CACHE_ATOMIC_WRITES: Write cache archives through a rename (default: true)
    PEON_DESTINATIONS: JSON mapping of destination name to destination settings
    PEON_WATCHER_ENABLED: Poll watched repositories (default: false)
    PEON_WATCHER_INTERVAL: Polling interval in seconds (default: 60)
    PEON_WATCHER_REPOSITORIES: JSON list of {"url": ..., "branches": [...]}
    PEON_WEBHOOKS_ENABLED: Accept GitHub webhook events (default: false)
    PEON_WEBHOOKS_SECRET: Shared secret used to sign webhook payloads
    PEON_WEBHOOKS_URL: Public webhook URL, used for retrigger data
    PEON_GITHUB_TOKEN: GitHub token used to publish commit statuses
    PEON_GIT_SSH_COMMAND: Value of GIT_SSH_COMMAND for git operations
"""

import logging
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import Destination, WatchedRepository


class LogLevel(str, Enum):
    """Supported log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """
    Application configuration settings.

    Attributes:
        working_directory (Path): Holds repository mirrors (repos/), cache
            archives (cache/) and cleanup data (cleanup/)
        status_directory (Path): Where rendered HTML status pages are written
        destinations (dict[str, Destination]): Operator-registered deploy targets

    Watcher / Webhooks:
        Repositories are either polled (watcher) or pushed to Peon through
        GitHub webhooks. When the watcher is enabled, only watched
        repositories are built.

    Configuration:
        - Environment variables are prefixed with "PEON_"
        - Configuration can be loaded from .env file
        - Structured values (destinations, watched repositories) are JSON
    """

    api_title: str = Field(default="Peon", description="Title for the FastAPI application")
    api_version: str = Field(default="0.3.0", description="Version string for the API")
    log_level: LogLevel = Field(
        default=LogLevel.INFO, description="Logging level for the application"
    )

    working_directory: Path = Field(
        default=Path(".peon"), description="Root directory for mirrors, cache and cleanup data"
    )
    database_url: Optional[str] = Field(
        default=None, description="SQLAlchemy URL of the build database"
    )
    status_directory: Path = Field(
        default=Path(".peon/status"), description="Directory receiving status pages"
    )
    status_url: str = Field(
        default="http://localhost/peon", description="Public URL of the status pages"
    )
    index_build_count: int = Field(
        default=100, ge=1, description="Number of builds listed on the index page"
    )

    cache_validity: float = Field(
        default=7 * 24 * 3600, gt=0, description="Cache archive lifetime in seconds"
    )
    cache_max_size: Optional[int] = Field(
        default=None, ge=0, description="Maximum total size of cache archives in bytes"
    )
    cache_atomic_writes: bool = Field(
        default=True, description="Write archives to a temporary file and rename into place"
    )

    destinations: Dict[str, Destination] = Field(
        default_factory=dict, description="Registered build destinations"
    )

    watcher_enabled: bool = Field(default=False, description="Poll watched repositories")
    watcher_interval: float = Field(default=60.0, gt=0, description="Polling interval")
    watcher_repositories: List[WatchedRepository] = Field(
        default_factory=list, description="Repositories to poll"
    )

    webhooks_enabled: bool = Field(default=False, description="Accept webhook events")
    webhooks_secret: Optional[str] = Field(
        default=None, description="Secret used to verify webhook signatures"
    )
    webhooks_url: Optional[str] = Field(
        default=None, description="Public webhook URL, enables retrigger data"
    )
    webhooks_host: str = Field(default="localhost", description="Address to listen on")
    webhooks_port: int = Field(default=8080, description="Port to listen on")

    github_token: Optional[str] = Field(
        default=None, description="GitHub token used to publish commit statuses"
    )
    git_ssh_command: Optional[str] = Field(
        default=None, description="GIT_SSH_COMMAND used for git operations"
    )

    model_config = SettingsConfigDict(
        env_prefix="PEON_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v) -> str:
        """Validate and normalize log level configuration."""
        if isinstance(v, str):
            return v.upper()
        return v

    @property
    def github_status_enabled(self) -> bool:
        """Check if GitHub commit statuses can be published."""
        return bool(self.github_token)

    @property
    def database_location(self) -> str:
        """Database URL, a SQLite file in the working directory unless configured."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.working_directory.resolve() / 'peon.db'}"

    @property
    def repos_directory(self) -> Path:
        return self.working_directory / "repos"

    @property
    def cache_directory(self) -> Path:
        return self.working_directory / "cache"

    @property
    def cleanup_directory(self) -> Path:
        return self.working_directory / "cleanup"

    def validate_environment_specific_rules(self) -> None:
        """Warn about configurations that will not build anything useful."""
        if not self.watcher_enabled and not self.webhooks_enabled:
            logging.warning(
                "Neither the watcher nor webhooks are enabled. "
                "No build will ever be triggered."
            )
        if self.webhooks_enabled and not self.webhooks_secret:
            logging.warning(
                "Webhooks are enabled without a secret. "
                "Anyone able to reach the endpoint can trigger builds."
            )
        if not self.destinations:
            logging.warning("No build destinations are configured.")

    def log_configuration(self) -> None:
        """Log current configuration for debugging."""
        config_info = {
            "working_directory": str(self.working_directory),
            "status_directory": str(self.status_directory),
            "log_level": self.log_level.value,
            "destinations": sorted(self.destinations),
            "watcher": self.watcher_enabled,
            "webhooks": self.webhooks_enabled,
            "github_status": self.github_status_enabled,
        }
        logging.info("Configuration loaded successfully", extra={"config": config_info})


@lru_cache()
def get_settings() -> Settings:
    """Create cached settings instance to avoid repeated environment variable reads."""
    return Settings()


settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.value),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger("peon")
settings.log_configuration()
