"""Application configuration using Pydantic settings."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Stackyard"
    version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"

    # Docker Engine
    docker_host: str = "/var/run/docker.sock"
    docker_timeout: float = 30
    docker_long_timeout: float = 300

    # Projects
    projects_dir: str = "/home/user/docker"
    # Same directory as seen by the Docker host, when it differs from ours
    host_projects_dir: Optional[str] = None
    project_scan_ttl: float = 2.0

    # Limits
    inspect_concurrency: int = 10
    compose_timeout: float = 300
    compose_max_output: int = 10 * 1024 * 1024
    log_tail: int = 100

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Allow extra env vars not defined in Settings

    @property
    def effective_host_projects_dir(self) -> str:
        """Projects directory in the Docker host's path namespace."""
        return self.host_projects_dir or self.projects_dir


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
