"""Configuration management for TaskForge."""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "TaskForge"
    debug: bool = False

    # Database
    database_url: str = Field(
        default="sqlite:///./taskforge.db",
        description="SQLAlchemy connection URL for tasks and generations",
    )

    # AI/LLM
    anthropic_api_key: Optional[SecretStr] = Field(
        default=None,
        description="Anthropic API key",
    )
    default_model: str = Field(
        default="claude-sonnet-4-5-20250929",
        description="Model used for code generation",
    )
    generation_max_turns: int = Field(
        default=40,
        description="Maximum model round-trips per generation",
    )
    generation_max_consecutive_errors: int = Field(
        default=5,
        description="Abort a generation after this many errors in a row",
    )
    generation_max_tokens: int = Field(
        default=8192,
        description="Maximum tokens per model response",
    )

    # Sandboxes
    sandbox_provider: Literal["e2b", "docker"] = Field(
        default="e2b",
        description="Backend used to provision sandboxes",
    )
    e2b_api_key: Optional[SecretStr] = Field(
        default=None,
        description="E2B API key",
    )
    sandbox_template: Optional[str] = Field(
        default=None,
        description="E2B template name (provider default when unset)",
    )
    sandbox_ttl_seconds: int = Field(
        default=3600,
        description="Lifetime of a sandbox before the sweeper closes it (1 hour)",
    )
    sandbox_sweep_interval_seconds: float = Field(
        default=300.0,
        description="Seconds between expiry sweeps (5 minutes)",
    )
    sandbox_remote_root: str = Field(
        default="/home/user",
        description="Directory inside the sandbox that receives generated files",
    )
    sandbox_preview_port: int = Field(
        default=8000,
        description="Port of the preview web server inside the sandbox",
    )
    docker_image: str = Field(
        default="python:3.12-slim",
        description="Image used by the docker sandbox provider",
    )
    docker_network: str = Field(
        default="taskforge-network",
        description="Docker network for sandbox containers",
    )

    # Paths
    staging_path: Path = Field(
        default=Path("/tmp/taskforge/staging"),
        description="Local directory where generated files are staged",
    )

    # GitHub
    github_api_url: str = Field(
        default="https://api.github.com",
        description="GitHub REST API base URL",
    )
    github_token: Optional[SecretStr] = Field(
        default=None,
        description="GitHub personal access token",
    )
    github_app_id: Optional[str] = Field(
        default=None,
        description="GitHub App id (alternative to a token)",
    )
    github_app_private_key: Optional[SecretStr] = Field(
        default=None,
        description="GitHub App private key (PEM)",
    )
    github_installation_id: Optional[int] = Field(
        default=None,
        description="GitHub App installation id",
    )
    github_webhook_secret: Optional[str] = Field(
        default=None,
        description="Shared secret for webhook signatures",
    )

    # Web
    host: str = "0.0.0.0"
    port: int = 8000


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
