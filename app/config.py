"""
Configuration management for the code playground execution backend.
Supports environment variables and .env files.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SandboxConfig(BaseSettings):
    """Sandbox provisioning and execution configuration."""

    model_config = SettingsConfigDict(env_prefix="SANDBOX_")

    backend: Literal["auto", "container", "local"] = Field(
        default="auto",
        description="Sandbox strategy; 'auto' probes the container runtime at startup"
    )

    # Resource limits
    memory_limit: str = Field(default="512m", description="Container memory ceiling")
    cpu_period: int = Field(default=100000, description="CFS period in microseconds")
    cpu_quota: int = Field(default=50000, description="CFS quota (50% of one CPU)")
    pids_limit: int = Field(default=256, description="Maximum processes per sandbox")

    # Network policy
    network_mode: Literal["none", "bridge"] = Field(
        default="none",
        description="Container network mode when dependency installation is off"
    )
    install_dependencies: bool = Field(
        default=False,
        description="Install detected dependencies before running (forces bridge networking)"
    )

    # Images
    pull_missing_images: bool = Field(
        default=True,
        description="Pull the runtime image once when it is not present locally"
    )
    container_label: str = Field(
        default="playground.session",
        description="Label used to tag (and later sweep) sandbox containers"
    )

    # Execution
    workspace_dir: str = Field(default="/tmp", description="Working directory inside the container")
    poll_interval: float = Field(
        default=0.25,
        gt=0.0,
        description="Seconds between exec state polls (container strategy)"
    )
    execution_timeout: float = Field(
        default=60.0,
        ge=0.0,
        description="Wall-clock limit per run in seconds (0 disables)"
    )
    kill_grace_period: float = Field(
        default=5.0,
        description="Seconds to wait for the exit code after a kill"
    )
    max_output_chunk: int = Field(default=4096, description="Read size for output pipes")
    overlap_policy: Literal["queue", "reject"] = Field(
        default="queue",
        description="What to do with a run-code issued while another run is in flight"
    )
    artifact_retrieval: Literal["archive", "script"] = Field(
        default="archive",
        description="How result files are pulled out of containers"
    )

    # Local-process strategy
    local_diagnostics: bool = Field(
        default=True,
        description="Emit a diagnostic preamble before each local run"
    )


class ServerConfig(BaseSettings):
    """Server configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVER_")

    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=3001, description="Server port")
    workers: int = Field(default=1, description="Number of workers")
    debug: bool = Field(default=False, description="Debug mode")
    cors_origins: list[str] = Field(
        default=["http://localhost:5173", "http://localhost:3000"],
        description="Allowed CORS origins"
    )


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__"
    )

    app_name: str = "Code Playground Backend"
    app_version: str = "1.0.0"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = Field(default=True, description="Debug mode")

    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @field_validator("debug", mode="before")
    @classmethod
    def validate_debug(cls, v: str | bool) -> bool:
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            return v.lower() in ("true", "1", "yes", "on")
        return False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
