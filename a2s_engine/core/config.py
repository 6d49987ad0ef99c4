"""
Configuration Settings.

This module defines the engine configuration using Pydantic's BaseSettings.
It automatically loads all configuration from ``A2S_``-prefixed environment
variables and an optional ``.env`` file without explicit dotenv loading.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """
    Engine settings model.

    All properties are automatically bound from environment variables and .env file.
    For example ``A2S_DEFAULT_TASK_TIMEOUT=5`` maps to ``default_task_timeout``.
    """

    # =====================================================================
    # Pydantic Configuration
    # =====================================================================
    model_config = SettingsConfigDict(
        env_prefix="A2S_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # =====================================================================
    # Logging Configuration
    # =====================================================================
    log_level: str = Field(
        default="INFO",
        description="Engine logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_format: str = Field(default="detailed", description="Log line format (simple, detailed, json)")
    enable_file_logging: bool = Field(default=False, description="Also write logs to a file")
    log_file_dir: str = Field(default="logs", description="Directory for the log file")
    configure_logging: bool = Field(
        default=False,
        description="Let build_engine configure the root logger",
    )

    # =====================================================================
    # Loading Configuration
    # =====================================================================
    require_checksum: bool = Field(
        default=True,
        description="Reject capability documents that carry no checksum",
    )
    protocol_versions: list[str] = Field(
        default=["1"],
        description="Accepted A2S protocol major versions",
    )

    # =====================================================================
    # Execution Configuration
    # =====================================================================
    default_task_timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Deadline in seconds for a suspending task without its own timeout",
    )
    max_loop_iterations: int = Field(
        default=100,
        ge=1,
        description="Iteration cap for loop nodes that declare no explicit bound",
    )
    max_parallel_branches: int = Field(
        default=16,
        ge=1,
        description="Maximum number of branches of one parallel node running at the same time",
    )

    # =====================================================================
    # Collaborator Configuration
    # =====================================================================
    http_timeout: float = Field(default=30.0, gt=0.0, description="Default timeout of the httpx invoker")
    registry_url: Optional[str] = Field(default=None, description="Default capability registry URL")
    master_key: Optional[str] = Field(
        default=None,
        description="Master secret the default Fernet cipher derives per-domain keys from",
    )


_settings_instance: Optional[EngineSettings] = None


def get_settings() -> EngineSettings:
    """Return the process-wide settings instance, creating it on first use."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = EngineSettings()
    return _settings_instance
