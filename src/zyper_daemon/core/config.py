"""Configuration management for the Zyper daemon."""

from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Daemon configuration settings.

    Every field can be overridden with a ``ZYPER_``-prefixed environment
    variable (``ZYPER_PORT=9000``) or a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="ZYPER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server configuration
    host: str = Field("0.0.0.0", description="Server host")
    port: Optional[int] = Field(None, description="Server port (falls back to the node document, then 8080)")
    cors_origins: str = Field("*", description="Comma-separated list of allowed CORS origins")

    # Storage
    config_path: str = Field("config/node.json", description="Node document (instances + metadata)")
    servers_dir: str = Field("servers", description="Root directory for instance directories")

    # Security
    node_key: Optional[str] = Field(None, description="Shared secret; overrides the document's nodeKey")

    # Observability
    log_level: str = Field("INFO")
    log_format: str = Field("json")
    metrics_enabled: bool = Field(True)
    stats_interval_seconds: int = Field(30, description="Node stats refresh interval")

    # Console
    console_history: int = Field(1000, description="Output chunks retained per running instance")
    replay_count: int = Field(50, description="Chunks replayed to a newly attached viewer")
    subscriber_queue_size: int = Field(1000, description="Pending events per viewer before it is dropped")
    pty_cols: int = Field(80)
    pty_rows: int = Field(30)

    # Lifecycle
    restart_settle_seconds: float = Field(2.0, description="Delay between stop and start on restart")
    stop_timeout_seconds: float = Field(30.0, description="Wait for exit before escalating to SIGKILL")

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v not in ("json", "console"):
            raise ValueError(f"Invalid log format: {v}")
        return v

    @property
    def cors_origins_list(self) -> List[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]
