"""
Centralized configuration for lxc-manager.

Uses Pydantic BaseSettings for environment variable integration
and validation. All configurable values should be defined here.

Configuration sources (in order of precedence):
1. Explicit constructor arguments
2. Environment variables (LXCMANAGER_*)
3. .env file
4. Default values

Example:
    from lxcmanager.config import get_config

    config = get_config()
    print(config.command_timeout_s)  # From LXCMANAGER_COMMAND_TIMEOUT_S or default

    # Override at runtime
    config = get_config(local_mode=True)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from lxcmanager.timeouts import (
    COMMAND_DEFAULT_TIMEOUT_S,
    CONNECTION_RETRY_ATTEMPTS,
    CONNECTION_RETRY_DELAY_S,
)


class LxcManagerConfig(BaseSettings):
    """
    Central configuration for lxc-manager.

    All settings can be overridden via environment variables
    prefixed with LXCMANAGER_.

    Example:
        export LXCMANAGER_SSH_USER=admin
        export LXCMANAGER_LOCAL_MODE=true
    """

    model_config = SettingsConfigDict(
        env_prefix="LXCMANAGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # SSH transport
    ssh_user: str = Field(
        default="root",
        description="User for SSH sessions on the hypervisor host",
    )
    ssh_port: int = Field(
        default=22,
        ge=1,
        le=65535,
        description="Default SSH port when the connection does not name one",
    )
    ssh_options: List[str] = Field(
        default_factory=lambda: [
            "-o", "StrictHostKeyChecking=no",
            "-o", "BatchMode=yes",
        ],
        description="Extra arguments passed to every ssh invocation",
    )

    # Execution
    command_timeout_s: float = Field(
        default=COMMAND_DEFAULT_TIMEOUT_S,
        gt=0,
        description="Timeout for a single command attempt",
    )
    connection_retry_attempts: int = Field(
        default=CONNECTION_RETRY_ATTEMPTS,
        ge=1,
        description="Total attempts for connection-level failures (exit 255)",
    )
    connection_retry_delay_s: float = Field(
        default=CONNECTION_RETRY_DELAY_S,
        ge=0,
        description="Fixed delay between connection retries",
    )
    local_mode: bool = Field(
        default=False,
        description="Run payloads with the local shell instead of SSH (testing)",
    )
    local_root: Optional[str] = Field(
        default=None,
        description="Base directory for relative local: file references",
    )
    legacy_json_fallback: bool = Field(
        default=False,
        description="Scan stderr for an inline {id, value} object when a step produced no outputs",
    )

    # State persistence (caller side)
    state_dir: str = Field(
        default="~/.lxcmanager",
        description="Directory for checkpoints and the host registry",
    )

    # Logging
    log_level: Literal["debug", "info", "warning", "error"] = Field(
        default="info",
        description="Logging level for lxc-manager",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format (json for Loki, text for console)",
    )

    @field_validator("state_dir", "local_root")
    @classmethod
    def expand_path(cls, v: Optional[str]) -> Optional[str]:
        """Expand ~ and environment variables in paths."""
        if v is None:
            return v
        return os.path.expanduser(os.path.expandvars(v))

    def get_state_path(self, name: Optional[str] = None) -> Path:
        """Get a path inside the state directory."""
        base = Path(self.state_dir)
        if name:
            return base / name
        return base

    def get_registry_path(self) -> Path:
        """Get the host registry file path."""
        return self.get_state_path("hosts.json")


# Global singleton
_config: Optional[LxcManagerConfig] = None


def get_config(**overrides) -> LxcManagerConfig:
    """
    Get the global configuration instance.

    Creates a singleton on first call. Subsequent calls return
    the same instance unless overrides are provided.

    Args:
        **overrides: Override any config values

    Returns:
        LxcManagerConfig instance
    """
    global _config

    if overrides or _config is None:
        _config = LxcManagerConfig(**overrides)

    return _config


def reset_config() -> None:
    """Reset the global configuration (for testing)."""
    global _config
    _config = None
