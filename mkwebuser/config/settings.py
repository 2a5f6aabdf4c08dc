"""
Central configuration using Pydantic BaseSettings.

Validates all env vars at startup (fail-fast). Every setting can be
overridden with an ``MKWEBUSER_`` prefixed environment variable or a
``.env`` file in the working directory.

Usage:
    from mkwebuser.config.settings import get_settings

    settings = get_settings()
    print(settings.provisioning.quota_max_mib)

Lazy initialization: get_settings() creates the singleton on first call.
Tests can reset via get_settings.cache_clear().
"""

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


# =============================================================================
# Nested Settings Groups
# =============================================================================


class ProvisioningSettings(BaseSettings):
    """Request defaults, limits and orchestration behaviour."""

    model_config = {"env_prefix": "MKWEBUSER_", "extra": "ignore"}

    # Request defaults (used when the CLI flag is omitted)
    default_quota_mib: int = 1024
    default_base: str = "/home"
    default_mount_base: str = "/srv/mkwebuser"

    # Validation limits
    quota_max_mib: int = 102400  # 100 GiB
    reserved_usernames: List[str] = []

    # Orchestration
    resume: bool = False
    timeout_seconds: Optional[float] = None

    # Rollback retry policy for unmount / loop detach
    rollback_attempts: int = 5
    rollback_backoff_seconds: float = 0.5
    rollback_backoff_max_seconds: float = 8.0

    @field_validator("rollback_attempts")
    @classmethod
    def _at_least_one_attempt(cls, value: int) -> int:
        if value < 1:
            raise ValueError("rollback_attempts must be at least 1")
        return value


class HostSettings(BaseSettings):
    """Host paths and commands used by the privileged gateway."""

    model_config = {"env_prefix": "MKWEBUSER_", "extra": "ignore"}

    sshd_config_dir: str = "/etc/ssh/sshd_config.d"
    sshd_reload_command: str = "systemctl reload ssh"
    sftp_group: str = "sftponly"
    sftp_shell: str = "/usr/sbin/nologin"
    nologin_shell: str = "/usr/sbin/nologin"

    command_timeout: int = 300  # seconds per privileged command

    # Cross-process locks and the provisioning journal
    lock_dir: Optional[str] = "/run/mkwebuser"
    state_file: Optional[str] = "/var/lib/mkwebuser/state.json"

    @property
    def state_path(self) -> Optional[Path]:
        return Path(self.state_file) if self.state_file else None


# =============================================================================
# Root Settings
# =============================================================================


class AppSettings(BaseSettings):
    """Root application settings composing all sub-settings."""

    model_config = {
        "env_prefix": "MKWEBUSER_",
        "extra": "ignore",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"
    log_file: str = ""

    # Nested groups (initialized separately to support env_prefix)
    provisioning: ProvisioningSettings = None  # type: ignore[assignment]
    host: HostSettings = None  # type: ignore[assignment]

    @model_validator(mode="before")
    @classmethod
    def _init_nested(cls, values):
        """Initialize nested settings from environment."""
        if values.get("provisioning") is None:
            values["provisioning"] = ProvisioningSettings()
        if values.get("host") is None:
            values["host"] = HostSettings()
        return values

    @field_validator("log_format")
    @classmethod
    def _known_log_format(cls, value: str) -> str:
        if value not in ("text", "json"):
            raise ValueError(f"log_format must be 'text' or 'json', got {value!r}")
        return value


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """
    Get the application settings singleton.

    Lazy-initialized on first call. Validates all env vars (fail-fast).
    Tests can reset via: get_settings.cache_clear()
    """
    return AppSettings()
