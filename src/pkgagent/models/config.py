"""Immutable agent configuration."""

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AgentConfig(BaseModel):
    """Tunables for downloads, host commands and install targets.

    Built once by the front end and handed to every service at construction.
    """

    model_config = ConfigDict(frozen=True)

    download_timeout_seconds: float = Field(
        300, gt=0, description="Per-attempt download timeout"
    )
    download_attempts_max: int = Field(
        5, ge=1, description="Download attempts before giving up"
    )
    command_grace_seconds: float = Field(
        2, ge=0, le=2, description="Wait between SIGTERM and SIGKILL"
    )
    backoff_base_seconds: float = Field(
        1, ge=1, description="First retry delay before jitter"
    )
    backoff_cap_seconds: float = Field(
        60, ge=60, description="Upper bound for a single retry delay"
    )
    command_timeout_seconds: float = Field(
        300, ge=0, description="Timeout for mount, forget and detach (0 = none)"
    )
    install_timeout_seconds: float = Field(
        3600, ge=0, description="Timeout for the host installer (0 = none)"
    )
    chunk_size: int = Field(64 * 1024, gt=0, description="Read size for downloads and command output")

    target_volume: str = Field("/", min_length=1, description="Install target volume")
    scratch_root: Optional[Path] = Field(
        None, description="Parent for per-download scratch dirs (None = system temp)"
    )

    hdiutil_path: str = Field("/usr/bin/hdiutil", description="Disk image tool")
    installer_path: str = Field("/usr/sbin/installer", description="Host installer")
    pkgutil_path: str = Field("/usr/sbin/pkgutil", description="Receipt database tool")

    @model_validator(mode="after")
    def cap_not_below_base(self) -> "AgentConfig":
        if self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ValueError(
                f"backoff_cap_seconds ({self.backoff_cap_seconds:g}) must be >= "
                f"backoff_base_seconds ({self.backoff_base_seconds:g})"
            )
        return self
