from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OutpostSettings(BaseSettings):
    """
    Process-wide knobs, loaded from ``OUTPOST_*`` environment variables or a
    ``.env`` file in the working directory.
    """

    model_config = SettingsConfigDict(env_prefix="OUTPOST_", env_file=".env", extra="ignore")

    # Paths
    state_dir: Path = Field(default_factory=lambda: Path("./state").resolve())
    log_dir: Path = Field(default_factory=lambda: Path("./logs").resolve())
    log_level: str = "INFO"
    provider_config: Optional[Path] = None
    remote_tmp_dir: str = "/tmp"

    # Retries
    retry_max_attempts: Optional[int] = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_multiplier: float = Field(default=2.0, ge=1)
    retry_max_delay: float = Field(default=30.0, ge=0)

    # Service status polling
    status_poll_interval: float = Field(default=2.0, gt=0)
    status_timeout: float = Field(default=60.0, gt=0)

    # SSH
    ssh_connect_timeout: float = Field(default=10.0, gt=0)
    ssh_port: int = Field(default=22, ge=1, le=65535)

    @field_validator("state_dir", "log_dir", mode="before")
    def _resolve_paths(cls, v: Any) -> Path:
        return Path(v).expanduser().resolve()

    @field_validator("provider_config", mode="before")
    def _resolve_optional_path(cls, v: Any) -> Optional[Path]:
        if v in (None, ""):
            return None
        return Path(v).expanduser().resolve()

    def client_options(self) -> dict:
        """Keyword options handed to every transport client factory."""
        return {
            "connect_timeout": self.ssh_connect_timeout,
            "default_port": self.ssh_port,
        }


@lru_cache(maxsize=1)
def get_settings() -> OutpostSettings:
    return OutpostSettings()


def reload_settings() -> OutpostSettings:
    get_settings.cache_clear()
    return get_settings()


__all__ = ["OutpostSettings", "get_settings", "reload_settings"]
