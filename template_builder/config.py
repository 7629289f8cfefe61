from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BuilderSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PROXMOX_", env_file=".env", extra="ignore")

    url: str = Field(default="")
    username: str = Field(default="")
    password: str | None = Field(default=None)
    token: str | None = Field(default=None)
    insecure_skip_tls_verify: bool = Field(default=False)

    task_timeout_sec: float = Field(default=60.0, gt=0)
    task_poll_interval_sec: float = Field(default=1.0, ge=0)
    retry_attempts: int = Field(default=3, ge=1)
    retry_sleep_sec: float = Field(default=1.0, ge=0)

    ip_wait_timeout_sec: float = Field(default=300.0, gt=0)
    ip_poll_interval_sec: float = Field(default=5.0, ge=0)

    download_dir: str = Field(default=str(Path.home() / ".cache" / "template-builder"))
    log_level: str = Field(default="INFO")

    def validate_credentials(self) -> None:
        if not self.url:
            raise ValueError("PROXMOX_URL must be specified")
        if not self.username:
            raise ValueError("PROXMOX_USERNAME must be specified")
        if not self.password and not self.token:
            raise ValueError("PROXMOX_PASSWORD or PROXMOX_TOKEN must be specified")


@lru_cache(maxsize=1)
def get_settings() -> BuilderSettings:
    return BuilderSettings()
