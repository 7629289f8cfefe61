from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FakePveSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FAKE_PVE_", extra="ignore")

    node: str = Field(default="pve")
    first_vm_id: int = Field(default=100, ge=100)
    storages_csv: str = Field(default="local,local-lvm")
    guest_interface: str = Field(default="eth0")
    guest_ipv4: str = Field(default="10.0.0.50")
    guest_ipv6: str = Field(default="fe80::5054:ff:fe12:3456")
    require_auth: bool = Field(default=True)

    @property
    def storages(self) -> list[str]:
        return [x.strip() for x in self.storages_csv.split(",") if x.strip()]


@lru_cache(maxsize=1)
def get_settings() -> FakePveSettings:
    return FakePveSettings()
