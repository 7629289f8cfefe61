import logging
import re
import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from template_builder.models import BUS_CAPACITY, ISO_BUSES, BusFamily


logger = logging.getLogger(__name__)

DNS_NAME = re.compile(
    r"^(?:(?:(?:[a-zA-Z0-9](?:[a-zA-Z0-9\-]*[a-zA-Z0-9])?)\.)*"
    r"(?:[A-Za-z0-9](?:[A-Za-z0-9\-]*[A-Za-z0-9])?))$"
)
ISO_FILE = re.compile(r"^[^:]+:iso/.+$")
SERIAL = re.compile(r"^(/dev/.+|socket)$")
SIZE = re.compile(r"^\d+[KMGT]$")

VM_ID_MIN = 100
VM_ID_MAX = 999999999


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class DiskSpec(_Frozen):
    bus: BusFamily = BusFamily.SCSI
    size: str = "20G"
    storage_pool: str
    format: str = "raw"
    cache_mode: str = "none"
    asyncio: str = "io_uring"
    discard: bool = False
    ssd: bool = False
    io_thread: bool = False
    exclude_from_backup: bool = False
    skip_replication: bool = False

    @field_validator("size")
    @classmethod
    def _size(cls, value: str) -> str:
        if not SIZE.match(value):
            raise ValueError(f"disk size {value!r} must be a number followed by K, M, G or T")
        return value

    @field_validator("asyncio")
    @classmethod
    def _asyncio(cls, value: str) -> str:
        if value not in {"native", "threads", "io_uring"}:
            raise ValueError("asyncio must be native, threads or io_uring")
        return value

    @model_validator(mode="after")
    def _ssd(self) -> "DiskSpec":
        if self.ssd and self.bus == BusFamily.VIRTIO:
            raise ValueError("SSD emulation is not supported on virtio disks")
        return self


class ISOSpec(_Frozen):
    bus: BusFamily = BusFamily.IDE
    index: int | None = None
    iso_file: str | None = None
    iso_urls: tuple[str, ...] = ()
    iso_checksum: str = "none"
    iso_storage_pool: str | None = None
    iso_download_pve: bool = False
    cd_files: tuple[str, ...] = ()
    cd_content: dict[str, str] = Field(default_factory=dict)
    cd_label: str = "cidata"
    unmount: bool = False
    keep_cdrom_device: bool = False

    @model_validator(mode="before")
    @classmethod
    def _legacy_device(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "device" not in data:
            return data
        data = dict(data)
        device = str(data.pop("device"))
        logger.warning("iso 'device' is deprecated, use 'bus' and 'index' instead")
        match = re.match(r"^(ide|sata|scsi)(\d+)$", device)
        if not match:
            raise ValueError(f"{device} is not a valid bus index")
        data["bus"] = match.group(1)
        data["index"] = int(match.group(2))
        return data

    @model_validator(mode="after")
    def _check(self) -> "ISOSpec":
        if self.bus not in ISO_BUSES:
            raise ValueError(
                "ISOs must be of type ide, sata or scsi. VirtIO not supported by Proxmox for ISO devices"
            )
        if self.index is not None and not 0 <= self.index < BUS_CAPACITY[self.bus]:
            raise ValueError(
                f"{self.bus.value.upper()} bus index can't be higher than {BUS_CAPACITY[self.bus] - 1}"
            )
        sources = sum(
            [bool(self.iso_file), bool(self.iso_urls), bool(self.cd_files or self.cd_content)]
        )
        if sources != 1:
            raise ValueError(
                "one of iso_file, iso_urls, or a combination of cd_files and cd_content must be specified"
            )
        if self.iso_file and not ISO_FILE.match(self.iso_file):
            raise ValueError(
                f'iso_file should match pattern "<storage>:iso/<ISO filename>". Provided value was "{self.iso_file}"'
            )
        if self.iso_urls and not self.iso_storage_pool:
            raise ValueError("when specifying iso_urls, iso_storage_pool must also be specified")
        if (self.cd_files or self.cd_content) and not self.iso_storage_pool:
            raise ValueError("iso_storage_pool not set for storage of generated ISO from cd_files or cd_content")
        if self.iso_download_pve and not self.iso_urls:
            raise ValueError("iso_download_pve can only be used together with iso_urls")
        return self

    @property
    def generated(self) -> bool:
        return bool(self.cd_files or self.cd_content)


class NICSpec(_Frozen):
    model: str = "e1000"
    bridge: str
    mac_address: str | None = None
    vlan_tag: int | None = None
    firewall: bool = False
    packet_queues: int = 0
    mtu: int = Field(default=0, ge=0, le=65520)

    @model_validator(mode="after")
    def _queues(self) -> "NICSpec":
        if self.model != "virtio" and self.packet_queues > 0:
            raise ValueError("packet_queues can only be set for 'virtio' driver")
        return self


class EFISpec(_Frozen):
    storage_pool: str
    efi_type: str = "4m"
    pre_enrolled_keys: bool = False


class TPMSpec(_Frozen):
    storage_pool: str
    version: str = "v2.0"

    @field_validator("version")
    @classmethod
    def _version(cls, value: str) -> str:
        if value not in {"v1.2", "v2.0"}:
            raise ValueError('TPM Version must be one of "v1.2", "v2.0"')
        return value


class RngSpec(_Frozen):
    source: str = "/dev/urandom"
    max_bytes: int = Field(default=0, ge=0)
    period: int = Field(default=0, ge=0)

    @field_validator("source")
    @classmethod
    def _source(cls, value: str) -> str:
        if value not in {"/dev/urandom", "/dev/random", "/dev/hwrng"}:
            raise ValueError('source must be one of "/dev/urandom", "/dev/random", "/dev/hwrng"')
        return value


class VgaSpec(_Frozen):
    type: str | None = None
    memory: int | None = None


class IpConfigSpec(_Frozen):
    ip: str | None = None
    gateway: str | None = None
    ip6: str | None = None
    gateway6: str | None = None

    def render(self) -> str:
        parts = []
        if self.ip:
            parts.append(f"ip={self.ip}")
        if self.gateway:
            parts.append(f"gw={self.gateway}")
        if self.ip6:
            parts.append(f"ip6={self.ip6}")
        if self.gateway6:
            parts.append(f"gw6={self.gateway6}")
        return ",".join(parts)


class CloneSpec(_Frozen):
    clone_vm: str | None = None
    clone_vm_id: int | None = None
    full_clone: bool = True
    cloud_init_user: str | None = None
    nameserver: str | None = None
    searchdomain: str | None = None
    ipconfigs: tuple[IpConfigSpec, ...] = ()

    @model_validator(mode="after")
    def _source(self) -> "CloneSpec":
        if bool(self.clone_vm) == bool(self.clone_vm_id):
            raise ValueError("one of clone_vm or clone_vm_id must be specified")
        return self


class BuildSpec(_Frozen):
    name: str = "proxmox"
    node: str
    pool: str | None = None
    vm_id: int = 0
    vm_name: str = Field(default_factory=lambda: f"build-{uuid.uuid4().hex[:12]}")
    template_name: str | None = None
    template_description: str | None = None
    tags: tuple[str, ...] = ()

    memory: int = 512
    ballooning_minimum: int = 0
    cores: int = 1
    sockets: int = 1
    cpu_type: str = "kvm64"
    os: str = "other"
    numa: bool = False
    bios: str | None = None
    machine: str | None = None
    boot: str | None = None
    scsi_controller: str = "lsi"
    onboot: bool = False
    disable_kvm: bool = False
    qemu_agent: bool = True
    additional_args: str | None = None
    efi: EFISpec | None = None
    tpm: TPMSpec | None = None
    rng0: RngSpec | None = None
    vga: VgaSpec | None = None
    serials: tuple[str, ...] = ()

    disks: tuple[DiskSpec, ...] = ()
    isos: tuple[ISOSpec, ...] = ()
    nics: tuple[NICSpec, ...] = ()

    boot_iso: ISOSpec | None = None
    clone: CloneSpec | None = None

    replace_existing: bool = False
    skip_convert_to_template: bool = False
    cloud_init: bool = False
    cloud_init_storage_pool: str | None = None
    cloud_init_disk_type: BusFamily = BusFamily.IDE

    host: str | None = None
    vm_interface: str | None = None
    boot_wait_sec: float = Field(default=0.0, ge=0.0)

    @field_validator("memory")
    @classmethod
    def _memory(cls, value: int) -> int:
        if value < 16:
            logger.info("memory %s is too small, using default: 512", value)
            return 512
        return value

    @field_validator("cores", "sockets")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        return max(value, 1)

    @field_validator("vm_id")
    @classmethod
    def _vm_id(cls, value: int) -> int:
        if value != 0 and not VM_ID_MIN <= value <= VM_ID_MAX:
            raise ValueError(f"vm_id must be in range {VM_ID_MIN}-{VM_ID_MAX}")
        return value

    @field_validator("vm_name")
    @classmethod
    def _vm_name(cls, value: str) -> str:
        if not DNS_NAME.match(value):
            raise ValueError("vm_name must be a valid DNS name")
        return value

    @field_validator("template_name")
    @classmethod
    def _template_name(cls, value: str | None) -> str | None:
        if value and not DNS_NAME.match(value):
            raise ValueError("template_name must be a valid DNS name")
        return value

    @field_validator("serials")
    @classmethod
    def _serials(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if len(value) > 4:
            raise ValueError(
                f"too many serials: {len(value)} serials defined, but proxmox accepts 4 elements maximum"
            )
        for serial in value:
            if not SERIAL.match(serial):
                raise ValueError(f'serials must respond to pattern "/dev/.+" or be "socket". It was "{serial}"')
        return value

    @field_validator("cloud_init_disk_type")
    @classmethod
    def _cloud_init_disk_type(cls, value: BusFamily) -> BusFamily:
        if value not in ISO_BUSES:
            raise ValueError(
                f"invalid value for cloud_init_disk_type {value.value!r}: only one of 'ide', 'scsi', 'sata' is valid"
            )
        return value

    @model_validator(mode="after")
    def _check(self) -> "BuildSpec":
        if self.ballooning_minimum > self.memory:
            raise ValueError(
                f"ballooning_minimum ({self.ballooning_minimum}) must be lower than memory ({self.memory})"
            )
        if (self.boot_iso is None) == (self.clone is None):
            raise ValueError("exactly one of boot_iso or clone must be specified")
        for disk in self.disks:
            if disk.io_thread:
                if self.scsi_controller != "virtio-scsi-single":
                    raise ValueError("io thread option requires virtio-scsi-single controller")
                if disk.bus not in {BusFamily.SCSI, BusFamily.VIRTIO}:
                    raise ValueError("io thread option requires scsi or a virtio disk")
        return self

    @property
    def flavor(self) -> str:
        return "clone" if self.clone is not None else "iso"

    def all_isos(self) -> tuple[ISOSpec, ...]:
        if self.boot_iso is None:
            return self.isos
        return (self.boot_iso, *self.isos)

    def final_name(self) -> str:
        return self.template_name or self.vm_name
