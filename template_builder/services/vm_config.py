import re
from decimal import Decimal
from typing import Any

from template_builder.models import Slot
from template_builder.schemas import BuildSpec, DiskSpec, EFISpec, NICSpec
from template_builder.services.allocation import CdromAssignment, DeviceMap, DiskAssignment


EPHEMERAL_DESCRIPTION = "template builder ephemeral build VM"

SIZE_FACTORS_KIB = {"T": 1073741824, "G": 1048576, "M": 1024, "K": 1}
_STORAGE_KEY = re.compile(r"^(ide|sata|scsi|virtio)\d+$")


def size_to_kib(size: str) -> int:
    return int(size[:-1]) * SIZE_FACTORS_KIB[size[-1]]


def size_to_gib(size: str) -> str:
    gib = Decimal(size_to_kib(size)) / Decimal(SIZE_FACTORS_KIB["G"])
    return format(gib.normalize(), "f")


def _flag(value: bool) -> str:
    return "1" if value else "0"


def disk_value(disk: DiskSpec) -> str:
    options = [
        f"{disk.storage_pool}:{size_to_gib(disk.size)}",
        f"format={disk.format}",
        f"cache={disk.cache_mode}",
        f"aio={disk.asyncio}",
    ]
    if disk.discard:
        options.append("discard=on")
    if disk.ssd:
        options.append("ssd=1")
    if disk.io_thread:
        options.append("iothread=1")
    if disk.exclude_from_backup:
        options.append("backup=0")
    if disk.skip_replication:
        options.append("replicate=0")
    return ",".join(options)


def cdrom_value(iso_file: str) -> str:
    return f"{iso_file},media=cdrom"


def nic_value(nic: NICSpec) -> str:
    model = nic.model if not nic.mac_address else f"{nic.model}={nic.mac_address}"
    options = [model, f"bridge={nic.bridge}", f"firewall={_flag(nic.firewall)}"]
    if nic.vlan_tag is not None:
        options.append(f"tag={nic.vlan_tag}")
    if nic.packet_queues:
        options.append(f"queues={nic.packet_queues}")
    if nic.mtu:
        options.append(f"mtu={nic.mtu}")
    return ",".join(options)


def is_cdrom(value: str) -> bool:
    return "media=cdrom" in value


def storage_pool_of(value: str) -> str | None:
    volume = value.split(",", 1)[0]
    if ":" not in volume:
        return None
    return volume.split(":", 1)[0]


def storage_devices(config: dict[str, Any]) -> dict[Slot, str]:
    return {
        Slot.parse(key): str(value)
        for key, value in config.items()
        if _STORAGE_KEY.match(key)
    }


def hardware_params(spec: BuildSpec) -> dict[str, Any]:
    params: dict[str, Any] = {
        "name": spec.vm_name,
        "description": EPHEMERAL_DESCRIPTION,
        "memory": spec.memory,
        "cores": spec.cores,
        "sockets": spec.sockets,
        "cpu": spec.cpu_type,
        "ostype": spec.os,
        "numa": _flag(spec.numa),
        "scsihw": spec.scsi_controller,
        "onboot": _flag(spec.onboot),
        "kvm": _flag(not spec.disable_kvm),
        "agent": _flag(spec.qemu_agent),
    }
    if spec.ballooning_minimum:
        params["balloon"] = spec.ballooning_minimum
    if spec.tags:
        params["tags"] = ";".join(spec.tags)
    if spec.bios:
        params["bios"] = spec.bios
    if spec.machine:
        params["machine"] = spec.machine
    if spec.boot:
        params["boot"] = spec.boot
    if spec.additional_args:
        params["args"] = spec.additional_args
    if spec.efi is not None:
        params["efidisk0"] = efi_value(spec.efi)
    if spec.tpm is not None:
        params["tpmstate0"] = f"{spec.tpm.storage_pool}:1,version={spec.tpm.version}"
    if spec.rng0 is not None:
        rng = [f"source={spec.rng0.source}"]
        if spec.rng0.max_bytes:
            rng.append(f"max_bytes={spec.rng0.max_bytes}")
        if spec.rng0.period:
            rng.append(f"period={spec.rng0.period}")
        params["rng0"] = ",".join(rng)
    if spec.vga is not None and (spec.vga.type or spec.vga.memory):
        vga = []
        if spec.vga.type:
            vga.append(f"type={spec.vga.type}")
        if spec.vga.memory:
            vga.append(f"memory={spec.vga.memory}")
        params["vga"] = ",".join(vga)
    for index, serial in enumerate(spec.serials):
        params[f"serial{index}"] = serial
    for index, nic in enumerate(spec.nics):
        params[f"net{index}"] = nic_value(nic)
    return params


def efi_value(efi: EFISpec) -> str:
    value = f"{efi.storage_pool}:1,efitype={efi.efi_type}"
    if efi.pre_enrolled_keys:
        value += ",pre-enrolled-keys=1"
    return value


def device_params(device_map: DeviceMap, iso_files: dict[int, str]) -> dict[str, str]:
    params: dict[str, str] = {}
    for slot, assignment in device_map.items():
        if isinstance(assignment, DiskAssignment):
            params[slot.label] = disk_value(assignment.disk)
        elif isinstance(assignment, CdromAssignment):
            iso_file = iso_files.get(assignment.position)
            if not iso_file:
                raise ValueError(f"isos[{assignment.position}] has no storage path for {slot.label}")
            params[slot.label] = cdrom_value(iso_file)
    return params


def build_vm_params(
    spec: BuildSpec, device_map: DeviceMap, iso_files: dict[int, str], vm_id: int
) -> dict[str, Any]:
    params = {"vmid": vm_id, **hardware_params(spec), **device_params(device_map, iso_files)}
    if spec.pool:
        params["pool"] = spec.pool
    return params
