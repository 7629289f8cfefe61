from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType

from template_builder.models import BUS_CAPACITY, ISO_BUSES, BusFamily, Slot
from template_builder.schemas import DiskSpec, ISOSpec


class AllocationError(RuntimeError):
    def __init__(self, errors: Sequence[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


@dataclass(frozen=True)
class DiskAssignment:
    position: int
    disk: DiskSpec


@dataclass(frozen=True)
class CdromAssignment:
    position: int
    iso: ISOSpec


@dataclass(frozen=True)
class DeviceMap:
    devices: Mapping[Slot, DiskAssignment | CdromAssignment]
    disk_slots: tuple[Slot, ...]
    iso_slots: tuple[Slot, ...]

    def __getitem__(self, slot: Slot) -> DiskAssignment | CdromAssignment:
        return self.devices[slot]

    def __contains__(self, slot: object) -> bool:
        return slot in self.devices

    def __len__(self) -> int:
        return len(self.devices)

    def items(self):
        return sorted(self.devices.items())

    def boot_disk_slot(self) -> Slot | None:
        return self.disk_slots[0] if self.disk_slots else None


@dataclass(frozen=True)
class Allocation:
    device_map: DeviceMap
    warnings: tuple[str, ...] = field(default_factory=tuple)


def _first_free(bus: BusFamily, taken: frozenset[Slot]) -> Slot | None:
    for index in range(BUS_CAPACITY[bus]):
        slot = Slot(bus, index)
        if slot not in taken:
            return slot
    return None


def _overflow(bus: BusFamily, what: str) -> str:
    capacity = BUS_CAPACITY[bus]
    return (
        f"too many {bus.value} devices: no free slot for {what}, "
        f"{bus.value}{capacity} is beyond {bus.value}0-{bus.value}{capacity - 1}"
    )


def allocate(
    disks: Sequence[DiskSpec],
    isos: Sequence[ISOSpec],
    occupied: Iterable[Slot] = frozenset(),
) -> Allocation:
    occupied = frozenset(occupied)
    devices: dict[Slot, DiskAssignment | CdromAssignment] = {}
    iso_slots: dict[int, Slot] = {}
    disk_slots: list[Slot] = []
    warnings: list[str] = []
    errors: list[str] = []

    # Static ISOs claim their exact slot before anything else is placed.
    for position, iso in enumerate(isos):
        if iso.index is None:
            continue
        if iso.bus not in ISO_BUSES:
            errors.append(f"malformed slot reference for isos[{position}]: {iso.bus.value} cannot hold an ISO")
            continue
        slot = Slot(iso.bus, iso.index)
        if not slot.in_range():
            errors.append(f"malformed slot reference for isos[{position}]: {slot.label} is out of range")
            continue
        if slot in devices:
            errors.append(f"isos[{position}] and isos[{devices[slot].position}] both request {slot.label}")
            continue
        if slot in occupied:
            warnings.append(f"isos[{position}] overrides existing device at {slot.label}")
        devices[slot] = CdromAssignment(position, iso)
        iso_slots[position] = slot

    for position, disk in enumerate(disks):
        slot = _first_free(disk.bus, occupied.union(devices))
        if slot is None:
            errors.append(_overflow(disk.bus, f"disks[{position}]"))
            continue
        devices[slot] = DiskAssignment(position, disk)
        disk_slots.append(slot)

    for position, iso in enumerate(isos):
        if iso.index is not None:
            continue
        if iso.bus not in ISO_BUSES:
            errors.append(f"malformed slot reference for isos[{position}]: {iso.bus.value} cannot hold an ISO")
            continue
        slot = _first_free(iso.bus, occupied.union(devices))
        if slot is None:
            errors.append(_overflow(iso.bus, f"isos[{position}]"))
            continue
        devices[slot] = CdromAssignment(position, iso)
        iso_slots[position] = slot

    if errors:
        raise AllocationError(errors)
    device_map = DeviceMap(
        devices=MappingProxyType(devices),
        disk_slots=tuple(disk_slots),
        iso_slots=tuple(iso_slots[position] for position in range(len(isos))),
    )
    return Allocation(device_map=device_map, warnings=tuple(warnings))
