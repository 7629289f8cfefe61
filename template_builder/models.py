import re
from dataclasses import dataclass
from enum import Enum


class BusFamily(str, Enum):
    IDE = "ide"
    SATA = "sata"
    SCSI = "scsi"
    VIRTIO = "virtio"


BUS_CAPACITY: dict[BusFamily, int] = {
    BusFamily.IDE: 4,
    BusFamily.SATA: 6,
    BusFamily.SCSI: 31,
    BusFamily.VIRTIO: 16,
}

ISO_BUSES = frozenset({BusFamily.IDE, BusFamily.SATA, BusFamily.SCSI})

_SLOT_LABEL = re.compile(r"^(ide|sata|scsi|virtio)(\d+)$")


class BuildPhase(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    CREATED = "CREATED"
    STARTED = "STARTED"
    PROVISIONED = "PROVISIONED"
    FINALIZED = "FINALIZED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ArtifactType(str, Enum):
    TEMPLATE = "template"
    VM = "VM"


@dataclass(frozen=True, order=True)
class Slot:
    bus: BusFamily
    index: int

    @property
    def label(self) -> str:
        return f"{self.bus.value}{self.index}"

    @classmethod
    def parse(cls, label: str) -> "Slot":
        match = _SLOT_LABEL.match(label)
        if not match:
            raise ValueError(f"malformed slot reference: {label!r}")
        return cls(BusFamily(match.group(1)), int(match.group(2)))

    def in_range(self) -> bool:
        return 0 <= self.index < BUS_CAPACITY[self.bus]

    def __str__(self) -> str:
        return self.label


@dataclass(frozen=True)
class VmRef:
    vm_id: int
    node: str
    pool: str | None = None

    def __str__(self) -> str:
        return f"{self.node}/{self.vm_id}"
