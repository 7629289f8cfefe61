import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from template_builder.models import ArtifactType, BuildPhase, Slot, VmRef
from template_builder.schemas import BuildSpec
from template_builder.services.allocation import DeviceMap
from template_builder.state_machine import TERMINAL_PHASES, can_transition

if TYPE_CHECKING:
    from template_builder.services.provision import ProvisionHook


logger = logging.getLogger(__name__)


class StepAction(str, Enum):
    CONTINUE = "CONTINUE"
    HALT = "HALT"


class ControlPlane(Protocol):
    def next_id(self) -> int: ...

    def list_vms(self) -> list[dict]: ...

    def vm_refs_by_name(self, name: str) -> list[VmRef]: ...

    def check_vm_ref(self, vm_ref: VmRef | int) -> VmRef: ...

    def get_vm_config(self, vm_ref: VmRef) -> dict[str, Any]: ...

    def set_vm_config(
        self, vm_ref: VmRef, changes: dict[str, Any], delete: list[str] | None = None
    ) -> None: ...

    def wait_for_task(self, upid: str, *, node: str = "") -> None: ...

    def create_vm(self, node: str, params: dict[str, Any]) -> str | None: ...

    def start_vm(self, vm_ref: VmRef) -> None: ...

    def stop_vm(self, vm_ref: VmRef) -> None: ...

    def shutdown_vm(self, vm_ref: VmRef) -> None: ...

    def delete_vm(self, vm_ref: VmRef) -> None: ...

    def create_template(self, vm_ref: VmRef) -> None: ...

    def agent_network_interfaces(self, vm_ref: VmRef) -> list[dict]: ...

    def clone_vm(
        self,
        source: VmRef,
        new_id: int,
        *,
        name: str,
        target_node: str,
        full: bool = True,
        pool: str | None = None,
    ) -> str | None: ...

    def upload_iso(self, node: str, storage: str, path: str | Path) -> str: ...

    def download_iso_from_url(
        self,
        node: str,
        storage: str,
        *,
        url: str,
        filename: str,
        checksum: str | None = None,
        checksum_algorithm: str | None = None,
    ) -> str: ...

    def delete_volume(self, node: str, storage: str, volume: str) -> None: ...


@dataclass
class BuildState:
    spec: BuildSpec
    client: ControlPlane
    hook: "ProvisionHook | None" = None
    cancel_event: threading.Event = field(default_factory=threading.Event)

    occupied: frozenset[Slot] = frozenset()
    clone_source: VmRef | None = None
    iso_files: dict[int, str] = field(default_factory=dict)
    local_iso_paths: dict[int, str] = field(default_factory=dict)

    device_map: DeviceMap | None = None
    vm_ref: VmRef | None = None
    host: str | None = None
    artifact_id: int | None = None
    artifact_type: ArtifactType | None = None
    generated_data: dict[str, Any] = field(default_factory=dict)

    error: BaseException | None = None
    failed_step: str | None = None
    cancelled: bool = False
    success: bool = False
    phase: BuildPhase = BuildPhase.NOT_STARTED
    warnings: list[str] = field(default_factory=list)
    cleanup_errors: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        for position, iso in enumerate(self.spec.all_isos()):
            if iso.iso_file:
                self.iso_files.setdefault(position, iso.iso_file)

    def halt(self, error: BaseException) -> StepAction:
        self.error = error
        return StepAction.HALT

    def warn(self, message: str) -> None:
        logger.warning("[%s] %s", self.spec.name, message)
        self.warnings.append(message)

    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep for up to ``seconds``; True means the build was cancelled meanwhile."""
        return self.cancel_event.wait(seconds)

    def set_phase(self, target: BuildPhase) -> None:
        if not can_transition(self.phase.value, target.value):
            raise RuntimeError(f"illegal phase transition {self.phase.value} -> {target.value}")
        self.phase = target


class Step:
    name = "step"
    phase: BuildPhase | None = None

    def run(self, state: BuildState) -> StepAction:
        raise NotImplementedError

    def cleanup(self, state: BuildState) -> None:
        return None


class Runner:
    def __init__(self, steps: Sequence[Step]):
        self.steps = list(steps)

    def run(self, state: BuildState) -> None:
        entered: list[Step] = []
        try:
            for step in self.steps:
                if state.is_cancelled():
                    state.cancelled = True
                    break
                entered.append(step)
                logger.info("[%s] running step %s", state.spec.name, step.name)
                try:
                    action = step.run(state)
                except Exception as exc:  # noqa: BLE001
                    action = state.halt(exc)
                if state.is_cancelled() and not state.success:
                    state.cancelled = True
                    break
                if action == StepAction.HALT:
                    if state.error is None:
                        state.error = RuntimeError(f"step {step.name} halted without an error")
                    state.failed_step = step.name
                    logger.error("[%s] step %s failed: %s", state.spec.name, step.name, state.error)
                    break
                if step.phase is not None:
                    state.set_phase(step.phase)
        finally:
            if state.phase.value not in TERMINAL_PHASES:
                if state.cancelled:
                    state.set_phase(BuildPhase.CANCELLED)
                elif state.error is not None:
                    state.set_phase(BuildPhase.FAILED)
            self._cleanup(entered, state)

    def _cleanup(self, entered: list[Step], state: BuildState) -> None:
        for step in reversed(entered):
            try:
                step.cleanup(state)
            except Exception as exc:  # noqa: BLE001
                message = f"cleanup of {step.name} failed: {exc}"
                logger.warning("[%s] %s", state.spec.name, message)
                state.cleanup_errors.append(message)
