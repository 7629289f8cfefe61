import logging
import re

from template_builder.clients.pve import OperationCancelled
from template_builder.models import BUS_CAPACITY, ArtifactType, BuildPhase, Slot
from template_builder.services.guest import resolver_for, wait_for_host
from template_builder.services.runner import BuildState, Step, StepAction
from template_builder.services.vm_config import (
    cdrom_value,
    is_cdrom,
    storage_devices,
    storage_pool_of,
)


logger = logging.getLogger(__name__)

CLOUD_INIT_PARAMETERS = (
    "cipassword",
    "ciuser",
    "nameserver",
    "searchdomain",
    "sshkeys",
    *(f"ipconfig{index}" for index in range(16)),
)
_UNUSED = re.compile(r"^unused\d+$")


class StepStartVM(Step):
    name = "start_vm"
    phase = BuildPhase.STARTED

    def run(self, state: BuildState) -> StepAction:
        assert state.vm_ref is not None
        logger.info("[%s] starting vm %s", state.spec.name, state.vm_ref)
        state.client.start_vm(state.vm_ref)
        return StepAction.CONTINUE


class StepBootWait(Step):
    name = "boot_wait"

    def run(self, state: BuildState) -> StepAction:
        if state.spec.boot_wait_sec <= 0:
            return StepAction.CONTINUE
        logger.info("[%s] waiting %ss for boot", state.spec.name, state.spec.boot_wait_sec)
        if state.wait(state.spec.boot_wait_sec):
            return state.halt(OperationCancelled("cancelled during boot wait"))
        return StepAction.CONTINUE


class StepWaitForGuest(Step):
    name = "wait_for_guest"

    def __init__(self, timeout_sec: float, poll_interval_sec: float):
        self.timeout_sec = timeout_sec
        self.poll_interval_sec = poll_interval_sec

    def run(self, state: BuildState) -> StepAction:
        state.host = wait_for_host(
            state,
            resolver_for(state),
            timeout_sec=self.timeout_sec,
            poll_interval_sec=self.poll_interval_sec,
        )
        state.generated_data["host"] = state.host
        logger.info("[%s] guest reachable at %s", state.spec.name, state.host)
        return StepAction.CONTINUE


class StepProvision(Step):
    name = "provision"
    phase = BuildPhase.PROVISIONED

    def run(self, state: BuildState) -> StepAction:
        if state.hook is None:
            logger.info("[%s] no provisioning hook configured", state.spec.name)
            return StepAction.CONTINUE
        assert state.host is not None
        state.hook.run(state.host, state)
        return StepAction.CONTINUE


class StepRemoveCloudInitDrive(Step):
    name = "remove_cloud_init_drive"

    def run(self, state: BuildState) -> StepAction:
        assert state.vm_ref is not None
        config = state.client.get_vm_config(state.vm_ref)
        delete = [
            slot.label
            for slot, value in sorted(storage_devices(config).items())
            if "-cloudinit,media=cdrom" in value
        ]
        delete.extend(parameter for parameter in CLOUD_INIT_PARAMETERS if parameter in config)
        if delete:
            logger.info("[%s] removing cloud-init settings %s", state.spec.name, ",".join(delete))
            state.client.set_vm_config(state.vm_ref, {}, delete=delete)
        return StepAction.CONTINUE


class StepConvertToTemplate(Step):
    name = "convert_to_template"

    def run(self, state: BuildState) -> StepAction:
        vm_ref = state.vm_ref
        assert vm_ref is not None
        if state.spec.skip_convert_to_template:
            logger.info("[%s] skip_convert_to_template set, keeping %s as a VM", state.spec.name, vm_ref)
            state.artifact_type = ArtifactType.VM
        else:
            logger.info("[%s] shutting down %s", state.spec.name, vm_ref)
            try:
                state.client.shutdown_vm(vm_ref)
            except OperationCancelled:
                raise
            except Exception as exc:
                raise RuntimeError(f"Error converting VM to template, could not stop: {exc}") from exc
            logger.info("[%s] converting %s to template", state.spec.name, vm_ref)
            state.client.create_template(vm_ref)
            state.artifact_type = ArtifactType.TEMPLATE
        state.artifact_id = vm_ref.vm_id
        return StepAction.CONTINUE


def _cloud_init_pool(state: BuildState, config: dict) -> str | None:
    if state.spec.cloud_init_storage_pool:
        return state.spec.cloud_init_storage_pool
    bootdisk = config.get("bootdisk")
    if bootdisk and config.get(bootdisk):
        return storage_pool_of(str(config[bootdisk]))
    if state.device_map is not None:
        slot = state.device_map.boot_disk_slot()
        if slot is not None and config.get(slot.label):
            return storage_pool_of(str(config[slot.label]))
    return None


class StepFinalizeConfig(Step):
    name = "finalize_config"
    phase = BuildPhase.FINALIZED

    def run(self, state: BuildState) -> StepAction:
        spec = state.spec
        vm_ref = state.vm_ref
        assert vm_ref is not None and state.device_map is not None
        client = state.client
        config = client.get_vm_config(vm_ref)

        changes: dict[str, str] = {
            "name": spec.final_name(),
            "description": spec.template_description or "",
        }
        if spec.tags:
            changes["tags"] = ";".join(spec.tags)
        delete: list[str] = []

        if spec.cloud_init:
            pool = _cloud_init_pool(state, config)
            if not pool:
                return state.halt(
                    ValueError(
                        "cloud_init is set, but cloud_init_storage_pool is empty and could not be derived from the boot disk"
                    )
                )
            bus = spec.cloud_init_disk_type
            free = [
                Slot(bus, index)
                for index in range(BUS_CAPACITY[bus])
                if Slot(bus, index).label not in config
            ]
            if not free:
                return state.halt(
                    RuntimeError(f"Found no free controller of type {bus.value} for a cloud-init cdrom")
                )
            logger.info("[%s] adding cloud-init cdrom at %s in %s", spec.name, free[0].label, pool)
            changes[free[0].label] = f"{pool}:cloudinit"

        for position, iso in enumerate(spec.all_isos()):
            slot = state.device_map.iso_slots[position]
            if iso.unmount:
                current = config.get(slot.label)
                if current is None or not is_cdrom(str(current)):
                    return state.halt(
                        RuntimeError(
                            f"Cannot eject ISO from cdrom drive, {slot.label} is not present or not a cdrom media"
                        )
                    )
                if iso.keep_cdrom_device:
                    changes[slot.label] = "none,media=cdrom"
                else:
                    delete.append(slot.label)
            elif position in state.iso_files:
                changes[slot.label] = cdrom_value(state.iso_files[position])

        delete.extend(sorted(key for key in config if _UNUSED.match(key)))

        vm_mode = spec.skip_convert_to_template
        if vm_mode:
            logger.info("[%s] hardware changes pending, shutting down %s", spec.name, vm_ref)
            client.shutdown_vm(vm_ref)
        client.set_vm_config(vm_ref, changes, delete=delete)
        if vm_mode:
            logger.info("[%s] resuming %s", spec.name, vm_ref)
            client.start_vm(vm_ref)
        return StepAction.CONTINUE


class StepSuccess(Step):
    name = "success"
    phase = BuildPhase.SUCCEEDED

    def run(self, state: BuildState) -> StepAction:
        state.success = True
        return StepAction.CONTINUE
