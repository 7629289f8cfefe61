import logging
from typing import Protocol

from template_builder.models import VmRef
from template_builder.services.runner import BuildState, Step, StepAction
from template_builder.services.vm_config import (
    build_vm_params,
    device_params,
    hardware_params,
    is_cdrom,
    storage_devices,
)


logger = logging.getLogger(__name__)


class VMCreator(Protocol):
    builder_id: str

    def create(self, vm_ref: VmRef, state: BuildState) -> None: ...


def _accepted(state: BuildState, vm_ref: VmRef, upid: str | None, node: str) -> None:
    # From here on the VM exists remotely, cleanup must be able to find it.
    state.vm_ref = vm_ref
    if upid:
        state.client.wait_for_task(upid, node=node)


class IsoVMCreator:
    builder_id = "proxmox.iso"

    def create(self, vm_ref: VmRef, state: BuildState) -> None:
        assert state.device_map is not None
        params = build_vm_params(state.spec, state.device_map, state.iso_files, vm_ref.vm_id)
        logger.info("[%s] creating vm %s", state.spec.name, vm_ref)
        upid = state.client.create_vm(vm_ref.node, params)
        _accepted(state, vm_ref, upid, vm_ref.node)


class CloneVMCreator:
    builder_id = "proxmox.clone"

    def create(self, vm_ref: VmRef, state: BuildState) -> None:
        spec = state.spec
        clone = spec.clone
        assert clone is not None and state.clone_source is not None and state.device_map is not None
        logger.info(
            "[%s] cloning %s into %s full=%s", spec.name, state.clone_source, vm_ref, clone.full_clone
        )
        upid = state.client.clone_vm(
            state.clone_source,
            vm_ref.vm_id,
            name=spec.vm_name,
            target_node=vm_ref.node,
            full=clone.full_clone,
            pool=spec.pool,
        )
        _accepted(state, vm_ref, upid, state.clone_source.node)

        changes = {**hardware_params(spec), **device_params(state.device_map, state.iso_files)}
        if clone.cloud_init_user:
            changes["ciuser"] = clone.cloud_init_user
        if clone.nameserver:
            changes["nameserver"] = clone.nameserver
        if clone.searchdomain:
            changes["searchdomain"] = clone.searchdomain
        for index, ipconfig in enumerate(clone.ipconfigs):
            rendered = ipconfig.render()
            if rendered:
                changes[f"ipconfig{index}"] = rendered
        state.client.set_vm_config(vm_ref, changes)


class StepMapSourceDisks(Step):
    name = "map_source_disks"

    def run(self, state: BuildState) -> StepAction:
        spec = state.spec
        clone = spec.clone
        assert clone is not None
        client = state.client
        if clone.clone_vm:
            candidates = client.vm_refs_by_name(clone.clone_vm)
            if not candidates:
                return state.halt(LookupError(f"Could not retrieve VM: vm '{clone.clone_vm}' not found"))
            source = candidates[0]
            for candidate in candidates:
                if candidate.node == spec.node:
                    source = candidate
        else:
            source = client.check_vm_ref(clone.clone_vm_id)

        config = client.get_vm_config(source)
        occupied = set()
        for slot, value in storage_devices(config).items():
            if not is_cdrom(value):
                logger.debug("disk discovered on source vm at %s", slot.label)
                occupied.add(slot)
        state.clone_source = source
        state.occupied = frozenset(occupied)
        logger.info(
            "[%s] clone source %s occupies %s",
            spec.name,
            source,
            ", ".join(slot.label for slot in sorted(occupied)) or "no slots",
        )
        return StepAction.CONTINUE
