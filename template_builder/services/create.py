import logging

from template_builder.clients.pve import VmNotFound, is_duplicate_id_error
from template_builder.models import BuildPhase, VmRef
from template_builder.services.allocation import allocate
from template_builder.services.creators import VMCreator
from template_builder.services.runner import BuildState, Step, StepAction


logger = logging.getLogger(__name__)

MAX_DUPLICATE_ID_ATTEMPTS = 3


def find_existing_template(state: BuildState) -> VmRef | None:
    spec = state.spec
    client = state.client
    if spec.vm_id:
        try:
            vm_ref = client.check_vm_ref(spec.vm_id)
        except VmNotFound:
            return None
    else:
        name = spec.final_name()
        matches = client.vm_refs_by_name(name)
        if not matches:
            return None
        if len(matches) > 1:
            ids = [match.vm_id for match in matches]
            raise RuntimeError(f"found multiple VMs with name '{name}', IDs: {ids}")
        vm_ref = matches[0]
    config = client.get_vm_config(vm_ref)
    if not config.get("template"):
        raise RuntimeError(
            f"found matching VM (ID: {vm_ref.vm_id}, name: {config.get('name')}), but it is not a template"
        )
    return vm_ref


def create_with_retry(
    state: BuildState, creator: VMCreator, max_attempts: int = MAX_DUPLICATE_ID_ATTEMPTS
) -> VmRef:
    spec = state.spec
    explicit = spec.vm_id != 0
    attempts = 1 if explicit else max_attempts
    attempt = 1
    while True:
        vm_id = spec.vm_id if explicit else state.client.next_id()
        vm_ref = VmRef(vm_id, spec.node, spec.pool)
        try:
            creator.create(vm_ref, state)
            return vm_ref
        except Exception as exc:
            if is_duplicate_id_error(exc):
                # The id belongs to someone else's VM, never clean it up.
                state.vm_ref = None
            if explicit or attempt == attempts or not is_duplicate_id_error(exc):
                raise
            logger.warning(
                "[%s] vm id %s was taken concurrently, retrying attempt=%s",
                spec.name,
                vm_id,
                attempt + 1,
            )
        attempt += 1


class StepCreateVM(Step):
    name = "create_vm"
    phase = BuildPhase.CREATED

    def __init__(self, creator: VMCreator):
        self.creator = creator

    def run(self, state: BuildState) -> StepAction:
        spec = state.spec
        allocation = allocate(spec.disks, spec.all_isos(), state.occupied)
        for warning in allocation.warnings:
            state.warn(warning)
        state.device_map = allocation.device_map

        if spec.replace_existing:
            existing = find_existing_template(state)
            if existing is None:
                logger.info("[%s] no existing artifact found", spec.name)
            else:
                logger.info("[%s] deleting existing template %s", spec.name, existing)
                state.client.delete_vm(existing)

        state.vm_ref = create_with_retry(state, self.creator)
        logger.info("[%s] created vm %s", spec.name, state.vm_ref)
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        vm_ref = state.vm_ref
        if vm_ref is None or state.success:
            return
        if state.artifact_id is not None:
            logger.info("[%s] vm %s is already the build artifact, leaving it", state.spec.name, vm_ref)
            return
        logger.info("[%s] stopping vm %s", state.spec.name, vm_ref)
        try:
            state.client.stop_vm(vm_ref)
        except Exception as exc:  # noqa: BLE001
            state.cleanup_errors.append(f"Error stopping VM {vm_ref}. Please stop and delete it manually: {exc}")
            logger.error("[%s] %s", state.spec.name, state.cleanup_errors[-1])
            return
        logger.info("[%s] deleting vm %s", state.spec.name, vm_ref)
        try:
            state.client.delete_vm(vm_ref)
        except Exception as exc:  # noqa: BLE001
            state.cleanup_errors.append(f"Error deleting VM {vm_ref}. Please delete it manually: {exc}")
            logger.error("[%s] %s", state.spec.name, state.cleanup_errors[-1])
