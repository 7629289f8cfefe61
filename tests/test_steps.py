import threading

import pytest

from template_builder.clients.pve import OperationCancelled
from template_builder.models import ArtifactType
from template_builder.services.create import StepCreateVM
from template_builder.services.creators import IsoVMCreator
from template_builder.services.runner import BuildState, StepAction
from template_builder.services.steps import (
    StepBootWait,
    StepConvertToTemplate,
    StepFinalizeConfig,
    StepProvision,
    StepRemoveCloudInitDrive,
)


def created_state(spec, client, cancel_event=None) -> BuildState:
    state = BuildState(spec=spec, client=client, cancel_event=cancel_event or threading.Event())
    StepCreateVM(IsoVMCreator()).run(state)
    client.calls.clear()
    return state


def last_config_change(client):
    changes = [call for call in client.calls if call[0] == "set_vm_config"]
    assert changes
    _name, _vm_id, values, delete = changes[-1]
    return values, delete


class RecordingHook:
    def __init__(self, error=None):
        self.hosts = []
        self.error = error

    def run(self, host, state):
        self.hosts.append(host)
        if self.error is not None:
            raise self.error


def test_convert_shuts_down_then_templates(make_spec, fake_client):
    state = created_state(make_spec(), fake_client)
    assert StepConvertToTemplate().run(state) == StepAction.CONTINUE
    assert fake_client.names() == ["shutdown_vm", "create_template"]
    assert state.artifact_type == ArtifactType.TEMPLATE
    assert state.artifact_id == 100


def test_convert_skipped_keeps_vm(make_spec, fake_client):
    state = created_state(make_spec(skip_convert_to_template=True), fake_client)
    StepConvertToTemplate().run(state)
    assert fake_client.calls == []
    assert state.artifact_type == ArtifactType.VM
    assert state.artifact_id == 100


def test_convert_reports_shutdown_failure(make_spec, fake_client):
    state = created_state(make_spec(), fake_client)
    fake_client.failures["shutdown_vm"] = RuntimeError("guest agent not running")
    with pytest.raises(RuntimeError, match="could not stop"):
        StepConvertToTemplate().run(state)
    assert "create_template" not in fake_client.names()
    assert state.artifact_id is None


def test_finalize_renames_and_ejects_boot_iso(make_spec, fake_client):
    state = created_state(make_spec(template_description="base image"), fake_client)
    assert StepFinalizeConfig().run(state) == StepAction.CONTINUE
    values, delete = last_config_change(fake_client)
    assert values["name"] == "debian-12"
    assert values["description"] == "base image"
    assert delete == ["ide0"]
    assert "ide0" not in fake_client.configs[100]


def test_finalize_keeps_empty_cdrom_drive(make_spec, fake_client):
    spec = make_spec(
        boot_iso={"iso_file": "local:iso/debian-12.iso", "unmount": True, "keep_cdrom_device": True}
    )
    state = created_state(spec, fake_client)
    StepFinalizeConfig().run(state)
    values, delete = last_config_change(fake_client)
    assert values["ide0"] == "none,media=cdrom"
    assert delete == []


def test_finalize_keeps_mounted_iso_pinned(make_spec, fake_client):
    state = created_state(make_spec(boot_iso={"iso_file": "local:iso/debian-12.iso"}), fake_client)
    StepFinalizeConfig().run(state)
    values, _delete = last_config_change(fake_client)
    assert values["ide0"] == "local:iso/debian-12.iso,media=cdrom"


def test_finalize_refuses_to_eject_non_cdrom(make_spec, fake_client):
    state = created_state(make_spec(), fake_client)
    fake_client.configs[100]["ide0"] = "local-lvm:vm-100-disk-3,size=4G"
    assert StepFinalizeConfig().run(state) == StepAction.HALT
    assert "Cannot eject ISO from cdrom drive, ide0" in str(state.error)
    assert "set_vm_config" not in fake_client.names()


def test_finalize_drops_unused_disks(make_spec, fake_client):
    state = created_state(make_spec(), fake_client)
    fake_client.configs[100]["unused0"] = "local-lvm:vm-100-disk-1"
    StepFinalizeConfig().run(state)
    _values, delete = last_config_change(fake_client)
    assert delete == ["ide0", "unused0"]


def test_finalize_adds_cloud_init_drive_next_to_boot_disk(make_spec, fake_client):
    state = created_state(make_spec(cloud_init=True), fake_client)
    StepFinalizeConfig().run(state)
    values, _delete = last_config_change(fake_client)
    assert values["ide1"] == "local-lvm:cloudinit"


def test_finalize_uses_configured_cloud_init_pool(make_spec, fake_client):
    spec = make_spec(cloud_init=True, cloud_init_storage_pool="ceph", cloud_init_disk_type="sata")
    state = created_state(spec, fake_client)
    StepFinalizeConfig().run(state)
    values, _delete = last_config_change(fake_client)
    assert values["sata0"] == "ceph:cloudinit"


def test_finalize_vm_mode_restarts_guest(make_spec, fake_client):
    state = created_state(make_spec(skip_convert_to_template=True), fake_client)
    StepFinalizeConfig().run(state)
    assert fake_client.names() == ["get_vm_config", "shutdown_vm", "set_vm_config", "start_vm"]


def test_remove_cloud_init_drive_and_settings(make_spec, fake_client):
    state = created_state(make_spec(), fake_client)
    fake_client.configs[100].update(
        {
            "ide1": "local-lvm:vm-100-cloudinit,media=cdrom",
            "ciuser": "debian",
            "ipconfig0": "ip=dhcp",
        }
    )
    StepRemoveCloudInitDrive().run(state)
    _values, delete = last_config_change(fake_client)
    assert delete == ["ide1", "ciuser", "ipconfig0"]


def test_remove_cloud_init_is_noop_without_drive(make_spec, fake_client):
    state = created_state(make_spec(), fake_client)
    StepRemoveCloudInitDrive().run(state)
    assert fake_client.names() == ["get_vm_config"]


def test_provision_passes_host_to_hook(make_spec, fake_client):
    state = created_state(make_spec(), fake_client)
    state.host = "192.168.1.20"
    state.hook = RecordingHook()
    assert StepProvision().run(state) == StepAction.CONTINUE
    assert state.hook.hosts == ["192.168.1.20"]


def test_provision_without_hook_continues(make_spec, fake_client):
    state = created_state(make_spec(), fake_client)
    assert StepProvision().run(state) == StepAction.CONTINUE


def test_boot_wait_halts_when_cancelled(make_spec, fake_client):
    cancel = threading.Event()
    cancel.set()
    state = created_state(make_spec(boot_wait_sec=30), fake_client, cancel)
    assert StepBootWait().run(state) == StepAction.HALT
    assert isinstance(state.error, OperationCancelled)
