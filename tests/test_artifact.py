from template_builder.artifact import Artifact
from template_builder.models import ArtifactType, VmRef


def test_artifact_describes_template(fake_client):
    artifact = Artifact(
        builder_id="proxmox.iso",
        vm_ref=VmRef(105, "pve"),
        artifact_type=ArtifactType.TEMPLATE,
        client=fake_client,
        state_data={"host": "10.0.0.50", "vm_id": 105},
    )
    assert artifact.id == "105"
    assert artifact.files() == []
    assert artifact.state("host") == "10.0.0.50"
    assert artifact.state("missing") is None
    assert str(artifact) == "A template was created: 105"
    assert "proxmox.iso" in repr(artifact)


def test_artifact_destroy_deletes_vm(fake_client):
    fake_client.configs[105] = {"name": "debian-12"}
    artifact = Artifact(
        builder_id="proxmox.clone",
        vm_ref=VmRef(105, "pve"),
        artifact_type=ArtifactType.VM,
        client=fake_client,
    )
    assert str(artifact) == "A VM was created: 105"
    artifact.destroy()
    assert ("delete_vm", 105) in fake_client.calls
    assert 105 not in fake_client.configs
