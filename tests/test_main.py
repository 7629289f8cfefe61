import json

import pytest

from template_builder import main as cli
from template_builder.artifact import Artifact
from template_builder.builder import BuildOutcome
from template_builder.config import get_settings
from template_builder.models import ArtifactType, VmRef
from template_builder.services.provision import LocalCommandHook


BUILD = {
    "node": "pve",
    "vm_name": "debian-build",
    "boot_iso": {"iso_file": "local:iso/debian-12.iso"},
    "disks": [{"storage_pool": "local-lvm"}],
    "provision": [["ansible-playbook", "site.yml"]],
}


@pytest.fixture
def env(monkeypatch):
    monkeypatch.setenv("PROXMOX_URL", "https://pve.test:8006/api2/json")
    monkeypatch.setenv("PROXMOX_USERNAME", "root@pam!ci")
    monkeypatch.setenv("PROXMOX_TOKEN", "secret")
    monkeypatch.setattr(cli.signal, "signal", lambda *args: None)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def write_build(tmp_path, name="debian.json", document=None):
    path = tmp_path / name
    path.write_text(json.dumps(document or BUILD))
    return path


def test_load_build_file(tmp_path):
    spec, hook = cli.load_build_file(write_build(tmp_path))
    assert spec.name == "debian"
    assert spec.vm_name == "debian-build"
    assert isinstance(hook, LocalCommandHook)
    assert hook.commands == [["ansible-playbook", "site.yml"]]


def test_main_without_arguments_is_usage_error(env):
    assert cli.main([]) == 2


def test_main_reports_outcomes(env, tmp_path, monkeypatch, capsys):
    captured = {}

    def fake_run_builds(specs, **kwargs):
        captured["specs"] = specs
        captured["hook"] = kwargs["hook_factory"](specs[0])
        artifact = Artifact(
            builder_id="proxmox.iso",
            vm_ref=VmRef(100, "pve"),
            artifact_type=ArtifactType.TEMPLATE,
            client=None,
        )
        return [BuildOutcome(name="debian", artifact=artifact), BuildOutcome(name="other", error=RuntimeError("boom"))]

    monkeypatch.setattr(cli, "run_builds", fake_run_builds)
    exit_code = cli.main([str(write_build(tmp_path)), str(write_build(tmp_path, "other.json"))])
    out, err = capsys.readouterr()
    assert exit_code == 1
    assert [spec.name for spec in captured["specs"]] == ["debian", "other"]
    assert isinstance(captured["hook"], LocalCommandHook)
    assert "debian: A template was created: 100" in out
    assert "other: failed: boom" in err


def test_main_rejects_duplicate_build_names(env, tmp_path, monkeypatch):
    monkeypatch.setattr(cli, "run_builds", lambda *args, **kwargs: pytest.fail("builds must not start"))
    other = {**BUILD, "name": "debian", "provision": [["true"]]}
    paths = [write_build(tmp_path), write_build(tmp_path, "other.json", other)]
    assert cli.main([str(path) for path in paths]) == 2
