from pathlib import Path
from typing import Any

import pytest

from template_builder.clients.pve import VmNotFound
from template_builder.config import BuilderSettings
from template_builder.models import VmRef
from template_builder.schemas import BuildSpec


GUEST_INTERFACES = [
    {"name": "lo", "ip-addresses": [{"ip-address": "127.0.0.1", "ip-address-type": "ipv4"}]},
    {
        "name": "eth0",
        "ip-addresses": [
            {"ip-address": "fe80::1", "ip-address-type": "ipv6"},
            {"ip-address": "192.168.1.20", "ip-address-type": "ipv4"},
        ],
    },
]


class FakeClient:
    def __init__(self):
        self.calls: list[tuple] = []
        self.ids = iter(range(100, 10000))
        self.duplicate_failures = 0
        self.configs: dict[int, dict[str, Any]] = {}
        self.nodes: dict[int, str] = {}
        self.failures: dict[str, Exception] = {}
        self.interfaces: list[dict] = GUEST_INTERFACES
        self.task_errors: list[Exception] = []
        self.tags: dict[int, str] = {}

    def _call(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        if name in self.failures:
            raise self.failures[name]

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def count(self, name: str) -> int:
        return self.names().count(name)

    def next_id(self) -> int:
        self._call("next_id")
        return next(self.ids)

    def vm_refs_by_name(self, name: str) -> list[VmRef]:
        self._call("vm_refs_by_name", name)
        return [
            VmRef(vm_id, self.nodes.get(vm_id, "pve"))
            for vm_id, config in sorted(self.configs.items())
            if config.get("name") == name
        ]

    def check_vm_ref(self, vm_ref: VmRef | int) -> VmRef:
        vm_id = vm_ref.vm_id if isinstance(vm_ref, VmRef) else vm_ref
        self._call("check_vm_ref", vm_id)
        if vm_id not in self.configs:
            raise VmNotFound(f"vm '{vm_id}' not found")
        return VmRef(vm_id, self.nodes.get(vm_id, "pve"))

    def get_vm_config(self, vm_ref: VmRef) -> dict[str, Any]:
        self._call("get_vm_config", vm_ref.vm_id)
        return dict(self.configs.get(vm_ref.vm_id, {}))

    def set_vm_config(self, vm_ref: VmRef, changes: dict[str, Any], delete: list[str] | None = None) -> None:
        self._call("set_vm_config", vm_ref.vm_id, dict(changes), list(delete or []))
        config = self.configs.setdefault(vm_ref.vm_id, {})
        for key in delete or []:
            config.pop(key, None)
        config.update(changes)

    def list_vms(self) -> list[dict]:
        self._call("list_vms")
        return [
            {
                "vmid": vm_id,
                "name": config.get("name"),
                "node": self.nodes.get(vm_id, "pve"),
                "type": "qemu",
                "template": int(config.get("template", 0)),
                **({"tags": self.tags[vm_id]} if vm_id in self.tags else {}),
            }
            for vm_id, config in sorted(self.configs.items())
        ]

    def wait_for_task(self, upid: str, *, node: str = "") -> None:
        self._call("wait_for_task", upid)
        if self.task_errors:
            raise self.task_errors.pop(0)

    def create_vm(self, node: str, params: dict[str, Any]) -> str:
        self._call("create_vm", node, dict(params))
        vm_id = params["vmid"]
        if self.duplicate_failures > 0:
            self.duplicate_failures -= 1
            raise RuntimeError(f"unable to create VM {vm_id} - VM {vm_id} already exists on node '{node}'")
        self.configs[vm_id] = {key: value for key, value in params.items() if key != "vmid"}
        self.nodes[vm_id] = node
        return f"UPID:{node}:qmcreate:{vm_id}"

    def clone_vm(self, source: VmRef, new_id: int, **kwargs: Any) -> str:
        self._call("clone_vm", source.vm_id, new_id, kwargs)
        if self.duplicate_failures > 0:
            self.duplicate_failures -= 1
            raise RuntimeError(f"unable to create VM {new_id} - VM {new_id} already exists on node 'pve'")
        config = {k: v for k, v in self.configs.get(source.vm_id, {}).items() if k != "template"}
        config["name"] = kwargs.get("name")
        self.configs[new_id] = config
        self.nodes[new_id] = kwargs.get("target_node", "pve")
        return f"UPID:{source.node}:qmclone:{source.vm_id}"

    def start_vm(self, vm_ref: VmRef) -> None:
        self._call("start_vm", vm_ref.vm_id)

    def stop_vm(self, vm_ref: VmRef) -> None:
        self._call("stop_vm", vm_ref.vm_id)

    def shutdown_vm(self, vm_ref: VmRef) -> None:
        self._call("shutdown_vm", vm_ref.vm_id)

    def delete_vm(self, vm_ref: VmRef) -> None:
        self._call("delete_vm", vm_ref.vm_id)
        self.configs.pop(vm_ref.vm_id, None)

    def create_template(self, vm_ref: VmRef) -> None:
        self._call("create_template", vm_ref.vm_id)
        self.configs.setdefault(vm_ref.vm_id, {})["template"] = 1

    def agent_network_interfaces(self, vm_ref: VmRef) -> list[dict]:
        self._call("agent_network_interfaces", vm_ref.vm_id)
        return self.interfaces

    def upload_iso(self, node: str, storage: str, path: str | Path) -> str:
        self._call("upload_iso", node, storage, Path(path).name)
        return f"{storage}:iso/{Path(path).name}"

    def download_iso_from_url(self, node: str, storage: str, **kwargs: Any) -> str:
        self._call("download_iso_from_url", node, storage, kwargs)
        return f"{storage}:iso/{kwargs['filename']}"

    def delete_volume(self, node: str, storage: str, volume: str) -> None:
        self._call("delete_volume", node, storage, volume)


@pytest.fixture
def fake_client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def make_spec():
    def _make(**overrides: Any) -> BuildSpec:
        document: dict[str, Any] = {
            "name": "debian",
            "node": "pve",
            "vm_name": "debian-build",
            "template_name": "debian-12",
            "boot_iso": {"iso_file": "local:iso/debian-12.iso", "unmount": True},
            "disks": [{"storage_pool": "local-lvm", "size": "10G"}],
            "nics": [{"bridge": "vmbr0", "model": "virtio"}],
        }
        document.update(overrides)
        return BuildSpec.model_validate(document)

    return _make


@pytest.fixture
def settings(tmp_path) -> BuilderSettings:
    return BuilderSettings(
        url="https://pve.test:8006/api2/json",
        username="root@pam!ci",
        token="secret",
        task_poll_interval_sec=0,
        retry_sleep_sec=0,
        ip_poll_interval_sec=0,
        ip_wait_timeout_sec=0.05,
        download_dir=str(tmp_path / "downloads"),
    )
