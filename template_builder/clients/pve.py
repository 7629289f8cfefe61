import logging
import threading
import time
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx

from template_builder.clients.http import RetryPolicy, request_with_retry
from template_builder.config import BuilderSettings
from template_builder.models import VmRef


logger = logging.getLogger(__name__)

DUPLICATE_ID_MARKER = "already exists on node"


class TaskFailed(RuntimeError):
    def __init__(self, upid: str, exitstatus: str):
        self.upid = upid
        self.exitstatus = exitstatus
        super().__init__(f"task {upid} failed: {exitstatus}")


class TaskTimeout(TimeoutError):
    def __init__(self, upid: str, timeout_sec: float):
        self.upid = upid
        self.timeout_sec = timeout_sec
        super().__init__(f"task {upid} did not finish within {timeout_sec:g}s")


class VmNotFound(LookupError):
    pass


class OperationCancelled(RuntimeError):
    pass


def is_duplicate_id_error(exc: BaseException) -> bool:
    return DUPLICATE_ID_MARKER in str(exc)


def _task_node(upid: str, default: str) -> str:
    parts = upid.split(":")
    return parts[1] if len(parts) > 2 and parts[1] else default


def _task_id(data: Any) -> str | None:
    if isinstance(data, str) and data.startswith("UPID:"):
        return data
    return None


class PveClient:
    def __init__(
        self,
        base_url: str,
        *,
        username: str,
        password: str | None = None,
        token: str | None = None,
        verify_ssl: bool = True,
        task_timeout_sec: float = 60.0,
        task_poll_interval_sec: float = 1.0,
        retry: RetryPolicy | None = None,
        http_client: httpx.Client | None = None,
        cancel_event: threading.Event | None = None,
    ):
        headers = {}
        if token:
            headers["Authorization"] = f"PVEAPIToken={username}={token}"
        if http_client is None:
            http_client = httpx.Client(
                base_url=base_url.rstrip("/"), timeout=30.0, verify=verify_ssl
            )
        http_client.headers.update(headers)
        self.client = http_client
        self.username = username
        self.password = password
        self.token = token
        self.retry = retry or RetryPolicy(attempts=3, sleep_sec=1)
        self.task_timeout_sec = task_timeout_sec
        self.task_poll_interval_sec = task_poll_interval_sec
        self.cancel_event = cancel_event or threading.Event()

    @classmethod
    def from_settings(
        cls,
        settings: BuilderSettings,
        *,
        http_client: httpx.Client | None = None,
        cancel_event: threading.Event | None = None,
    ) -> "PveClient":
        return cls(
            settings.url,
            username=settings.username,
            password=settings.password,
            token=settings.token,
            verify_ssl=not settings.insecure_skip_tls_verify,
            task_timeout_sec=settings.task_timeout_sec,
            task_poll_interval_sec=settings.task_poll_interval_sec,
            retry=RetryPolicy(settings.retry_attempts, settings.retry_sleep_sec),
            http_client=http_client,
            cancel_event=cancel_event,
        )

    def close(self) -> None:
        self.client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = request_with_retry(self.client, method, path, self.retry, **kwargs)
        if not response.content:
            return None
        return response.json().get("data")

    def _wait_if_task(self, data: Any, node: str, *, cancellable: bool = True) -> None:
        upid = _task_id(data)
        if upid:
            self.wait_for_task(upid, node=node, cancellable=cancellable)

    def login(self) -> None:
        if self.token:
            return
        if not self.password:
            raise ValueError("password or token must be specified")
        data = self._request(
            "POST",
            "/access/ticket",
            data={"username": self.username, "password": self.password},
        )
        self.client.cookies.set("PVEAuthCookie", data["ticket"])
        self.client.headers["CSRFPreventionToken"] = data["CSRFPreventionToken"]

    def wait_for_task(self, upid: str, *, node: str = "", cancellable: bool = True) -> None:
        node = _task_node(upid, node)
        deadline = time.monotonic() + self.task_timeout_sec
        while True:
            status = self._request("GET", f"/nodes/{node}/tasks/{quote(upid, safe='')}/status")
            if status.get("status") == "stopped":
                exitstatus = status.get("exitstatus", "")
                if exitstatus != "OK":
                    raise TaskFailed(upid, exitstatus)
                return
            if time.monotonic() >= deadline:
                raise TaskTimeout(upid, self.task_timeout_sec)
            if not cancellable:
                time.sleep(self.task_poll_interval_sec)
            elif self.cancel_event.wait(self.task_poll_interval_sec):
                raise OperationCancelled(f"cancelled while waiting for task {upid}")

    def next_id(self) -> int:
        return int(self._request("GET", "/cluster/nextid"))

    def list_vms(self) -> list[dict]:
        resources = self._request("GET", "/cluster/resources", params={"type": "vm"}) or []
        return [row for row in resources if row.get("type", "qemu") == "qemu"]

    def vm_refs_by_name(self, name: str) -> list[VmRef]:
        return [
            VmRef(int(row["vmid"]), row["node"], row.get("pool"))
            for row in self.list_vms()
            if row.get("name") == name
        ]

    def check_vm_ref(self, vm_ref: VmRef | int) -> VmRef:
        vm_id = vm_ref.vm_id if isinstance(vm_ref, VmRef) else vm_ref
        for row in self.list_vms():
            if int(row["vmid"]) == vm_id:
                return VmRef(vm_id, row["node"], row.get("pool"))
        raise VmNotFound(f"vm '{vm_id}' not found")

    def get_vm_config(self, vm_ref: VmRef) -> dict[str, Any]:
        return self._request("GET", f"/nodes/{vm_ref.node}/qemu/{vm_ref.vm_id}/config") or {}

    def set_vm_config(
        self, vm_ref: VmRef, changes: dict[str, Any], delete: list[str] | None = None
    ) -> None:
        params = dict(changes)
        if delete:
            params["delete"] = ",".join(delete)
        if not params:
            return
        data = self._request("POST", f"/nodes/{vm_ref.node}/qemu/{vm_ref.vm_id}/config", data=params)
        self._wait_if_task(data, vm_ref.node)

    # Create and clone only submit the task and return its UPID. The VM exists
    # once the request is accepted, so callers record it before waiting.
    def create_vm(self, node: str, params: dict[str, Any]) -> str | None:
        return _task_id(self._request("POST", f"/nodes/{node}/qemu", data=params))

    def clone_vm(
        self,
        source: VmRef,
        new_id: int,
        *,
        name: str,
        target_node: str,
        full: bool = True,
        pool: str | None = None,
    ) -> str | None:
        params: dict[str, Any] = {
            "newid": new_id,
            "name": name,
            "target": target_node,
            "full": int(full),
        }
        if pool:
            params["pool"] = pool
        return _task_id(
            self._request("POST", f"/nodes/{source.node}/qemu/{source.vm_id}/clone", data=params)
        )

    def _vm_action(self, vm_ref: VmRef, action: str, *, cancellable: bool = True) -> None:
        data = self._request("POST", f"/nodes/{vm_ref.node}/qemu/{vm_ref.vm_id}/status/{action}")
        self._wait_if_task(data, vm_ref.node, cancellable=cancellable)

    def start_vm(self, vm_ref: VmRef) -> None:
        self._vm_action(vm_ref, "start")

    # Stop, delete and volume removal back the cleanup path, which runs after a
    # cancellation too, so their task waits ignore the cancel event.
    def stop_vm(self, vm_ref: VmRef) -> None:
        self._vm_action(vm_ref, "stop", cancellable=False)

    def shutdown_vm(self, vm_ref: VmRef) -> None:
        self._vm_action(vm_ref, "shutdown")

    def delete_vm(self, vm_ref: VmRef) -> None:
        data = self._request("DELETE", f"/nodes/{vm_ref.node}/qemu/{vm_ref.vm_id}")
        self._wait_if_task(data, vm_ref.node, cancellable=False)

    def create_template(self, vm_ref: VmRef) -> None:
        data = self._request("POST", f"/nodes/{vm_ref.node}/qemu/{vm_ref.vm_id}/template")
        self._wait_if_task(data, vm_ref.node)

    def agent_network_interfaces(self, vm_ref: VmRef) -> list[dict]:
        data = self._request(
            "GET", f"/nodes/{vm_ref.node}/qemu/{vm_ref.vm_id}/agent/network-get-interfaces"
        )
        return (data or {}).get("result", [])

    def upload_iso(self, node: str, storage: str, path: str | Path) -> str:
        path = Path(path)
        with path.open("rb") as handle:
            data = self._request(
                "POST",
                f"/nodes/{node}/storage/{storage}/upload",
                data={"content": "iso"},
                files={"filename": (path.name, handle, "application/octet-stream")},
            )
        self._wait_if_task(data, node)
        return f"{storage}:iso/{path.name}"

    def download_iso_from_url(
        self,
        node: str,
        storage: str,
        *,
        url: str,
        filename: str,
        checksum: str | None = None,
        checksum_algorithm: str | None = None,
    ) -> str:
        params = {"url": url, "content": "iso", "filename": filename}
        if checksum and checksum_algorithm:
            params["checksum"] = checksum
            params["checksum-algorithm"] = checksum_algorithm
        data = self._request("POST", f"/nodes/{node}/storage/{storage}/download-url", data=params)
        self._wait_if_task(data, node)
        return f"{storage}:iso/{filename}"

    def delete_volume(self, node: str, storage: str, volume: str) -> None:
        data = self._request(
            "DELETE", f"/nodes/{node}/storage/{storage}/content/{quote(volume, safe='')}"
        )
        self._wait_if_task(data, node, cancellable=False)
