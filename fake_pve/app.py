import itertools
import re
from threading import Lock
from typing import Any

from fastapi import APIRouter, FastAPI, HTTPException, Request

from fake_pve.config import get_settings


app = FastAPI(title="Fake Proxmox VE API")
router = APIRouter(prefix="/api2/json")

_lock = Lock()
_vms: dict[int, dict[str, Any]] = {}
_tasks: dict[str, dict[str, str]] = {}
_volumes: dict[str, set[str]] = {}
_calls: list[tuple[str, str]] = []
_task_counter = itertools.count(1)
_ctime_counter = itertools.count(1700000000)
_faults: dict[str, Any] = {}

DEFAULT_FAULTS = {
    "duplicate_creates": 0,
    "fail_start": False,
    "fail_stop": False,
    "fail_delete": False,
    "fail_template": False,
    "agent_unavailable": False,
}
_SLOT_KEY = re.compile(r"^(ide|sata|scsi|virtio)\d+$")
_UNUSED_KEY = re.compile(r"^unused(\d+)$")
_NEW_VOLUME = re.compile(r"^([^:,]+):(\d+(?:\.\d+)?)(,.*)?$")


def reset_state(**faults: Any) -> None:
    unknown = set(faults) - set(DEFAULT_FAULTS)
    if unknown:
        raise ValueError(f"unknown faults {sorted(unknown)}")
    with _lock:
        _vms.clear()
        _tasks.clear()
        _calls.clear()
        _volumes.clear()
        for storage in get_settings().storages:
            _volumes[storage] = set()
        _faults.clear()
        _faults.update(DEFAULT_FAULTS)
        _faults.update(faults)


def add_vm(vm_id: int, config: dict[str, Any], *, node: str | None = None, status: str = "stopped") -> None:
    with _lock:
        _vms[vm_id] = {
            "node": node or get_settings().node,
            "status": status,
            "config": dict(config),
        }


def vm_snapshot(vm_id: int) -> dict[str, Any] | None:
    with _lock:
        row = _vms.get(vm_id)
        return None if row is None else {**row, "config": dict(row["config"])}


def calls() -> list[tuple[str, str]]:
    with _lock:
        return list(_calls)


def volumes(storage: str) -> set[str]:
    with _lock:
        return set(_volumes.get(storage, set()))


reset_state()


def _check_auth(request: Request) -> None:
    if not get_settings().require_auth:
        return
    header = request.headers.get("Authorization", "")
    if header.startswith("PVEAPIToken=") or request.cookies.get("PVEAuthCookie"):
        return
    raise HTTPException(status_code=401, detail="authentication failure")


def _record(request: Request) -> None:
    _check_auth(request)
    with _lock:
        _calls.append((request.method, request.url.path.removeprefix("/api2/json")))


def _task(node: str, kind: str, vm_id: int | str, exitstatus: str = "OK") -> str:
    upid = f"UPID:{node}:{next(_task_counter):08X}:00000000:00000000:{kind}:{vm_id}:root@pam:"
    _tasks[upid] = {"status": "stopped", "exitstatus": exitstatus}
    return upid


def _meta() -> str:
    return f"creation-qemu=8.1.2,ctime={next(_ctime_counter)}"


def _vm(node: str, vm_id: int) -> dict[str, Any]:
    row = _vms.get(vm_id)
    if row is None or row["node"] != node:
        raise HTTPException(status_code=500, detail=f"Configuration file 'nodes/{node}/qemu-server/{vm_id}.conf' does not exist")
    return row


def _next_free_id() -> int:
    candidate = get_settings().first_vm_id
    while candidate in _vms:
        candidate += 1
    return candidate


def _duplicate_check(node: str, vm_id: int) -> None:
    if _faults["duplicate_creates"] > 0:
        _faults["duplicate_creates"] -= 1
        # Another client grabbed the id between nextid and create.
        _vms.setdefault(vm_id, {"node": node, "status": "stopped", "config": {"name": "racer"}})
        raise HTTPException(status_code=500, detail=f"unable to create VM {vm_id} - VM {vm_id} already exists on node '{node}'")
    if vm_id in _vms:
        raise HTTPException(status_code=500, detail=f"unable to create VM {vm_id} - VM {vm_id} already exists on node '{_vms[vm_id]['node']}'")


def _next_unused(config: dict[str, Any]) -> str:
    taken = {int(m.group(1)) for key in config if (m := _UNUSED_KEY.match(key))}
    return f"unused{next(i for i in itertools.count() if i not in taken)}"


def _materialize(vm_id: int, key: str, value: str, config: dict[str, Any]) -> str:
    storage, _, rest = value.partition(":")
    if rest.startswith("cloudinit"):
        return f"{storage}:vm-{vm_id}-cloudinit,media=cdrom"
    match = _NEW_VOLUME.match(value)
    if not match or not (_SLOT_KEY.match(key) or key in {"efidisk0", "tpmstate0"}):
        return value
    pool, size, options = match.group(1), match.group(2), match.group(3) or ""
    disk_no = sum(1 for v in config.values() if isinstance(v, str) and f"vm-{vm_id}-disk-" in v)
    return f"{pool}:vm-{vm_id}-disk-{disk_no},size={size}G{options}"


def _apply_config(vm_id: int, config: dict[str, Any], changes: dict[str, Any]) -> None:
    delete = [key for key in str(changes.pop("delete", "") or "").split(",") if key]
    for key in delete:
        current = config.pop(key, None)
        if current is not None and _SLOT_KEY.match(key) and "media=cdrom" not in str(current):
            config[_next_unused(config)] = current
    for key, value in changes.items():
        value = str(value)
        current = config.get(key)
        if (
            current is not None
            and _SLOT_KEY.match(key)
            and "media=cdrom" not in str(current)
            and current != value
        ):
            config[_next_unused(config)] = current
        config[key] = _materialize(vm_id, key, value, config)


async def _form(request: Request) -> dict[str, Any]:
    form = await request.form()
    return {key: value for key, value in form.items()}


@router.post("/access/ticket")
async def ticket(request: Request) -> dict:
    form = await _form(request)
    if not form.get("username") or not form.get("password"):
        raise HTTPException(status_code=401, detail="authentication failure")
    return {"data": {"ticket": f"PVE:{form['username']}:fake", "CSRFPreventionToken": "fake-csrf", "username": form["username"]}}


@router.get("/cluster/nextid")
def nextid(request: Request) -> dict:
    _record(request)
    with _lock:
        return {"data": str(_next_free_id())}


@router.get("/cluster/resources")
def resources(request: Request, type: str | None = None) -> dict:
    _record(request)
    with _lock:
        rows = [
            {
                "id": f"qemu/{vm_id}",
                "type": "qemu",
                "vmid": vm_id,
                "node": row["node"],
                "name": row["config"].get("name"),
                "status": row["status"],
                "template": int(row["config"].get("template", 0)),
                **({"tags": row["config"]["tags"]} if row["config"].get("tags") else {}),
                **({"pool": row["pool"]} if row.get("pool") else {}),
            }
            for vm_id, row in sorted(_vms.items())
        ]
    return {"data": rows}


@router.post("/nodes/{node}/qemu")
async def create_vm(node: str, request: Request) -> dict:
    _record(request)
    params = await _form(request)
    vm_id = int(params.pop("vmid"))
    pool = params.pop("pool", None)
    with _lock:
        _duplicate_check(node, vm_id)
        config: dict[str, Any] = {}
        _apply_config(vm_id, config, params)
        config["meta"] = _meta()
        _vms[vm_id] = {"node": node, "status": "stopped", "config": config, "pool": pool}
        return {"data": _task(node, "qmcreate", vm_id)}


@router.post("/nodes/{node}/qemu/{vm_id}/clone")
async def clone_vm(node: str, vm_id: int, request: Request) -> dict:
    _record(request)
    params = await _form(request)
    new_id = int(params["newid"])
    target = params.get("target") or node
    with _lock:
        source = _vm(node, vm_id)
        _duplicate_check(target, new_id)
        config = {
            key: str(value).replace(f"vm-{vm_id}-", f"vm-{new_id}-")
            for key, value in source["config"].items()
            if key != "template"
        }
        config["name"] = params.get("name", config.get("name"))
        config["meta"] = _meta()
        _vms[new_id] = {"node": target, "status": "stopped", "config": config, "pool": params.get("pool")}
        return {"data": _task(node, "qmclone", vm_id)}


@router.get("/nodes/{node}/qemu/{vm_id}/config")
def get_config(node: str, vm_id: int, request: Request) -> dict:
    _record(request)
    with _lock:
        return {"data": dict(_vm(node, vm_id)["config"])}


@router.post("/nodes/{node}/qemu/{vm_id}/config")
async def set_config(node: str, vm_id: int, request: Request) -> dict:
    _record(request)
    params = await _form(request)
    with _lock:
        row = _vm(node, vm_id)
        _apply_config(vm_id, row["config"], params)
        return {"data": _task(node, "qmconfig", vm_id)}


@router.get("/nodes/{node}/qemu/{vm_id}/status/current")
def status_current(node: str, vm_id: int, request: Request) -> dict:
    _record(request)
    with _lock:
        row = _vm(node, vm_id)
        return {"data": {"vmid": vm_id, "status": row["status"], "name": row["config"].get("name")}}


@router.post("/nodes/{node}/qemu/{vm_id}/status/{action}")
def vm_action(node: str, vm_id: int, action: str, request: Request) -> dict:
    _record(request)
    if action not in {"start", "stop", "shutdown"}:
        raise HTTPException(status_code=501, detail=f"Method 'POST /nodes/{node}/qemu/{vm_id}/status/{action}' not implemented")
    with _lock:
        row = _vm(node, vm_id)
        if action == "start":
            if row["config"].get("template"):
                raise HTTPException(status_code=500, detail="you can't start a vm if it's a template")
            if _faults["fail_start"]:
                return {"data": _task(node, "qmstart", vm_id, "start failed: injected fault")}
            row["status"] = "running"
            return {"data": _task(node, "qmstart", vm_id)}
        if action == "stop" and _faults["fail_stop"]:
            raise HTTPException(status_code=500, detail="stop failed: injected fault")
        row["status"] = "stopped"
        return {"data": _task(node, f"qm{action}", vm_id)}


@router.delete("/nodes/{node}/qemu/{vm_id}")
def delete_vm(node: str, vm_id: int, request: Request) -> dict:
    _record(request)
    with _lock:
        row = _vm(node, vm_id)
        if _faults["fail_delete"]:
            raise HTTPException(status_code=500, detail="delete failed: injected fault")
        if row["status"] == "running":
            raise HTTPException(status_code=500, detail=f"VM {vm_id} is running - destroy failed")
        del _vms[vm_id]
        return {"data": _task(node, "qmdestroy", vm_id)}


@router.post("/nodes/{node}/qemu/{vm_id}/template")
def create_template(node: str, vm_id: int, request: Request) -> dict:
    _record(request)
    with _lock:
        row = _vm(node, vm_id)
        if _faults["fail_template"]:
            raise HTTPException(status_code=500, detail="template conversion failed: injected fault")
        if row["status"] == "running":
            raise HTTPException(status_code=500, detail="you can't convert a running VM to a template")
        row["config"]["template"] = 1
        return {"data": _task(node, "qmtemplate", vm_id)}


@router.get("/nodes/{node}/qemu/{vm_id}/agent/network-get-interfaces")
def agent_interfaces(node: str, vm_id: int, request: Request) -> dict:
    _record(request)
    settings = get_settings()
    with _lock:
        row = _vm(node, vm_id)
        if row["status"] != "running" or _faults["agent_unavailable"]:
            raise HTTPException(status_code=500, detail="QEMU guest agent is not running")
    return {
        "data": {
            "result": [
                {
                    "name": "lo",
                    "ip-addresses": [
                        {"ip-address": "127.0.0.1", "ip-address-type": "ipv4", "prefix": 8},
                        {"ip-address": "::1", "ip-address-type": "ipv6", "prefix": 128},
                    ],
                },
                {
                    "name": settings.guest_interface,
                    "ip-addresses": [
                        {"ip-address": settings.guest_ipv6, "ip-address-type": "ipv6", "prefix": 64},
                        {"ip-address": settings.guest_ipv4, "ip-address-type": "ipv4", "prefix": 24},
                    ],
                },
            ]
        }
    }


@router.get("/nodes/{node}/tasks/{upid}/status")
def task_status(node: str, upid: str, request: Request) -> dict:
    _record(request)
    with _lock:
        task = _tasks.get(upid)
    if task is None:
        raise HTTPException(status_code=500, detail=f"no such task '{upid}'")
    return {"data": {"upid": upid, "node": node, **task}}


@router.post("/nodes/{node}/storage/{storage}/upload")
async def upload(node: str, storage: str, request: Request) -> dict:
    _record(request)
    form = await request.form()
    upload_file = form.get("filename")
    if upload_file is None or not hasattr(upload_file, "filename"):
        raise HTTPException(status_code=400, detail="missing upload file")
    await upload_file.read()
    with _lock:
        if storage not in _volumes:
            raise HTTPException(status_code=500, detail=f"storage '{storage}' does not exist")
        _volumes[storage].add(f"{storage}:iso/{upload_file.filename}")
        return {"data": _task(node, "imgcopy", "")}


@router.post("/nodes/{node}/storage/{storage}/download-url")
async def download_url(node: str, storage: str, request: Request) -> dict:
    _record(request)
    params = await _form(request)
    with _lock:
        if storage not in _volumes:
            raise HTTPException(status_code=500, detail=f"storage '{storage}' does not exist")
        if "unreachable" in params["url"]:
            return {"data": _task(node, "download", "", f"download failed: could not reach {params['url']}")}
        _volumes[storage].add(f"{storage}:iso/{params['filename']}")
        return {"data": _task(node, "download", "")}


@router.delete("/nodes/{node}/storage/{storage}/content/{volume:path}")
def delete_volume(node: str, storage: str, volume: str, request: Request) -> dict:
    _record(request)
    with _lock:
        if volume not in _volumes.get(storage, set()):
            raise HTTPException(status_code=500, detail=f"volume '{volume}' does not exist")
        _volumes[storage].discard(volume)
        return {"data": _task(node, "imgdel", "")}


app.include_router(router)
