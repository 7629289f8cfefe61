import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass

from template_builder.clients.pve import VmNotFound
from template_builder.models import VmRef
from template_builder.services.runner import ControlPlane


logger = logging.getLogger(__name__)

_CTIME = re.compile(r"ctime=(\d+)")
_TAG_SEPARATORS = re.compile(r"[;, ]+")


class AmbiguousVm(LookupError):
    pass


@dataclass(frozen=True)
class VmMatch:
    vm_ref: VmRef
    name: str
    tags: tuple[str, ...] = ()

    @property
    def joined_tags(self) -> str:
        return ";".join(self.tags)


def split_tags(value: str | None) -> tuple[str, ...]:
    return tuple(tag for tag in _TAG_SEPARATORS.split(value or "") if tag)


def creation_time(config: dict) -> int:
    """Read the ``ctime`` out of a VM's ``meta`` option; 0 when it carries none."""
    meta = config.get("meta")
    if meta is None:
        raise ValueError("no meta field in the virtual machine config")
    match = _CTIME.search(str(meta))
    return int(match.group(1)) if match else 0


def find_vm(
    client: ControlPlane,
    *,
    name: str | None = None,
    name_regex: str | None = None,
    template: bool = False,
    node: str | None = None,
    tags: Sequence[str] = (),
    latest: bool = False,
) -> VmMatch:
    if name and name_regex:
        raise ValueError("name and name_regex are mutually exclusive")
    pattern = None
    if name_regex:
        try:
            pattern = re.compile(name_regex)
        except re.error as exc:
            raise ValueError(f"cannot compile regex string: {exc}") from exc

    matches = []
    for row in client.list_vms():
        vm_name = row.get("name") or ""
        vm_tags = split_tags(row.get("tags"))
        if name and vm_name != name:
            continue
        if pattern is not None and not pattern.search(vm_name):
            continue
        if template and not row.get("template"):
            continue
        if node and row.get("node") != node:
            continue
        if tags and not set(tags).issubset(vm_tags):
            continue
        vm_ref = VmRef(int(row["vmid"]), row["node"], row.get("pool"))
        matches.append(VmMatch(vm_ref, vm_name, vm_tags))

    if not matches:
        raise VmNotFound("no virtual machine matches the filters")
    if not latest:
        if len(matches) > 1:
            ids = [match.vm_ref.vm_id for match in matches]
            raise AmbiguousVm(f"more than one virtual machine matched the filters, IDs: {ids}")
        return matches[0]

    newest: VmMatch | None = None
    newest_ctime = -1
    for match in matches:
        config = client.get_vm_config(match.vm_ref)
        ctime = creation_time(config)
        if ctime > newest_ctime:
            newest_ctime = ctime
            newest = VmMatch(match.vm_ref, config.get("name") or match.name, split_tags(config.get("tags")))
    assert newest is not None
    logger.info("latest matching vm is %s (ctime=%s)", newest.vm_ref, newest_ctime)
    return newest
