import ipaddress
import logging
import time
from typing import Protocol

from template_builder.clients.pve import OperationCancelled
from template_builder.services.runner import BuildState


logger = logging.getLogger(__name__)


class GuestAddressError(RuntimeError):
    pass


def _addresses(interface: dict) -> list[ipaddress.IPv4Address | ipaddress.IPv6Address]:
    found = []
    for entry in interface.get("ip-addresses") or []:
        raw = entry.get("ip-address")
        if not raw:
            continue
        try:
            found.append(ipaddress.ip_address(raw.split("%", 1)[0]))
        except ValueError:
            logger.debug("ignoring unparseable guest address %s", raw)
    return found


def _pick(candidates: list[ipaddress.IPv4Address | ipaddress.IPv6Address]) -> str | None:
    usable = [addr for addr in candidates if not addr.is_loopback]
    for addr in usable:
        if addr.version == 4:
            return str(addr)
    for addr in usable:
        if not addr.is_link_local:
            return str(addr)
    return None


def select_address(interfaces: list[dict], interface_name: str | None = None) -> str:
    if interface_name:
        for interface in interfaces:
            if interface.get("name") != interface_name:
                continue
            address = _pick(_addresses(interface))
            if address is None:
                raise GuestAddressError(f"Interface {interface_name} only has loopback addresses")
            return address
        raise GuestAddressError(f"Interface {interface_name} not found in VM")

    candidates = []
    for interface in interfaces:
        candidates.extend(_addresses(interface))
    address = _pick(candidates)
    if address is None:
        raise GuestAddressError("Found no IP addresses on VM")
    return address


class HostResolver(Protocol):
    def resolve(self, state: BuildState) -> str: ...


class ExplicitHost:
    def __init__(self, host: str):
        self.host = host

    def resolve(self, state: BuildState) -> str:
        return self.host


class GuestAgentHost:
    def __init__(self, interface_name: str | None = None):
        self.interface_name = interface_name

    def resolve(self, state: BuildState) -> str:
        assert state.vm_ref is not None
        interfaces = state.client.agent_network_interfaces(state.vm_ref)
        return select_address(interfaces, self.interface_name)


def resolver_for(state: BuildState) -> HostResolver:
    if state.spec.host:
        return ExplicitHost(state.spec.host)
    return GuestAgentHost(state.spec.vm_interface)


def wait_for_host(
    state: BuildState, resolver: HostResolver, *, timeout_sec: float, poll_interval_sec: float
) -> str:
    deadline = time.monotonic() + timeout_sec
    while True:
        try:
            return resolver.resolve(state)
        except Exception as exc:  # noqa: BLE001
            if time.monotonic() >= deadline:
                raise TimeoutError(f"no guest address within {timeout_sec:g}s: {exc}") from exc
            logger.debug("[%s] guest address not available yet: %s", state.spec.name, exc)
        if state.wait(poll_interval_sec):
            raise OperationCancelled("cancelled while waiting for the guest address")
