import logging
import os
import subprocess
from collections.abc import Sequence
from typing import Protocol

from template_builder.services.runner import BuildState


logger = logging.getLogger(__name__)


class ProvisionHook(Protocol):
    def run(self, host: str, state: BuildState) -> None: ...


class LocalCommandHook:
    def __init__(self, commands: Sequence[Sequence[str]], timeout_sec: float | None = None):
        self.commands = [list(command) for command in commands]
        self.timeout_sec = timeout_sec

    def environment(self, host: str, state: BuildState) -> dict[str, str]:
        env = dict(os.environ)
        env["BUILD_NAME"] = state.spec.name
        env["BUILD_HOST"] = host
        if state.vm_ref is not None:
            env["BUILD_VM_ID"] = str(state.vm_ref.vm_id)
            env["BUILD_NODE"] = state.vm_ref.node
        return env

    def run(self, host: str, state: BuildState) -> None:
        env = self.environment(host, state)
        for command in self.commands:
            logger.info("[%s] provisioning command=%s", state.spec.name, " ".join(command))
            try:
                result = subprocess.run(
                    command,
                    check=True,
                    capture_output=True,
                    text=True,
                    env=env,
                    timeout=self.timeout_sec,
                )
            except subprocess.CalledProcessError as exc:
                stderr = (exc.stderr or "").strip()
                stdout = (exc.stdout or "").strip()
                raise RuntimeError(
                    f"provisioning command {command[0]} failed with exit code {exc.returncode}: {stderr or stdout}"
                ) from exc
            if result.stdout.strip():
                logger.debug("[%s] %s", state.spec.name, result.stdout.strip())
