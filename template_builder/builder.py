import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from threading import Lock

import httpx

from template_builder.artifact import Artifact
from template_builder.clients.pve import PveClient
from template_builder.config import BuilderSettings, get_settings
from template_builder.schemas import BuildSpec
from template_builder.services.create import StepCreateVM
from template_builder.services.creators import (
    CloneVMCreator,
    IsoVMCreator,
    StepMapSourceDisks,
    VMCreator,
)
from template_builder.services.media import (
    StepCreateCD,
    StepDownloadISO,
    StepDownloadISOOnNode,
    StepUploadISO,
)
from template_builder.services.provision import ProvisionHook
from template_builder.services.runner import BuildState, ControlPlane, Runner, Step
from template_builder.services.steps import (
    StepBootWait,
    StepConvertToTemplate,
    StepFinalizeConfig,
    StepProvision,
    StepRemoveCloudInitDrive,
    StepStartVM,
    StepSuccess,
    StepWaitForGuest,
)


logger = logging.getLogger(__name__)


class BuildError(RuntimeError):
    def __init__(self, step: str, error: BaseException, cleanup_errors: Sequence[str] = ()):
        self.step = step
        self.error = error
        self.cleanup_errors = list(cleanup_errors)
        message = f"{step}: {error}"
        if self.cleanup_errors:
            message += "; cleanup incomplete: " + "; ".join(self.cleanup_errors)
        super().__init__(message)


class BuildCancelled(RuntimeError):
    def __init__(self, cleanup_errors: Sequence[str] = ()):
        self.cleanup_errors = list(cleanup_errors)
        message = "build was cancelled"
        if self.cleanup_errors:
            message += "; cleanup incomplete: " + "; ".join(self.cleanup_errors)
        super().__init__(message)


def media_steps(
    spec: BuildSpec, settings: BuilderSettings, download_client: httpx.Client | None = None
) -> list[Step]:
    steps: list[Step] = []
    for position, iso in enumerate(spec.all_isos()):
        if iso.iso_file:
            continue
        if iso.iso_download_pve:
            steps.append(StepDownloadISOOnNode(position, http_client=download_client))
            continue
        if iso.generated:
            steps.append(StepCreateCD(position))
        else:
            steps.append(StepDownloadISO(position, settings.download_dir, http_client=download_client))
        steps.append(StepUploadISO(position))
    return steps


class Builder:
    def __init__(
        self,
        spec: BuildSpec,
        client: ControlPlane,
        *,
        settings: BuilderSettings | None = None,
        hook: ProvisionHook | None = None,
        cancel_event: threading.Event | None = None,
        download_client: httpx.Client | None = None,
    ):
        self.spec = spec
        self.client = client
        self.settings = settings or get_settings()
        self.hook = hook
        self.cancel_event = cancel_event or threading.Event()
        self.download_client = download_client
        self.creator: VMCreator = CloneVMCreator() if spec.flavor == "clone" else IsoVMCreator()
        self.state: BuildState | None = None

    def steps(self) -> list[Step]:
        steps = media_steps(self.spec, self.settings, self.download_client)
        if self.spec.flavor == "clone":
            steps.append(StepMapSourceDisks())
        steps += [
            StepCreateVM(self.creator),
            StepStartVM(),
            StepBootWait(),
            StepWaitForGuest(
                timeout_sec=self.settings.ip_wait_timeout_sec,
                poll_interval_sec=self.settings.ip_poll_interval_sec,
            ),
            StepProvision(),
            StepRemoveCloudInitDrive(),
            StepConvertToTemplate(),
            StepFinalizeConfig(),
            StepSuccess(),
        ]
        return steps

    def cancel(self) -> None:
        self.cancel_event.set()

    def run(self) -> Artifact:
        state = BuildState(
            spec=self.spec,
            client=self.client,
            hook=self.hook,
            cancel_event=self.cancel_event,
        )
        self.state = state
        logger.info("[%s] starting %s build", self.spec.name, self.creator.builder_id)
        Runner(self.steps()).run(state)

        if state.cancelled:
            raise BuildCancelled(state.cleanup_errors)
        if state.error is not None:
            raise BuildError(state.failed_step or "unknown", state.error, state.cleanup_errors) from state.error
        if state.artifact_id is None or state.artifact_type is None or state.vm_ref is None:
            raise BuildError("artifact", RuntimeError("build finished without an artifact"), state.cleanup_errors)

        for message in state.cleanup_errors:
            logger.warning("[%s] %s", self.spec.name, message)
        artifact = Artifact(
            builder_id=self.creator.builder_id,
            vm_ref=state.vm_ref,
            artifact_type=state.artifact_type,
            client=self.client,
            state_data={
                **state.generated_data,
                "vm_id": state.vm_ref.vm_id,
                "node": state.vm_ref.node,
                "warnings": list(state.warnings),
            },
        )
        logger.info("[%s] %s", self.spec.name, artifact)
        return artifact


@dataclass
class BuildOutcome:
    name: str
    artifact: Artifact | None = None
    error: BaseException | None = None


def default_client_factory(settings: BuilderSettings, cancel_event: threading.Event) -> PveClient:
    client = PveClient.from_settings(settings, cancel_event=cancel_event)
    client.login()
    return client


def run_builds(
    specs: Sequence[BuildSpec],
    *,
    settings: BuilderSettings | None = None,
    client_factory: Callable[[BuilderSettings, threading.Event], ControlPlane] = default_client_factory,
    hook_factory: Callable[[BuildSpec], ProvisionHook | None] = lambda _spec: None,
    cancel_event: threading.Event | None = None,
) -> list[BuildOutcome]:
    settings = settings or get_settings()
    cancel_event = cancel_event or threading.Event()
    outcomes: dict[int, BuildOutcome] = {}
    lock = Lock()

    def _run(index: int, spec: BuildSpec) -> None:
        outcome = BuildOutcome(name=spec.name)
        client = None
        try:
            client = client_factory(settings, cancel_event)
            builder = Builder(
                spec, client, settings=settings, hook=hook_factory(spec), cancel_event=cancel_event
            )
            outcome.artifact = builder.run()
        except Exception as exc:  # noqa: BLE001
            logger.error("[%s] build failed: %s", spec.name, exc)
            outcome.error = exc
        if outcome.artifact is None and client is not None:
            # Successful artifacts keep their session for destroy().
            close = getattr(client, "close", None)
            if close is not None:
                close()
        with lock:
            outcomes[index] = outcome

    threads = [
        threading.Thread(target=_run, args=(index, spec), name=f"build-{spec.name}", daemon=True)
        for index, spec in enumerate(specs)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return [outcomes[index] for index in range(len(specs))]
