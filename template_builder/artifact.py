import logging
from typing import Any

from template_builder.models import ArtifactType, VmRef


logger = logging.getLogger(__name__)


class Artifact:
    def __init__(
        self,
        *,
        builder_id: str,
        vm_ref: VmRef,
        artifact_type: ArtifactType,
        client: Any,
        state_data: dict[str, Any] | None = None,
    ):
        self.builder_id = builder_id
        self.vm_ref = vm_ref
        self.artifact_type = artifact_type
        self.client = client
        self.state_data = dict(state_data or {})

    @property
    def id(self) -> str:
        return str(self.vm_ref.vm_id)

    def files(self) -> list[str]:
        return []

    def state(self, name: str) -> Any:
        return self.state_data.get(name)

    def destroy(self) -> None:
        logger.info("destroying %s %s", self.artifact_type.value, self.vm_ref)
        self.client.delete_vm(self.vm_ref)

    def __str__(self) -> str:
        return f"A {self.artifact_type.value} was created: {self.vm_ref.vm_id}"

    def __repr__(self) -> str:
        return f"Artifact(builder_id={self.builder_id!r}, id={self.id!r}, type={self.artifact_type.value!r})"
