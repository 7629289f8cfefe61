from template_builder.models import BuildPhase


ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    BuildPhase.NOT_STARTED.value: {
        BuildPhase.CREATED.value,
        BuildPhase.FAILED.value,
        BuildPhase.CANCELLED.value,
    },
    BuildPhase.CREATED.value: {
        BuildPhase.STARTED.value,
        BuildPhase.FAILED.value,
        BuildPhase.CANCELLED.value,
    },
    BuildPhase.STARTED.value: {
        BuildPhase.PROVISIONED.value,
        BuildPhase.FAILED.value,
        BuildPhase.CANCELLED.value,
    },
    BuildPhase.PROVISIONED.value: {
        BuildPhase.FINALIZED.value,
        BuildPhase.FAILED.value,
        BuildPhase.CANCELLED.value,
    },
    BuildPhase.FINALIZED.value: {
        BuildPhase.SUCCEEDED.value,
        BuildPhase.FAILED.value,
        BuildPhase.CANCELLED.value,
    },
    BuildPhase.SUCCEEDED.value: set(),
    BuildPhase.FAILED.value: set(),
    BuildPhase.CANCELLED.value: set(),
}

TERMINAL_PHASES = frozenset(
    {BuildPhase.SUCCEEDED.value, BuildPhase.FAILED.value, BuildPhase.CANCELLED.value}
)


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())
