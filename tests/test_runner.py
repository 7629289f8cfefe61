import threading

from template_builder.models import BuildPhase
from template_builder.services.runner import BuildState, Runner, Step, StepAction


class RecordingStep(Step):
    def __init__(self, name, log, *, action=StepAction.CONTINUE, error=None, cleanup_error=None, phase=None, on_run=None):
        self.name = name
        self.log = log
        self.action = action
        self.error = error
        self.cleanup_error = cleanup_error
        self.phase = phase
        self.on_run = on_run

    def run(self, state):
        self.log.append(f"run:{self.name}")
        if self.on_run is not None:
            self.on_run(state)
        if self.error is not None:
            raise self.error
        if self.action == StepAction.HALT:
            return state.halt(RuntimeError(f"{self.name} halted"))
        return self.action

    def cleanup(self, state):
        self.log.append(f"cleanup:{self.name}")
        if self.cleanup_error is not None:
            raise self.cleanup_error


def make_state(make_spec, fake_client, cancel_event=None):
    return BuildState(
        spec=make_spec(),
        client=fake_client,
        cancel_event=cancel_event or threading.Event(),
    )


def test_all_steps_run_then_clean_up_in_reverse(make_spec, fake_client):
    log: list[str] = []
    state = make_state(make_spec, fake_client)
    Runner([RecordingStep("a", log), RecordingStep("b", log), RecordingStep("c", log)]).run(state)
    assert log == ["run:a", "run:b", "run:c", "cleanup:c", "cleanup:b", "cleanup:a"]
    assert state.error is None
    assert not state.cancelled


def test_halt_skips_remaining_steps_and_cleans_entered_ones(make_spec, fake_client):
    log: list[str] = []
    state = make_state(make_spec, fake_client)
    steps = [
        RecordingStep("a", log),
        RecordingStep("b", log, action=StepAction.HALT),
        RecordingStep("c", log),
    ]
    Runner(steps).run(state)
    assert log == ["run:a", "run:b", "cleanup:b", "cleanup:a"]
    assert state.failed_step == "b"
    assert str(state.error) == "b halted"
    assert state.phase == BuildPhase.FAILED


def test_exception_in_step_is_turned_into_a_halt(make_spec, fake_client):
    log: list[str] = []
    state = make_state(make_spec, fake_client)
    Runner([RecordingStep("a", log, error=ValueError("boom")), RecordingStep("b", log)]).run(state)
    assert log == ["run:a", "cleanup:a"]
    assert isinstance(state.error, ValueError)
    assert state.failed_step == "a"


def test_cancel_before_start_runs_nothing(make_spec, fake_client):
    log: list[str] = []
    cancel = threading.Event()
    cancel.set()
    state = make_state(make_spec, fake_client, cancel)
    Runner([RecordingStep("a", log)]).run(state)
    assert log == []
    assert state.cancelled
    assert state.phase == BuildPhase.CANCELLED


def test_cancel_during_step_stops_pipeline(make_spec, fake_client):
    log: list[str] = []
    cancel = threading.Event()
    state = make_state(make_spec, fake_client, cancel)
    steps = [
        RecordingStep("a", log),
        RecordingStep("b", log, on_run=lambda _state: cancel.set()),
        RecordingStep("c", log),
    ]
    Runner(steps).run(state)
    assert log == ["run:a", "run:b", "cleanup:b", "cleanup:a"]
    assert state.cancelled
    assert state.error is None


def test_cleanup_failures_are_recorded_and_do_not_stop_other_cleanups(make_spec, fake_client):
    log: list[str] = []
    state = make_state(make_spec, fake_client)
    steps = [
        RecordingStep("a", log),
        RecordingStep("b", log, cleanup_error=RuntimeError("stuck")),
    ]
    Runner(steps).run(state)
    assert log[-2:] == ["cleanup:b", "cleanup:a"]
    assert state.cleanup_errors == ["cleanup of b failed: stuck"]


def test_phases_advance_with_successful_steps(make_spec, fake_client):
    log: list[str] = []
    state = make_state(make_spec, fake_client)
    steps = [
        RecordingStep("create", log, phase=BuildPhase.CREATED),
        RecordingStep("start", log, phase=BuildPhase.STARTED),
    ]
    Runner(steps).run(state)
    assert state.phase == BuildPhase.STARTED


def test_iso_files_are_seeded_from_static_paths(make_spec, fake_client):
    state = make_state(make_spec, fake_client)
    assert state.iso_files == {0: "local:iso/debian-12.iso"}
