import json
import logging
import signal
import sys
import threading
from pathlib import Path

from template_builder.builder import run_builds
from template_builder.config import get_settings
from template_builder.logging_config import configure_logging
from template_builder.schemas import BuildSpec
from template_builder.services.provision import LocalCommandHook, ProvisionHook


logger = logging.getLogger(__name__)


def load_build_file(path: Path) -> tuple[BuildSpec, ProvisionHook | None]:
    document = json.loads(path.read_text(encoding="utf-8"))
    commands = document.pop("provision", None)
    document.setdefault("name", path.stem)
    spec = BuildSpec.model_validate(document)
    hook = LocalCommandHook(commands) if commands else None
    return spec, hook


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    settings = get_settings()
    configure_logging(settings.log_level)
    if not argv:
        logger.error("usage: python -m template_builder.main BUILD.json [BUILD.json ...]")
        return 2
    settings.validate_credentials()

    loaded = [load_build_file(Path(arg)) for arg in argv]
    names = [spec.name for spec, _hook in loaded]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        logger.error("build names must be unique, duplicated: %s", ", ".join(duplicates))
        return 2
    hooks = {spec.name: hook for spec, hook in loaded}
    cancel_event = threading.Event()

    def _interrupt(signum, _frame) -> None:
        logger.warning("received signal %s, cancelling builds", signum)
        cancel_event.set()

    signal.signal(signal.SIGINT, _interrupt)
    signal.signal(signal.SIGTERM, _interrupt)

    outcomes = run_builds(
        [spec for spec, _hook in loaded],
        settings=settings,
        hook_factory=lambda spec: hooks.get(spec.name),
        cancel_event=cancel_event,
    )
    failed = 0
    for outcome in outcomes:
        if outcome.artifact is not None:
            print(f"{outcome.name}: {outcome.artifact}")
        else:
            failed += 1
            print(f"{outcome.name}: failed: {outcome.error}", file=sys.stderr)
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
