import hashlib
import logging
import shutil
import subprocess
import tempfile
import uuid
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx

from template_builder.clients.pve import OperationCancelled
from template_builder.schemas import ISOSpec
from template_builder.services.runner import BuildState, Step, StepAction


logger = logging.getLogger(__name__)

CHECKSUM_ALGORITHMS = {
    "md5": 32,
    "sha1": 40,
    "sha224": 56,
    "sha256": 64,
    "sha384": 96,
    "sha512": 128,
}
ISO_TOOLS = ["xorriso", "genisoimage", "mkisofs"]


def _url_filename(url: str) -> str:
    return Path(unquote(urlparse(url).path)).name or "download.iso"


def _local_path(url: str) -> Path | None:
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    if parsed.scheme == "":
        return Path(url)
    return None


def parse_checksum(checksum: str, url: str, http: httpx.Client) -> tuple[str, str] | None:
    """Resolve an ``algo:value``, bare hex or ``file:<url>`` checksum to (algorithm, hexdigest)."""
    checksum = checksum.strip()
    if not checksum or checksum == "none":
        return None
    algorithm, sep, value = checksum.partition(":")
    if not sep:
        algorithm, value = "", checksum
    if algorithm == "file":
        return _checksum_from_file(value, url, http)
    value = value.lower()
    if not algorithm:
        for name, length in CHECKSUM_ALGORITHMS.items():
            if len(value) == length:
                algorithm = name
                break
    if algorithm not in CHECKSUM_ALGORITHMS:
        raise ValueError(f"unsupported checksum {checksum!r}")
    if len(value) != CHECKSUM_ALGORITHMS[algorithm]:
        raise ValueError(f"{algorithm} checksum {value!r} has the wrong length")
    return algorithm, value


def _checksum_from_file(checksum_url: str, url: str, http: httpx.Client) -> tuple[str, str]:
    local = _local_path(checksum_url)
    if local is not None:
        text = local.read_text(encoding="utf-8")
    else:
        response = http.get(checksum_url)
        response.raise_for_status()
        text = response.text
    filename = _url_filename(url)
    for line in text.splitlines():
        fields = line.replace("*", " ").split()
        if len(fields) >= 2 and fields[-1] == filename:
            value = fields[0].lower()
        elif line.startswith(("SHA256 (", "SHA512 (", "MD5 (", "SHA1 (")) and f"({filename})" in line:
            value = line.rsplit("=", 1)[-1].strip().lower()
        else:
            continue
        for name, length in CHECKSUM_ALGORITHMS.items():
            if len(value) == length:
                return name, value
    raise ValueError(f"no checksum for {filename} in {checksum_url}")


def file_digest(path: Path, algorithm: str) -> str:
    digest = hashlib.new(algorithm)
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_checksum(path: Path, expected: tuple[str, str] | None) -> None:
    if expected is None:
        return
    algorithm, value = expected
    actual = file_digest(path, algorithm)
    if actual != value:
        raise ValueError(f"{algorithm} checksum mismatch for {path.name}: expected {value}, got {actual}")


def build_iso_command(tool: str, output: Path, label: str, source_dir: Path) -> list[str]:
    cmd = [tool]
    if Path(tool).name == "xorriso":
        cmd += ["-as", "mkisofs"]
    return cmd + ["-output", str(output), "-volid", label, "-joliet", "-rock", str(source_dir)]


def create_cd(iso: ISOSpec, workdir: Path) -> Path:
    source_dir = workdir / "contents"
    source_dir.mkdir(parents=True, exist_ok=True)
    for item in iso.cd_files:
        path = Path(item)
        if path.is_dir():
            shutil.copytree(path, source_dir / path.name, dirs_exist_ok=True)
        else:
            shutil.copy2(path, source_dir / path.name)
    for name, content in iso.cd_content.items():
        target = source_dir / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    tool = next((found for found in map(shutil.which, ISO_TOOLS) if found), None)
    if tool is None:
        raise RuntimeError(f"creating a CD requires one of: {', '.join(ISO_TOOLS)}")
    output = workdir / f"build-cd-{uuid.uuid4().hex[:12]}.iso"
    cmd = build_iso_command(tool, output, iso.cd_label, source_dir)
    try:
        subprocess.run(cmd, check=True, capture_output=True, text=True)
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        stdout = (exc.stdout or "").strip()
        raise RuntimeError(f"CD generation failed with {tool}: {stderr or stdout or exc}") from exc
    return output


class StepCreateCD(Step):
    name = "create_cd"

    def __init__(self, position: int):
        self.position = position
        self.workdir: Path | None = None

    def run(self, state: BuildState) -> StepAction:
        iso = state.spec.all_isos()[self.position]
        self.workdir = Path(tempfile.mkdtemp(prefix="template-builder-cd-"))
        path = create_cd(iso, self.workdir)
        state.local_iso_paths[self.position] = str(path)
        logger.info("[%s] created CD %s", state.spec.name, path.name)
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        if self.workdir is not None:
            shutil.rmtree(self.workdir, ignore_errors=True)
            self.workdir = None


class StepDownloadISO(Step):
    name = "download_iso"

    def __init__(self, position: int, download_dir: str, http_client: httpx.Client | None = None):
        self.position = position
        self.download_dir = Path(download_dir)
        self.http_client = http_client

    def _fetch(self, http: httpx.Client, url: str, expected: tuple[str, str] | None) -> Path:
        local = _local_path(url)
        if local is not None:
            verify_checksum(local, expected)
            return local
        self.download_dir.mkdir(parents=True, exist_ok=True)
        key = hashlib.sha1(url.encode("utf-8")).hexdigest()[:16]
        target = self.download_dir / f"{key}-{_url_filename(url)}"
        if target.exists() and expected is not None:
            try:
                verify_checksum(target, expected)
                return target
            except ValueError:
                target.unlink()
        partial = target.with_suffix(target.suffix + ".part")
        with http.stream("GET", url) as response:
            response.raise_for_status()
            with partial.open("wb") as handle:
                for chunk in response.iter_bytes():
                    handle.write(chunk)
        verify_checksum(partial, expected)
        partial.replace(target)
        return target

    def run(self, state: BuildState) -> StepAction:
        iso = state.spec.all_isos()[self.position]
        http = self.http_client or httpx.Client(follow_redirects=True, timeout=60.0)
        errors = []
        try:
            for url in iso.iso_urls:
                try:
                    expected = parse_checksum(iso.iso_checksum, url, http)
                    path = self._fetch(http, url, expected)
                except (httpx.HTTPError, OSError, ValueError) as exc:
                    logger.warning("[%s] download of %s failed: %s", state.spec.name, url, exc)
                    errors.append(f"{url}: {exc}")
                    continue
                state.local_iso_paths[self.position] = str(path)
                logger.info("[%s] downloaded %s", state.spec.name, url)
                return StepAction.CONTINUE
        finally:
            if self.http_client is None:
                http.close()
        return state.halt(RuntimeError("Couldn't download iso file from mirrors: " + "; ".join(errors)))


class StepUploadISO(Step):
    name = "upload_iso"

    def __init__(self, position: int):
        self.position = position
        self.uploaded: str | None = None

    def run(self, state: BuildState) -> StepAction:
        iso = state.spec.all_isos()[self.position]
        local = state.local_iso_paths.get(self.position)
        if not local:
            return state.halt(RuntimeError(f"no local ISO to upload for isos[{self.position}]"))
        assert iso.iso_storage_pool is not None
        path = Path(local).resolve()
        volume = state.client.upload_iso(state.spec.node, iso.iso_storage_pool, path)
        state.iso_files[self.position] = volume
        if iso.generated:
            self.uploaded = volume
        logger.info("[%s] uploaded ISO to %s", state.spec.name, volume)
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        if self.uploaded is None:
            return
        iso = state.spec.all_isos()[self.position]
        assert iso.iso_storage_pool is not None
        state.client.delete_volume(state.spec.node, iso.iso_storage_pool, self.uploaded)
        logger.info("[%s] deleted generated ISO %s", state.spec.name, self.uploaded)
        self.uploaded = None


class StepDownloadISOOnNode(Step):
    name = "download_iso_on_node"

    def __init__(self, position: int, http_client: httpx.Client | None = None):
        self.position = position
        self.http_client = http_client

    def run(self, state: BuildState) -> StepAction:
        iso = state.spec.all_isos()[self.position]
        assert iso.iso_storage_pool is not None
        http = self.http_client or httpx.Client(follow_redirects=True, timeout=60.0)
        errors = []
        try:
            for url in iso.iso_urls:
                try:
                    expected = parse_checksum(iso.iso_checksum, url, http)
                    algorithm, value = expected if expected else (None, None)
                    logger.info("[%s] node %s downloading %s", state.spec.name, state.spec.node, url)
                    volume = state.client.download_iso_from_url(
                        state.spec.node,
                        iso.iso_storage_pool,
                        url=url,
                        filename=_url_filename(url),
                        checksum=value,
                        checksum_algorithm=algorithm,
                    )
                except OperationCancelled:
                    raise
                except Exception as exc:  # noqa: BLE001
                    logger.warning("[%s] download from %s failed: %s", state.spec.name, url, exc)
                    errors.append(f"{url}: {exc}")
                    continue
                state.iso_files[self.position] = volume
                return StepAction.CONTINUE
        finally:
            if self.http_client is None:
                http.close()
        return state.halt(RuntimeError("Couldn't download iso file from mirrors: " + "; ".join(errors)))
