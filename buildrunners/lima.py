"""A runner that executes build commands with nerdctl inside a lima VM."""

from __future__ import annotations

import hashlib
import io
import json
import logging
import os
import re
import subprocess
import tarfile
from typing import Any, BinaryIO

import yaml

from buildrunners.config import RUNNER_WORKDIR, Config, digest_from_ref
from buildrunners.runner import Loader, Runner, RunnerError

LIMA_NAME = "lima"
MELANGE_VM_NAME = "melange-builder"
MELANGE_WRITABLE_PARENT = "/tmp/melange"
CONTAINER_IMAGE_NAME = "index.docker.io/library/melange:latest"
BINFMT_IMAGE = "tonistiigi/binfmt:qemu-v7.0.0-28"

_POD_COMMAND = ["/bin/sh", "-c", "while true; do sleep 5; done"]
_NERDCTL_LOAD_RE = re.compile(r"unpacking (\S+) \((sha256:[a-f0-9]+)\)")
_WHITESPACE_RE = re.compile(r"[ \t\r\n]*")


def parse_json_stream(text: str) -> list[Any]:
    """Decode a stream of concatenated JSON values, such as JSON lines.

    Raises ValueError when the stream holds something that is not JSON.
    """
    decoder = json.JSONDecoder()
    values: list[Any] = []
    pos = _WHITESPACE_RE.match(text, 0).end()
    while pos < len(text):
        value, pos = decoder.raw_decode(text, pos)
        values.append(value)
        pos = _WHITESPACE_RE.match(text, pos).end()
    return values


def parse_nerdctl_load(output: str) -> str:
    """Return ``name@digest`` for the image reported by ``nerdctl image load``."""
    match = _NERDCTL_LOAD_RE.search(output)
    if match is None:
        raise RunnerError(f"failed to find digest for loaded image: {output}")
    return f"{match.group(1)}@{match.group(2)}"


def _objects(text: str, what: str) -> list[dict[str, Any]]:
    try:
        values = parse_json_stream(text)
    except ValueError as exc:
        raise RunnerError(f"failed to parse {what} output: {exc}") from exc
    if not all(isinstance(value, dict) for value in values):
        raise RunnerError(f"failed to parse {what} output: expected JSON objects")
    return values


class _ProcessStream(io.RawIOBase):
    """The standard output of a child process; a failed exit raises at EOF."""

    def __init__(self, proc: subprocess.Popen, what: str) -> None:
        self._proc = proc
        self._what = what

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        count = self._proc.stdout.readinto(buffer)
        if not count:
            returncode = self._proc.wait()
            if returncode != 0:
                raise RunnerError(f"{self._what}: exit status {returncode}")
            return 0
        return count

    def close(self) -> None:
        if not self.closed:
            self._proc.stdout.close()
            if self._proc.poll() is None:
                self._proc.terminate()
            self._proc.wait()
        super().close()


class LimaRunner(Runner):
    """Runs build containers with nerdctl in the ``melange-builder`` lima VM.

    ``vm_config`` is the lima template (YAML bytes or a path to it) used
    when the VM does not exist yet and has to be created.
    """

    def __init__(
        self,
        logger: logging.Logger | None = None,
        vm_config: bytes | str | os.PathLike | None = None,
        limactl: str = "limactl",
    ) -> None:
        self.logger = logger or logging.getLogger("buildrunners")
        self.vm_config = vm_config
        self.limactl = limactl

    @property
    def name(self) -> str:
        return LIMA_NAME

    def oci_image_loader(self) -> Loader:
        return _LimaOCILoader(self)

    def temp_dir(self) -> str:
        """The directory mounted writable into the VM."""
        return MELANGE_WRITABLE_PARENT

    def run(self, cfg: Config, *args: str) -> None:
        if not cfg.pod_id:
            raise RunnerError("pod not running")
        argv = ["exec", "-w", RUNNER_WORKDIR]
        for key, value in cfg.environment.items():
            argv += ["-e", f"{key}={value}"]
        argv.append(cfg.pod_id)
        argv.extend(args)
        self._nerdctl(*argv)

    def start_pod(self, cfg: Config) -> None:
        self.start_vm()
        argv = ["run", "--detach"]
        for bind in cfg.mounts:
            argv += ["--volume", f"{bind.source}:{bind.destination}"]
        if not cfg.capabilities.networking:
            argv.append("--network=none")
        for key, value in cfg.environment.items():
            argv += ["--env", f"{key}={value}"]
        argv.append(f"--platform={cfg.arch}")
        argv.append(digest_from_ref(cfg.img_ref))
        argv.extend(_POD_COMMAND)
        proc = self._nerdctl(*argv, capture_stdout=True)
        cfg.pod_id = proc.stdout.decode("utf-8", errors="replace").strip()

    def terminate_pod(self, cfg: Config) -> None:
        if not self.list_containers(cfg.pod_id):
            return
        self.remove_container(cfg.pod_id, True)

    def test_usability(self) -> bool:
        try:
            self.list_vms("")
        except RunnerError:
            return False
        return True

    def start_vm(self) -> None:
        """Make sure the builder VM exists, runs, and can emulate other arches."""
        vms = self.list_vms(MELANGE_VM_NAME)
        if not vms:
            self._start(MELANGE_VM_NAME, exists=False)
            return
        vminfo = vms[0]
        instance_config = os.path.join(vminfo.get("dir", ""), "lima.yaml")
        try:
            with open(instance_config, "rb") as handle:
                raw = handle.read()
        except OSError as exc:
            raise RunnerError(
                f"failed to read lima config {instance_config}: {exc}"
            ) from exc
        try:
            loaded = yaml.safe_load(raw) or {}
        except yaml.YAMLError as exc:
            raise RunnerError(f"failed to load lima config: {exc}") from exc
        if not isinstance(loaded, dict):
            raise RunnerError("failed to load lima config: not a mapping")

        mount_good = any(
            mount.get("location") == MELANGE_WRITABLE_PARENT
            for mount in loaded.get("mounts") or []
            if isinstance(mount, dict) and mount.get("writable") is not False
        )
        if not mount_good:
            raise RunnerError(
                f"unable to find writable mount under {MELANGE_WRITABLE_PARENT}"
            )

        if vminfo.get("status") != "Running":
            self._start(MELANGE_VM_NAME, exists=True)
        try:
            self._limashell(MELANGE_VM_NAME, "sudo", "systemctl", "start", "containerd")
        except RunnerError as exc:
            raise RunnerError(f"failed to start containerd in root for binfmt: {exc}") from exc
        try:
            self._sudo_nerdctl("run", "--privileged", "--rm", BINFMT_IMAGE, "--install", "all")
        except RunnerError as exc:
            raise RunnerError(f"failed to run binfmt container: {exc}") from exc
        try:
            self._limashell(MELANGE_VM_NAME, "sudo", "systemctl", "stop", "containerd")
        except RunnerError as exc:
            raise RunnerError(f"failed to stop containerd in root for binfmt: {exc}") from exc

    def terminate_vm(self) -> None:
        """Stop and delete the builder VM if it exists."""
        vms = self.list_vms(MELANGE_VM_NAME)
        if not vms:
            return
        if vms[0].get("status") != "Stopped":
            self._stop(MELANGE_VM_NAME)
        self._delete(MELANGE_VM_NAME)

    def workspace_tar(self, cfg: Config) -> BinaryIO:
        """Stream a gzipped tar of the workspace output from the container."""
        argv = [
            self.limactl, "shell", "--workdir", MELANGE_WRITABLE_PARENT, MELANGE_VM_NAME,
            "nerdctl", "exec", "-i", cfg.pod_id,
            "tar", "czf", "-", "-C", RUNNER_WORKDIR, "melange-out",
        ]
        self.logger.info("limactl %s", argv[1:])
        try:
            proc = subprocess.Popen(argv, stdin=subprocess.DEVNULL, stdout=subprocess.PIPE)
        except OSError as exc:
            raise RunnerError(f"failed to tar workspace: {exc}") from exc
        return _ProcessStream(proc, "failed to tar workspace")

    def list_vms(self, name: str) -> list[dict[str, Any]]:
        """Return the lima instances, restricted to ``name`` when it is given."""
        argv = ["list"]
        if name:
            argv.append(name)
        argv.append("--json")
        try:
            proc = self._limactl(*argv, capture_stdout=True)
        except RunnerError as exc:
            raise RunnerError(f"failed to list existing lima VMs: {exc}") from exc
        return _objects(proc.stdout.decode("utf-8", errors="replace"), "lima list")

    def list_containers(self, container_id: str) -> list[dict[str, Any]]:
        """Return all containers in the VM, restricted to ``container_id`` if given."""
        argv = ["container", "list", "-a", "--format", "json"]
        if container_id:
            argv += ["--filter", f"id={container_id}"]
        proc = self._nerdctl(*argv, capture_stdout=True)
        return _objects(proc.stdout.decode("utf-8", errors="replace"), "container list")

    def remove_container(self, name: str, force: bool = False) -> None:
        """Remove a container; it must be stopped unless ``force`` is set."""
        argv = ["rm", name]
        if force:
            argv.append("--force")
        self._nerdctl(*argv)

    def _vm_template(self) -> bytes:
        if self.vm_config is None:
            raise RunnerError("no lima VM template configured to create the builder VM")
        if isinstance(self.vm_config, bytes):
            return self.vm_config
        try:
            with open(self.vm_config, "rb") as handle:
                return handle.read()
        except OSError as exc:
            raise RunnerError(f"failed to read lima VM template: {exc}") from exc

    def _start(self, name: str, exists: bool) -> None:
        argv = ["start", "--name", name, "--tty=false"]
        stdin = b""
        if not exists:
            stdin = self._vm_template()
            argv.append("-")
        self._limactl(*argv, stdin=stdin)

    def _stop(self, name: str) -> None:
        if not name:
            raise RunnerError("no name provided")
        self._limactl("stop", name)

    def _delete(self, name: str) -> None:
        if not name:
            raise RunnerError("no name provided")
        self._limactl("delete", name)

    def _limactl(
        self,
        *args: str,
        stdin: bytes | None = None,
        capture_stdout: bool = False,
        capture_stderr: bool = False,
    ) -> subprocess.CompletedProcess:
        self.logger.info("limactl %s", list(args))
        inputs: dict[str, Any] = (
            {"input": stdin} if stdin is not None else {"stdin": subprocess.DEVNULL}
        )
        try:
            proc = subprocess.run(
                [self.limactl, *args],
                stdout=subprocess.PIPE if capture_stdout else None,
                stderr=subprocess.PIPE if capture_stderr else None,
                check=False,
                **inputs,
            )
        except OSError as exc:
            raise RunnerError(f"failed to run {self.limactl}: {exc}") from exc
        if proc.returncode != 0:
            message = f"exit status {proc.returncode}"
            if capture_stderr and proc.stderr:
                message += " " + proc.stderr.decode("utf-8", errors="replace").strip()
            raise RunnerError(message)
        if proc.stdout is None:
            proc.stdout = b""
        return proc

    def _limashell(self, name: str, *args: str, **kwargs: Any) -> subprocess.CompletedProcess:
        return self._limactl(
            "shell", "--workdir", MELANGE_WRITABLE_PARENT, name, *args, **kwargs
        )

    def _nerdctl(self, *args: str, **kwargs: Any) -> subprocess.CompletedProcess:
        return self._limashell(MELANGE_VM_NAME, "nerdctl", *args, **kwargs)

    def _sudo_nerdctl(self, *args: str, **kwargs: Any) -> subprocess.CompletedProcess:
        return self._limashell(MELANGE_VM_NAME, "sudo", "nerdctl", *args, **kwargs)


def _image_archive(layer_bytes: bytes, arch: str) -> bytes:
    diff_id = hashlib.sha256(layer_bytes).hexdigest()
    config = {
        "architecture": arch,
        "os": "linux",
        "config": {},
        "rootfs": {"type": "layers", "diff_ids": [f"sha256:{diff_id}"]},
    }
    config_bytes = json.dumps(config, sort_keys=True).encode()
    config_name = hashlib.sha256(config_bytes).hexdigest() + ".json"
    layer_name = f"{diff_id}/layer.tar"
    manifest = [
        {"Config": config_name, "RepoTags": [CONTAINER_IMAGE_NAME], "Layers": [layer_name]}
    ]
    files = {
        config_name: config_bytes,
        layer_name: layer_bytes,
        "manifest.json": json.dumps(manifest).encode(),
    }
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class _LimaOCILoader(Loader):
    """Builds an image from a layer and loads it into containerd in the VM."""

    def __init__(self, lima: LimaRunner) -> None:
        self._lima = lima

    def load_image(self, layer: BinaryIO | bytes, arch: str) -> str:
        layer_bytes = layer if isinstance(layer, bytes) else layer.read()
        archive = _image_archive(layer_bytes, arch)
        try:
            proc = self._lima._nerdctl(
                "image", "load", f"--platform={arch}",
                stdin=archive, capture_stdout=True, capture_stderr=True,
            )
        except RunnerError as exc:
            raise RunnerError(f"failed to load image into containerd: {exc}") from exc
        return parse_nerdctl_load(proc.stdout.decode("utf-8", errors="replace"))