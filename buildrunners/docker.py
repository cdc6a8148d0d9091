"""A runner that drives build commands in a long-lived Docker container."""

from __future__ import annotations

import hashlib
import http.client
import io
import json
import logging
import os
import socket
import tarfile
import threading
from collections.abc import Callable, Mapping
from typing import Any, BinaryIO
from urllib.parse import quote, urlencode, urlsplit

from buildrunners.config import RUNNER_WORKDIR, Config
from buildrunners.runner import Loader, Runner, RunnerError, monitor_pipe

DOCKER_NAME = "docker"
DEFAULT_DOCKER_HOST = "unix:///var/run/docker.sock"
IMAGE_TAG = "melange:latest"

_POD_COMMAND = [
    "/bin/sh",
    "-c",
    "[ -x /sbin/ldconfig ] && /sbin/ldconfig /lib || true\nwhile true; do sleep 5; done",
]


class DockerAPIError(RunnerError):
    """The Docker daemon answered a request with an error status."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"docker API error ({status}): {message}")
        self.status = status
        self.message = message


class _UnixHTTPConnection(http.client.HTTPConnection):
    def __init__(self, socket_path: str, timeout: float | None) -> None:
        super().__init__("localhost", timeout=timeout)
        self._socket_path = socket_path

    def connect(self) -> None:
        self.sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.sock.settimeout(self.timeout)
        self.sock.connect(self._socket_path)


class DockerClient:
    """A small client for the Docker Engine HTTP API."""

    def __init__(self, host: str | None = None, timeout: float | None = None) -> None:
        self.host = host or os.environ.get("DOCKER_HOST") or DEFAULT_DOCKER_HOST
        self.timeout = timeout
        parts = urlsplit(self.host)
        if parts.scheme == "unix":
            self._socket_path: str | None = parts.path
        elif parts.scheme in ("tcp", "http") and parts.hostname:
            self._socket_path = None
        else:
            raise ValueError(f"unsupported docker host {self.host!r}")
        self._netloc = parts.netloc
        self._version: str | None = None

    def __enter__(self) -> DockerClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._version = None

    def _request(
        self,
        method: str,
        path: str,
        *,
        query: Mapping[str, str] | None = None,
        body: Any = None,
        content_type: str = "application/json",
        versioned: bool = True,
    ) -> http.client.HTTPResponse:
        if versioned:
            if self._version is None:
                self.ping()
            if self._version:
                path = f"/v{self._version}{path}"
        if query:
            path += "?" + urlencode(query)
        headers = {}
        if body is not None:
            body = body if isinstance(body, bytes) else json.dumps(body).encode()
            headers["Content-Type"] = content_type
        if self._socket_path is not None:
            conn: http.client.HTTPConnection = _UnixHTTPConnection(self._socket_path, self.timeout)
        else:
            conn = http.client.HTTPConnection(self._netloc, timeout=self.timeout)
        try:
            conn.request(method, path, body=body, headers=headers)
            response = conn.getresponse()
        except OSError as exc:
            conn.close()
            raise RunnerError(f"cannot connect to docker at {self.host}: {exc}") from exc
        if response.status >= 400:
            raw = response.read()
            conn.close()
            try:
                message = json.loads(raw).get("message", "")
            except (ValueError, AttributeError):
                message = raw.decode("utf-8", errors="replace").strip()
            raise DockerAPIError(response.status, message or response.reason)
        return response

    def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        with self._request(method, path, **kwargs) as response:
            raw = response.read()
        return json.loads(raw) if raw.strip() else None

    def ping(self) -> str:
        """Check that the daemon answers; return the API version it speaks."""
        with self._request("GET", "/_ping", versioned=False) as response:
            response.read()
        version = response.getheader("API-Version") or ""
        if self._version is None:
            self._version = version
        return version

    def create_container(self, body: Mapping[str, Any], platform: str = "") -> str:
        """Create a container and return its id."""
        query = {"platform": platform} if platform else None
        return self._json("POST", "/containers/create", query=query, body=dict(body))["Id"]

    def start_container(self, container_id: str) -> None:
        self._json("POST", f"/containers/{quote(container_id)}/start")

    def remove_container(self, container_id: str, force: bool = False) -> None:
        query = {"force": "true"} if force else None
        self._json("DELETE", f"/containers/{quote(container_id)}", query=query)

    def exec_create(self, container_id: str, body: Mapping[str, Any]) -> str:
        """Create an exec task in a container and return its id."""
        return self._json("POST", f"/containers/{quote(container_id)}/exec", body=dict(body))["Id"]

    def exec_start(self, exec_id: str) -> BinaryIO:
        """Start an exec task and return its multiplexed output stream."""
        return self._request(
            "POST", f"/exec/{quote(exec_id)}/start", body={"Detach": False, "Tty": False}
        )

    def exec_inspect(self, exec_id: str) -> dict[str, Any]:
        return self._json("GET", f"/exec/{quote(exec_id)}/json")

    def load_image(self, data: bytes) -> None:
        """Load a ``docker save`` style tarball into the daemon."""
        with self._request(
            "POST", "/images/load", query={"quiet": "1"}, body=data,
            content_type="application/x-tar",
        ) as response:
            raw = response.read().decode("utf-8", errors="replace")
        for line in raw.splitlines():
            try:
                item = json.loads(line)
            except ValueError:
                continue
            if isinstance(item, dict) and item.get("error"):
                raise RunnerError(f"failed to load image: {item['error']}")


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = b""
    while len(data) < size:
        chunk = stream.read(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


def demux_stream(stream: BinaryIO, stdout: BinaryIO, stderr: BinaryIO) -> int:
    """Split Docker's multiplexed stream into ``stdout`` and ``stderr``.

    Returns the number of payload bytes written. Raises RunnerError for a
    daemon error frame or an unknown stream type.
    """
    written = 0
    while len(header := _read_exact(stream, 8)) == 8:
        kind = header[0]
        size = int.from_bytes(header[4:8], "big")
        payload = _read_exact(stream, size)
        if kind == 3:
            raise RunnerError(
                "error from daemon in stream: " + payload.decode("utf-8", errors="replace")
            )
        if kind not in (0, 1, 2):
            raise RunnerError(f"Unrecognized input header: {kind}")
        target = stderr if kind == 2 else stdout
        target.write(payload)
        if hasattr(target, "flush"):
            target.flush()
        written += len(payload)
        if len(payload) < size:
            break
    return written


ClientFactory = Callable[[], DockerClient]


class DockerRunner(Runner):
    """Runs build commands through ``exec`` in a container kept alive as a pod."""

    def __init__(
        self,
        logger: logging.Logger | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.logger = logger or logging.getLogger("buildrunners")
        self._client_factory = client_factory or DockerClient

    @property
    def name(self) -> str:
        return DOCKER_NAME

    def start_pod(self, cfg: Config) -> None:
        body = {
            "Image": cfg.img_ref,
            "Cmd": list(_POD_COMMAND),
            "Tty": False,
            "HostConfig": {
                "Mounts": [
                    {"Type": "bind", "Source": b.source, "Target": b.destination}
                    for b in cfg.mounts
                ]
            },
        }
        platform = f"linux/{cfg.arch}" if cfg.arch else ""
        with self._client_factory() as client:
            container_id = client.create_container(body, platform)
            client.start_container(container_id)
        cfg.pod_id = container_id
        cfg.logger.info("pod %s started.", cfg.pod_id)

    def terminate_pod(self, cfg: Config) -> None:
        if not cfg.pod_id:
            raise RunnerError("pod not running")
        with self._client_factory() as client:
            client.remove_container(cfg.pod_id, force=True)
        cfg.logger.info("pod %s terminated.", cfg.pod_id)

    def test_usability(self) -> bool:
        try:
            with self._client_factory() as client:
                client.ping()
        except (RunnerError, OSError, ValueError) as exc:
            self.logger.info("cannot use docker for containers: %s", exc)
            return False
        return True

    def oci_image_loader(self) -> Loader:
        return _DockerLoader(self._client_factory)

    def temp_dir(self) -> str:
        return ""

    @staticmethod
    def _wait_for_command(cfg: Config, stream: BinaryIO) -> None:
        out_r, out_w = os.pipe()
        err_r, err_w = os.pipe()
        watchers = [
            threading.Thread(
                target=monitor_pipe, args=(cfg.logger, level, os.fdopen(fd, "rb")), daemon=True
            )
            for level, fd in ((logging.INFO, out_r), (logging.WARNING, err_r))
        ]
        for watcher in watchers:
            watcher.start()
        try:
            with os.fdopen(out_w, "wb") as out, os.fdopen(err_w, "wb") as err:
                demux_stream(stream, out, err)
        finally:
            for watcher in watchers:
                watcher.join()

    def run(self, cfg: Config, *args: str) -> None:
        if not cfg.pod_id:
            raise RunnerError("pod not running")
        body = {
            "Cmd": list(args),
            "WorkingDir": RUNNER_WORKDIR,
            "Env": [f"{key}={value}" for key, value in cfg.environment.items()],
            "Tty": False,
            "AttachStderr": True,
            "AttachStdout": True,
        }
        with self._client_factory() as client:
            try:
                exec_id = client.exec_create(cfg.pod_id, body)
            except RunnerError as exc:
                raise RunnerError(f"failed to create exec task inside pod: {exc}") from exc
            try:
                stream = client.exec_start(exec_id)
            except RunnerError as exc:
                raise RunnerError(f"failed to attach to exec task: {exc}") from exc
            with stream:
                self._wait_for_command(cfg, stream)
            try:
                result = client.exec_inspect(exec_id)
            except RunnerError as exc:
                raise RunnerError(f"failed to get exit code from task: {exc}") from exc
        exit_code = result.get("ExitCode", 0)
        if exit_code != 0:
            raise RunnerError(f"task exited with code {exit_code}")

    def workspace_tar(self, cfg: Config) -> BinaryIO | None:
        """Docker uses bind mounts for the workspace, so there is no tar."""
        return None


class _DockerLoader(Loader):
    """Turns a single layer into an image and loads it into the daemon."""

    def __init__(self, client_factory: ClientFactory) -> None:
        self._client_factory = client_factory

    def load_image(self, layer: BinaryIO | bytes, arch: str) -> str:
        layer_bytes = layer if isinstance(layer, bytes) else layer.read()
        diff_id = hashlib.sha256(layer_bytes).hexdigest()
        config = json.dumps(
            {
                "architecture": arch,
                "os": "linux",
                "config": {},
                "rootfs": {"type": "layers", "diff_ids": [f"sha256:{diff_id}"]},
            },
            sort_keys=True,
        ).encode()
        config_name = hashlib.sha256(config).hexdigest() + ".json"
        layer_name = f"{diff_id}/layer.tar"
        manifest = [{"Config": config_name, "RepoTags": [IMAGE_TAG], "Layers": [layer_name]}]
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w") as tar:
            for name, data in (
                (config_name, config),
                (layer_name, layer_bytes),
                ("manifest.json", json.dumps(manifest).encode()),
            ):
                info = tarfile.TarInfo(name)
                info.size = len(data)
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(data))
        with self._client_factory() as client:
            client.load_image(buf.getvalue())
        return IMAGE_TAG