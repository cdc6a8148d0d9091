"""A runner that builds inside Kubernetes pods."""

from __future__ import annotations

import base64
import gzip
import hashlib
import io
import json
import logging
import os
import queue
import random
import ssl
import tarfile
import tempfile
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, BinaryIO
from urllib.parse import quote, urlencode, urljoin

import requests
import websocket
import yaml

from buildrunners.config import (
    DEFAULT_CACHE_DIR,
    DEFAULT_RESOLV_CONF_PATH,
    RUNNER_WORKDIR,
    BindMount,
    Config,
)
from buildrunners.kubernetes_config import (
    WORKSPACE_CONTAINER_NAME,
    KubernetesRunnerConfig,
)
from buildrunners.runner import Loader, Runner, RunnerError, monitor_pipe

KUBERNETES_NAME = "kubernetes"

_EXEC_PROTOCOL = "v4.channel.k8s.io"
_IN_CLUSTER_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"
_OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
_OCI_CONFIG = "application/vnd.oci.image.config.v1+json"
_OCI_LAYER = "application/vnd.oci.image.layer.v1.tar+gzip"


class ExecExitError(RunnerError):
    """A remote command ran and exited with a non-zero status."""

    def __init__(self, code: int, message: str = "") -> None:
        super().__init__(message or f"command terminated with exit code {code}")
        self.code = code


def _data_file(data: str) -> str:
    handle = tempfile.NamedTemporaryFile(prefix="kube-", delete=False)
    with handle:
        handle.write(base64.b64decode(data))
    return handle.name


@dataclass
class _Connection:
    server: str
    token: str = ""
    ca_file: str | None = None
    verify: bool = True
    cert_file: str | None = None
    key_file: str | None = None


class KubeClient:
    """A small client for the Kubernetes API server."""

    def __init__(self, connection: _Connection) -> None:
        self._conn = connection
        self.server = connection.server.rstrip("/")
        self.session = requests.Session()
        if connection.token:
            self.session.headers["Authorization"] = f"Bearer {connection.token}"
        if not connection.verify:
            self.session.verify = False
        elif connection.ca_file:
            self.session.verify = connection.ca_file
        if connection.cert_file and connection.key_file:
            self.session.cert = (connection.cert_file, connection.key_file)

    @classmethod
    def from_kubeconfig(cls, context: str = "") -> KubeClient:
        """Load credentials from the kubeconfig, or in-cluster settings."""
        path = os.environ.get("KUBECONFIG", "").split(os.pathsep)[0] or os.path.expanduser(
            "~/.kube/config"
        )
        if not os.path.exists(path):
            host = os.environ.get("KUBERNETES_SERVICE_HOST")
            if not host:
                raise RunnerError("failed to load kubeconfig: no configuration found")
            port = os.environ.get("KUBERNETES_SERVICE_PORT", "443")
            with open(os.path.join(_IN_CLUSTER_DIR, "token"), encoding="utf-8") as fh:
                token = fh.read().strip()
            return cls(_Connection(
                server=f"https://{host}:{port}",
                token=token,
                ca_file=os.path.join(_IN_CLUSTER_DIR, "ca.crt"),
            ))
        try:
            with open(path, encoding="utf-8") as fh:
                data = yaml.safe_load(fh) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise RunnerError(f"failed to load kubeconfig: {exc}") from exc

        def named(section: str, name: str) -> dict[str, Any]:
            for item in data.get(section) or []:
                if item.get("name") == name:
                    return item.get(section[:-1]) or {}
            raise RunnerError(f"failed to load kubeconfig: {section[:-1]} {name!r} not found")

        ctx = named("contexts", context or data.get("current-context", ""))
        cluster = named("clusters", ctx.get("cluster", ""))
        user = named("users", ctx["user"]) if ctx.get("user") else {}

        def file_of(key: str) -> str | None:
            if user.get(f"{key}-data"):
                return _data_file(user[f"{key}-data"])
            return user.get(key)

        ca_file = cluster.get("certificate-authority")
        if cluster.get("certificate-authority-data"):
            ca_file = _data_file(cluster["certificate-authority-data"])
        return cls(_Connection(
            server=cluster.get("server", ""),
            token=user.get("token", ""),
            ca_file=ca_file,
            verify=not cluster.get("insecure-skip-tls-verify", False),
            cert_file=file_of("client-certificate"),
            key_file=file_of("client-key"),
        ))

    def _call(self, method: str, path: str, body: Any = None) -> dict[str, Any]:
        try:
            response = self.session.request(method, self.server + path, json=body)
        except requests.RequestException as exc:
            raise RunnerError(str(exc)) from exc
        if response.status_code >= 400:
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            raise RunnerError(f"kubernetes API error ({response.status_code}): {message}")
        return response.json() if response.content else {}

    def create_pod(self, namespace: str, pod: dict[str, Any]) -> dict[str, Any]:
        return self._call("POST", f"/api/v1/namespaces/{quote(namespace)}/pods", pod)

    def get_pod(self, namespace: str, name: str) -> dict[str, Any]:
        return self._call("GET", f"/api/v1/namespaces/{quote(namespace)}/pods/{quote(name)}")

    def delete_pod(self, namespace: str, name: str) -> None:
        self._call(
            "DELETE",
            f"/api/v1/namespaces/{quote(namespace)}/pods/{quote(name)}",
            {"kind": "DeleteOptions", "apiVersion": "v1", "propagationPolicy": "Foreground"},
        )

    def can_create_pods(self, namespace: str) -> bool:
        review = {
            "apiVersion": "authorization.k8s.io/v1",
            "kind": "SelfSubjectAccessReview",
            "spec": {"resourceAttributes": {
                "namespace": namespace, "verb": "create", "resource": "pods",
            }},
        }
        result = self._call(
            "POST", "/apis/authorization.k8s.io/v1/selfsubjectaccessreviews", review
        )
        return bool((result.get("status") or {}).get("allowed"))

    def exec_stream(self, namespace, name, container, command, stdout, stderr) -> None:
        """Run ``command`` in a pod container, copying its output to the writers."""
        query = [("container", container), ("stdout", "true"), ("stderr", "true")]
        query += [("command", part) for part in command]
        url = (
            self.server.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
            + f"/api/v1/namespaces/{quote(namespace)}/pods/{quote(name)}/exec?"
            + urlencode(query)
        )
        headers = []
        if self._conn.token:
            headers.append(f"Authorization: Bearer {self._conn.token}")
        sslopt: dict[str, Any] = {}
        if not self._conn.verify:
            sslopt["cert_reqs"] = ssl.CERT_NONE
        elif self._conn.ca_file:
            sslopt["ca_certs"] = self._conn.ca_file
        if self._conn.cert_file:
            sslopt["certfile"] = self._conn.cert_file
            sslopt["keyfile"] = self._conn.key_file
        try:
            ws = websocket.create_connection(
                url, header=headers, subprotocols=[_EXEC_PROTOCOL], sslopt=sslopt
            )
        except (websocket.WebSocketException, OSError) as exc:
            raise RunnerError(f"failed to open exec stream: {exc}") from exc
        status: dict[str, Any] | None = None
        try:
            while True:
                try:
                    frame = ws.recv()
                except websocket.WebSocketConnectionClosedException:
                    break
                if not frame:
                    if not ws.connected:
                        break
                    continue
                if isinstance(frame, str):
                    frame = frame.encode()
                channel, payload = frame[0], frame[1:]
                if channel == 1:
                    stdout.write(payload)
                elif channel == 2:
                    stderr.write(payload)
                elif channel == 3 and payload:
                    status = json.loads(payload)
        except (websocket.WebSocketException, OSError) as exc:
            raise RunnerError(f"exec stream failed: {exc}") from exc
        finally:
            ws.close()
        if status and status.get("status") == "Failure":
            if status.get("reason") == "NonZeroExitCode":
                code = 1
                for cause in (status.get("details") or {}).get("causes") or []:
                    if cause.get("reason") == "ExitCode":
                        code = int(cause.get("message", "1"))
                raise ExecExitError(code, status.get("message", ""))
            raise RunnerError(status.get("message", "remote command failed"))


def _split_repo(repo: str) -> tuple[str, str]:
    first, sep, rest = repo.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return first, rest
    return "index.docker.io", repo if sep else f"library/{repo}"


class _Registry:
    """Pushes single-layer images with the registry HTTP API."""

    def __init__(self, repo: str) -> None:
        self.repo = repo
        self.host, self.name = _split_repo(repo)
        self.base = f"https://{self.host}/v2/{self.name}"
        self.session = requests.Session()

    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        response = self.session.request(method, url, **kwargs)
        challenge = response.headers.get("WWW-Authenticate", "")
        if response.status_code == 401 and challenge.startswith("Bearer "):
            params = dict(
                part.split("=", 1) for part in challenge[7:].split(",") if "=" in part
            )
            params = {k.strip(): v.strip('"') for k, v in params.items()}
            realm = params.pop("realm", "")
            token = self.session.get(realm, params=params).json()
            self.session.headers["Authorization"] = "Bearer " + (
                token.get("token") or token.get("access_token", "")
            )
            response = self.session.request(method, url, **kwargs)
        if response.status_code >= 400:
            raise RunnerError(f"registry error ({response.status_code}): {response.text}")
        return response

    def _blob(self, data: bytes) -> str:
        digest = "sha256:" + hashlib.sha256(data).hexdigest()
        head = self.session.head(f"{self.base}/blobs/{digest}")
        if head.status_code == 200:
            return digest
        started = self._send("POST", f"{self.base}/blobs/uploads/")
        location = urljoin(self.base + "/", started.headers["Location"])
        joiner = "&" if "?" in location else "?"
        self._send(
            "PUT",
            f"{location}{joiner}digest={quote(digest)}",
            data=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        return digest

    def push(self, layer_gz: bytes, diff_id: str, arch: str, tag: str = "") -> str:
        """Push an image of one gzipped layer; return ``repo@digest``."""
        config = json.dumps({
            "architecture": arch.split("/", 1)[0],
            "os": "linux",
            "config": {},
            "rootfs": {"type": "layers", "diff_ids": [diff_id]},
        }).encode()
        manifest = json.dumps({
            "schemaVersion": 2,
            "mediaType": _OCI_MANIFEST,
            "config": {"mediaType": _OCI_CONFIG, "size": len(config), "digest": self._blob(config)},
            "layers": [{"mediaType": _OCI_LAYER, "size": len(layer_gz), "digest": self._blob(layer_gz)}],
        }).encode()
        digest = "sha256:" + hashlib.sha256(manifest).hexdigest()
        self._send(
            "PUT",
            f"{self.base}/manifests/{tag or digest}",
            data=manifest,
            headers={"Content-Type": _OCI_MANIFEST},
        )
        return f"{self.repo}@{digest}"


def _gzip_layer(raw: bytes) -> tuple[bytes, str]:
    return gzip.compress(raw, mtime=0), "sha256:" + hashlib.sha256(raw).hexdigest()


def _push_directory(repo: str, path: str, tag: str) -> str:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        tar.add(path, arcname="var/run/kontext")
    layer, diff_id = _gzip_layer(buf.getvalue())
    return _Registry(repo).push(layer, diff_id, "amd64", tag)


def _pod_ready(pod: dict[str, Any]) -> bool:
    return any(
        c.get("type") == "Ready" and c.get("status") == "True"
        for c in (pod.get("status") or {}).get("conditions") or []
    )


class KubernetesRunner(Runner):
    """Runs build commands with exec in a dedicated builder pod."""

    def __init__(
        self,
        config: KubernetesRunnerConfig,
        client: KubeClient,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], None] = time.sleep,
        bundler: Callable[[str, str], str] | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.logger = logger or logging.getLogger("buildrunners")
        self.pod: dict[str, Any] | None = None
        self._sleep = sleep
        self._bundler = bundler or (lambda path, tag: _push_directory(config.repo, path, tag))

    @property
    def name(self) -> str:
        return KUBERNETES_NAME

    def start_pod(self, cfg: Config) -> None:
        if cfg.pod_id:
            raise RunnerError(f"pod already running: {cfg.pod_id}")
        builder = self.new_build_pod(cfg)
        namespace = builder["metadata"]["namespace"]
        try:
            pod = self.client.create_pod(namespace, builder)
        except RunnerError as exc:
            self.logger.warning("failed creating builder pod\n%s", yaml.safe_dump(builder))
            raise RunnerError(f"creating builder pod: {exc}") from exc
        meta = pod.get("metadata", {})
        pod_name = meta.get("name", "")
        self.logger.info("created builder pod '%s' with UID '%s'", pod_name, meta.get("uid", ""))

        timeout = self.config.start_timeout.total_seconds()
        deadline = time.monotonic() + timeout
        while True:
            current = self.client.get_pod(namespace, pod_name)
            self.logger.info("pod [%s/%s] status:", namespace, pod_name)
            for c in (current.get("status") or {}).get("conditions") or []:
                self.logger.info(
                    "  - %s=%s (%s): %s",
                    c.get("type"), c.get("status"), c.get("reason", ""), c.get("message", ""),
                )
            if _pod_ready(current):
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.logger.error(
                    "builder pod [%s/%s] timed out waiting for ready status, dumping pod data\n\n%s",
                    namespace, pod_name, yaml.safe_dump(current),
                )
                raise RunnerError("timed out waiting for the condition")
            self._sleep(min(10.0, remaining))
        self.logger.info("pod [%s/%s] is ready", namespace, pod_name)
        self.pod = pod
        cfg.pod_id = pod_name

    def run(self, cfg: Config, *args: str) -> None:
        if not cfg.pod_id:
            raise RunnerError("pod isn't running")
        out_r, out_w = os.pipe()
        err_r, err_w = os.pipe()
        watchers = [
            threading.Thread(target=monitor_pipe,
                             args=(cfg.logger, logging.INFO, os.fdopen(out_r, "rb")), daemon=True),
            threading.Thread(target=monitor_pipe,
                             args=(cfg.logger, logging.WARNING, os.fdopen(err_r, "rb")), daemon=True),
        ]
        for watcher in watchers:
            watcher.start()
        try:
            with os.fdopen(out_w, "wb", buffering=0) as out, os.fdopen(err_w, "wb", buffering=0) as err:
                try:
                    self.exec(cfg.pod_id, list(args), out, err)
                except RunnerError as exc:
                    raise RunnerError(f"running remote command: {exc}") from exc
        finally:
            for watcher in watchers:
                watcher.join()

    def temp_dir(self) -> str:
        return ""

    def terminate_pod(self, cfg: Config) -> None:
        if not cfg.pod_id:
            raise RunnerError("pod not running")
        try:
            self.client.delete_pod(self.config.namespace, cfg.pod_id)
        except RunnerError as exc:
            raise RunnerError(f"deleting pod: {exc}") from exc
        cfg.pod_id = ""
        self.pod = None

    def test_usability(self) -> bool:
        try:
            return self.client.can_create_pods(self.config.namespace)
        except (RunnerError, OSError):
            return False

    def workspace_tar(self, cfg: Config) -> BinaryIO:
        if self.pod is None:
            raise RunnerError("creating k8s tar fetcher: pod not running")
        meta = self.pod.get("metadata", {})
        name, namespace = meta.get("name", ""), meta.get("namespace", self.config.namespace)

        def read_at(writer: Any, offset: int) -> None:
            script = (
                f"([ -f /tmp/melange-out.tar.gz ] || tar -czf /tmp/melange-out.tar.gz "
                f"-C {RUNNER_WORKDIR} melange-out) && cat /tmp/melange-out.tar.gz | tail -c+{offset}"
            )
            self.client.exec_stream(
                namespace, name, WORKSPACE_CONTAINER_NAME,
                ["/bin/sh", "-c", script], writer, _StderrWriter(),
            )

        return RetryableTarPipe(read_at, max_retries=5, logger=self.logger)

    def oci_image_loader(self) -> Loader:
        return _K8sLoader(self.config.repo, self.logger)

    def exec(self, pod_name: str, cmd: list[str], stdout: Any, stderr: Any) -> None:
        """Run ``cmd`` in the pod, retrying failures that are not exit errors."""
        cmd = list(cmd)
        if len(cmd) != 3:
            self.logger.warning(
                "unknown command format, expected 3 elements but got %d, this might not work...",
                len(cmd),
            )
        elif cmd[0] != "/bin/sh" or cmd[1] != "-c":
            self.logger.warning(
                "unknown command format, expected '/bin/sh -c' but got [%s %s], this might not work...",
                cmd[0], cmd[1],
            )
        else:
            cmd[2] = (
                f"[ -d '{RUNNER_WORKDIR}' ] || mkdir -p '{RUNNER_WORKDIR}'\n"
                f"cd '{RUNNER_WORKDIR}'\n{cmd[2]}"
            )

        self.logger.info("remote executing command %s", cmd)
        steps, delay, factor, jitter = 6, 1.0, 3.0, 0.1
        for attempt in range(steps):
            try:
                self.client.exec_stream(
                    self.config.namespace, pod_name, WORKSPACE_CONTAINER_NAME, cmd, stdout, stderr
                )
                return
            except ExecExitError as exc:
                self.logger.warning("non-recoverable error executing remote command: %s", exc)
                raise RunnerError(f"failed executing remote command: {exc}") from exc
            except (RunnerError, OSError) as exc:
                self.logger.warning(
                    "attempting to recover after failing to execute remote command: %s", exc
                )
            if attempt < steps - 1:
                self._sleep(delay * (1 + jitter * random.random()))
                delay *= factor
        raise RunnerError("failed executing remote command: timed out waiting for the condition")

    def new_build_pod(self, cfg: Config) -> dict[str, Any]:
        """Return the builder pod manifest, with init containers for each mount."""
        pod = self.config.default_builder_pod(cfg)
        spec = pod["spec"]
        for index, mount in enumerate(cfg.mounts):
            if self.filter_mounts(mount):
                continue
            mount_name = f"mount-{index}"
            self.logger.info(
                "creating mount '%s' from %s at %s", mount_name, mount.source, mount.destination
            )
            tag = f"{cfg.package_name}-{mount_name}"
            try:
                bundle = self._bundler(mount.source, tag)
            except (RunnerError, OSError, requests.RequestException) as exc:
                self.logger.warning("error creating bundle: %s", exc)
                raise RunnerError(f"error creating bundle: {exc}") from exc
            self.logger.info("mount '%s' uploaded to %s", mount_name, bundle)
            volume_mount = {"name": mount_name, "mountPath": mount.destination}
            spec.setdefault("initContainers", []).append({
                "name": mount_name,
                "image": bundle,
                "workingDir": mount.destination,
                "volumeMounts": [dict(volume_mount)],
            })
            spec["containers"][0]["volumeMounts"].append(volume_mount)
            if not any(v.get("name") == mount_name for v in spec["volumes"]):
                spec["volumes"].append({"name": mount_name, "emptyDir": {}})
        return pod

    def filter_mounts(self, mount: BindMount) -> bool:
        """Return True for mounts the Kubernetes runner does not carry over."""
        if mount.source == DEFAULT_RESOLV_CONF_PATH:
            return True
        if mount.destination == DEFAULT_CACHE_DIR:
            self.logger.warning(
                "skipping k8s runner irrelevant cache mount %s -> %s",
                mount.source, mount.destination,
            )
            return True
        return mount.destination == ""


class _StderrWriter:
    def write(self, data: bytes) -> int:
        os.write(2, data)
        return len(data)


class _K8sLoader(Loader):
    """Pushes the build image to the configured registry."""

    def __init__(self, repo: str, logger: logging.Logger) -> None:
        self.repo = repo
        self.logger = logger

    def load_image(self, layer: BinaryIO | bytes, arch: str) -> str:
        raw = layer if isinstance(layer, bytes) else layer.read()
        gz, diff_id = _gzip_layer(raw)
        self.logger.info("pushing build image (%d bytes) to %s", len(gz), self.repo)
        try:
            return _Registry(self.repo).push(gz, diff_id, arch)
        except (RunnerError, requests.RequestException) as exc:
            self.logger.info("error publishing build image: %s", exc)
            raise RunnerError(f"error publishing build image: {exc}") from exc


class _QueueWriter:
    def __init__(self, chunks: queue.Queue) -> None:
        self._chunks = chunks

    def write(self, data: bytes) -> int:
        if data:
            self._chunks.put(bytes(data))
        return len(data)


class RetryableTarPipe(io.RawIOBase):
    """A stream that restarts ``read_at`` from the last offset when it ends.

    ``read_at(writer, offset)`` writes the stream from the 1-based byte
    ``offset`` into ``writer``; it is restarted up to ``max_retries`` times.
    """

    def __init__(
        self,
        read_at: Callable[[Any, int], None],
        max_retries: int = 5,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__()
        self.read_at = read_at
        self.max_retries = max_retries
        self.progress = 0
        self.retries = 0
        self._logger = logger or logging.getLogger("buildrunners")
        self._buffer = b""
        self._start(0)

    def _start(self, offset: int) -> None:
        chunks: queue.Queue = queue.Queue()
        self._chunks = chunks

        def pump() -> None:
            try:
                self.read_at(_QueueWriter(chunks), offset)
            except Exception as exc:  # the stream just ends; the reader retries
                self._logger.warning("failed to read: %s", exc)
            finally:
                chunks.put(None)

        threading.Thread(target=pump, daemon=True).start()

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            parts = []
            while chunk := self.read(65536):
                parts.append(chunk)
            return b"".join(parts)
        if self.closed or size == 0:
            return b""
        while not self._buffer:
            chunk = self._chunks.get()
            if chunk is None:
                if self.retries >= self.max_retries:
                    return b""
                self.retries += 1
                self._start(self.progress + 1)
                continue
            self._buffer = chunk
        data, self._buffer = self._buffer[:size], self._buffer[size:]
        self.progress += len(data)
        return data

    def readinto(self, buffer) -> int:
        data = self.read(len(buffer))
        buffer[: len(data)] = data
        return len(data)

    def close(self) -> None:
        self._buffer = b""
        super().close()