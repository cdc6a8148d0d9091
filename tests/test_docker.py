import io
import json
import logging
import os
import shutil
import socketserver
import struct
import tarfile
import tempfile
import threading
from http.server import BaseHTTPRequestHandler

import pytest

from buildrunners.config import RUNNER_WORKDIR, BindMount, Config
from buildrunners.docker import (
    IMAGE_TAG,
    DockerAPIError,
    DockerClient,
    DockerRunner,
    demux_stream,
)
from buildrunners.runner import RunnerError


def frame(kind, payload):
    return struct.pack(">BxxxI", kind, len(payload)) + payload


class FakeClient:
    def __init__(self, output=b"", exit_code=0, ping_error=None):
        self.output = output
        self.exit_code = exit_code
        self.ping_error = ping_error
        self.calls = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return None

    def ping(self):
        if self.ping_error:
            raise self.ping_error
        return "1.43"

    def create_container(self, body, platform):
        self.calls.append(("create", body, platform))
        return "cid"

    def start_container(self, container_id):
        self.calls.append(("start", container_id))

    def remove_container(self, container_id, force=False):
        self.calls.append(("remove", container_id, force))

    def exec_create(self, container_id, body):
        self.calls.append(("exec_create", container_id, body))
        return "eid"

    def exec_start(self, exec_id):
        return io.BytesIO(self.output)

    def exec_inspect(self, exec_id):
        return {"ExitCode": self.exit_code}

    def load_image(self, data):
        self.calls.append(("load", data))
        return ""


def make_runner(client):
    return DockerRunner(logging.getLogger("test-docker"), client_factory=lambda: client)


def make_cfg(**kwargs):
    return Config(logger=logging.getLogger("test-docker"), **kwargs)


def test_demux_splits_streams():
    data = frame(1, b"out\n") + frame(2, b"err\n") + frame(0, b"in")
    out, err = io.BytesIO(), io.BytesIO()
    written = demux_stream(io.BytesIO(data), out, err)
    assert out.getvalue() == b"out\nin"
    assert err.getvalue() == b"err\n"
    assert written == len(b"out\nin") + len(b"err\n")


def test_demux_system_error_raises():
    data = frame(3, b"boom")
    with pytest.raises(RunnerError, match="error from daemon in stream: boom"):
        demux_stream(io.BytesIO(data), io.BytesIO(), io.BytesIO())


def test_demux_unknown_stream_raises():
    with pytest.raises(RunnerError, match="Unrecognized input header"):
        demux_stream(io.BytesIO(frame(7, b"x")), io.BytesIO(), io.BytesIO())


def test_demux_partial_header_stops_cleanly():
    out = io.BytesIO()
    written = demux_stream(io.BytesIO(frame(1, b"ok") + b"\x01\x00"), out, io.BytesIO())
    assert out.getvalue() == b"ok"
    assert written == 2


def test_start_pod_sets_pod_id_and_mounts():
    client = FakeClient()
    cfg = make_cfg(
        img_ref="image:tag",
        arch="arm64",
        mounts=[BindMount("/src", "/dst")],
    )
    make_runner(client).start_pod(cfg)
    assert cfg.pod_id == "cid"
    kind, body, platform = client.calls[0]
    assert kind == "create"
    assert body["Image"] == "image:tag"
    assert body["HostConfig"]["Mounts"] == [
        {"Type": "bind", "Source": "/src", "Target": "/dst"}
    ]
    assert platform == "linux/arm64"
    assert client.calls[1] == ("start", "cid")


def test_run_requires_pod():
    with pytest.raises(RunnerError, match="pod not running"):
        make_runner(FakeClient()).run(make_cfg(), "true")


def test_terminate_requires_pod():
    with pytest.raises(RunnerError, match="pod not running"):
        make_runner(FakeClient()).terminate_pod(make_cfg())


def test_terminate_forces_removal():
    client = FakeClient()
    make_runner(client).terminate_pod(make_cfg(pod_id="cid"))
    assert client.calls == [("remove", "cid", True)]


def test_run_sends_exec_and_logs_output(caplog):
    caplog.set_level(logging.INFO, logger="test-docker")
    client = FakeClient(output=frame(1, b"hello\n") + frame(2, b"warn\n"))
    cfg = make_cfg(pod_id="cid", environment={"A": "1"})
    make_runner(client).run(cfg, "/bin/sh", "-c", "echo hello")
    _, container_id, body = client.calls[0]
    assert container_id == "cid"
    assert body["Cmd"] == ["/bin/sh", "-c", "echo hello"]
    assert body["Env"] == ["A=1"]
    assert body["WorkingDir"] == RUNNER_WORKDIR
    levels = {(r.levelno, r.getMessage()) for r in caplog.records}
    assert (logging.INFO, "hello") in levels
    assert (logging.WARNING, "warn") in levels


def test_run_nonzero_exit_raises():
    client = FakeClient(exit_code=3)
    with pytest.raises(RunnerError, match="task exited with code 3"):
        make_runner(client).run(make_cfg(pod_id="cid"), "false")


def test_usability_false_when_ping_fails():
    client = FakeClient(ping_error=RunnerError("down"))
    assert make_runner(client).test_usability() is False
    assert make_runner(FakeClient()).test_usability() is True


def test_workspace_and_temp_dir():
    runner = make_runner(FakeClient())
    assert runner.workspace_tar(make_cfg()) is None
    assert runner.temp_dir() == ""
    assert runner.name == "docker"


def test_loader_builds_image_tarball():
    client = FakeClient()
    layer = b"layer-bytes"
    ref = make_runner(client).oci_image_loader().load_image(io.BytesIO(layer), "amd64")
    assert ref == IMAGE_TAG
    data = client.calls[0][1]
    with tarfile.open(fileobj=io.BytesIO(data)) as tar:
        manifest = json.load(tar.extractfile("manifest.json"))
        assert manifest[0]["RepoTags"] == [IMAGE_TAG]
        assert tar.extractfile(manifest[0]["Layers"][0]).read() == layer
        config = json.load(tar.extractfile(manifest[0]["Config"]))
    assert config["architecture"] == "amd64"
    assert config["os"] == "linux"


def test_client_rejects_unknown_scheme():
    with pytest.raises(ValueError):
        DockerClient("ftp://example.com")


class _Handler(BaseHTTPRequestHandler):
    def log_message(self, *args):
        pass

    def _send(self, status, payload, headers=None):
        body = json.dumps(payload).encode()
        self.send_response(status)
        for key, value in (headers or {}).items():
            self.send_header(key, value)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        if self.path == "/_ping":
            self._send(200, "OK", {"API-Version": "1.43"})
        elif self.path == "/v1.43/exec/abc/json":
            self._send(200, {"ExitCode": 0})
        else:
            self._send(404, {"message": "no such exec"})


class _Server(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    daemon_threads = True


@pytest.fixture
def docker_socket():
    directory = tempfile.mkdtemp()
    path = os.path.join(directory, "d.sock")
    server = _Server(path, _Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield path
    server.shutdown()
    server.server_close()
    shutil.rmtree(directory)


def test_client_over_unix_socket(docker_socket):
    client = DockerClient(f"unix://{docker_socket}", timeout=5)
    assert client.ping() == "1.43"
    assert client.exec_inspect("abc") == {"ExitCode": 0}
    with pytest.raises(DockerAPIError) as excinfo:
        client.exec_inspect("missing")
    assert excinfo.value.status == 404
    assert excinfo.value.message == "no such exec"