from datetime import timedelta

import pytest
import yaml

from buildrunners.config import BindMount, Config
from buildrunners.kubernetes import (
    ExecExitError,
    KubernetesRunner,
    RetryableTarPipe,
)
from buildrunners.kubernetes_config import new_kubernetes_config
from buildrunners.runner import RunnerError


class FakeClient:
    def __init__(self, ready=True, exec_failures=None):
        self.pods = {}
        self.ready = ready
        self.exec_failures = list(exec_failures or [])
        self.exec_calls = []
        self.deleted = []

    def create_pod(self, namespace, pod):
        meta = pod["metadata"]
        meta.setdefault("name", meta["generateName"] + "1234567890")
        self.pods[(namespace, meta["name"])] = pod
        return pod

    def get_pod(self, namespace, name):
        pod = dict(self.pods[(namespace, name)])
        status = "True" if self.ready else "False"
        pod["status"] = {"conditions": [{"type": "Ready", "status": status}]}
        return pod

    def delete_pod(self, namespace, name):
        self.deleted.append((namespace, name))

    def can_create_pods(self, namespace):
        return namespace == "default"

    def exec_stream(self, namespace, name, container, command, stdout, stderr):
        self.exec_calls.append((namespace, name, container, list(command)))
        if self.exec_failures:
            raise self.exec_failures.pop(0)
        stdout.write(b"ok\n")


def make_runner(tmp_path, data, envs=None, client=None):
    path = tmp_path / "k8s.yaml"
    path.write_text(yaml.safe_dump(data))
    cfg = new_kubernetes_config(path, envs or {})
    return KubernetesRunner(cfg, client or FakeClient(), sleep=lambda s: None)


def start(tmp_path, data, arch="amd64", envs=None):
    runner = make_runner(tmp_path, data, envs)
    cfg = Config(package_name="donkey", arch=arch)
    runner.start_pod(cfg)
    pods = list(runner.client.pods.values())
    assert len(pods) == 1
    return pods[0], cfg


def test_default_namespace(tmp_path):
    pod, cfg = start(tmp_path, {})
    assert pod["metadata"]["namespace"] == "default"
    assert cfg.pod_id == "melange-builder-donkey-amd64-1234567890"


def test_global_namespace(tmp_path):
    pod, _ = start(tmp_path, {"namespace": "not-default"})
    assert pod["metadata"]["namespace"] == "not-default"


def test_environment_prioritized(tmp_path):
    pod, _ = start(tmp_path, {"namespace": "not-default"},
                   envs={"MELANGE_NAMESPACE": "from-env", "MELANGE_REPO": "nowhere"})
    assert pod["metadata"]["namespace"] == "from-env"


def test_environment_skipped_for_pod_template(tmp_path):
    envs = {"MELANGE_SERVICE_ACCOUNT_NAME": "bar", "MELANGE_SERVICEACCOUNTNAME": "bar",
            "SERVICE_ACCOUNT_NAME": "bar", "SERVICEACCOUNTNAME": "bar"}
    pod, _ = start(tmp_path, {"podTemplate": {"serviceAccountName": "foo"}}, envs=envs)
    assert pod["spec"]["serviceAccountName"] == "foo"


def test_labels_and_annotations(tmp_path):
    pod, _ = start(tmp_path, {"labels": {"foo": "bar"}, "annotations": {"foo": "bar"}})
    assert pod["metadata"]["labels"]["foo"] == "bar"
    assert pod["metadata"]["annotations"]["foo"] == "bar"


def test_arch_label(tmp_path):
    pod, _ = start(tmp_path, {"namespace": "not-default"}, arch="arm64")
    assert pod["metadata"]["labels"]["kubernetes.io/arch"] == "arm64"


def test_node_selector_appended(tmp_path):
    pod, _ = start(tmp_path, {"podTemplate": {"nodeSelector": {"foo": "bar"}}}, arch="arm64")
    assert pod["spec"]["nodeSelector"]["foo"] == "bar"


def test_resources_override(tmp_path):
    pod, _ = start(tmp_path, {"resources": {"cpu": "1", "memory": "9001"}}, arch="arm64")
    requests = pod["spec"]["containers"][0]["resources"]["requests"]
    assert requests["cpu"] == "1" and requests["memory"] == "9001"


def test_custom_volumes(tmp_path):
    template = {"volumes": [{"name": "foo", "emptyDir": {}}],
                "volumeMounts": [{"name": "foo", "mountPath": "/foo"}]}
    pod, _ = start(tmp_path, {"podTemplate": template}, arch="arm64")
    assert pod["spec"]["volumes"][0]["name"] == "foo"
    assert pod["spec"]["containers"][0]["volumeMounts"][0]["name"] == "foo"


def test_env_and_runtime_class_and_sa(tmp_path):
    template = {"env": [{"name": "foo", "value": "bar"}], "runtimeClassName": "foo",
                "serviceAccountName": "foo"}
    pod, _ = start(tmp_path, {"podTemplate": template}, arch="arm64")
    assert pod["spec"]["containers"][0]["env"][0] == {"name": "foo", "value": "bar"}
    assert pod["spec"]["runtimeClassName"] == "foo"
    assert pod["spec"]["serviceAccountName"] == "foo"


def test_gke_provider(tmp_path):
    pod, _ = start(tmp_path, {"provider": "gke"}, arch="arm64")
    assert pod["spec"]["nodeSelector"]["cloud.google.com/compute-class"] != ""


def test_start_pod_already_running(tmp_path):
    runner = make_runner(tmp_path, {})
    with pytest.raises(RunnerError, match="pod already running"):
        runner.start_pod(Config(pod_id="x", arch="amd64"))


def test_start_pod_timeout(tmp_path):
    runner = make_runner(tmp_path, {}, client=FakeClient(ready=False))
    runner.config.start_timeout = timedelta(0)
    with pytest.raises(RunnerError, match="timed out"):
        runner.start_pod(Config(package_name="p", arch="amd64"))


def test_exec_wraps_workdir(tmp_path):
    runner = make_runner(tmp_path, {})
    out = []

    class W:
        def write(self, data):
            out.append(data)

    runner.exec("pod", ["/bin/sh", "-c", "make"], W(), W())
    command = runner.client.exec_calls[0][3]
    assert command[2] == "[ -d '/home/build' ] || mkdir -p '/home/build'\ncd '/home/build'\nmake"
    assert out == [b"ok\n"]


def test_exec_retries_then_succeeds(tmp_path):
    client = FakeClient(exec_failures=[RunnerError("x"), RunnerError("y")])
    runner = make_runner(tmp_path, {}, client=client)
    runner.exec("pod", ["true"], None, None) if False else None
    runner.exec("pod", ["/bin/sh", "-c", "true"], _Null(), _Null())
    assert len(client.exec_calls) == 3


def test_exec_exit_error_not_retried(tmp_path):
    client = FakeClient(exec_failures=[ExecExitError(2)])
    runner = make_runner(tmp_path, {}, client=client)
    with pytest.raises(RunnerError, match="exit code 2"):
        runner.exec("pod", ["/bin/sh", "-c", "false"], _Null(), _Null())
    assert len(client.exec_calls) == 1


def test_exec_gives_up(tmp_path):
    client = FakeClient(exec_failures=[RunnerError("x")] * 10)
    runner = make_runner(tmp_path, {}, client=client)
    with pytest.raises(RunnerError, match="timed out"):
        runner.exec("pod", ["/bin/sh", "-c", "true"], _Null(), _Null())
    assert len(client.exec_calls) == 6


class _Null:
    def write(self, data):
        return len(data)


def test_terminate_pod(tmp_path):
    runner = make_runner(tmp_path, {})
    cfg = Config(pod_id="p1")
    runner.terminate_pod(cfg)
    assert runner.client.deleted == [("default", "p1")]
    assert cfg.pod_id == ""
    with pytest.raises(RunnerError, match="pod not running"):
        runner.terminate_pod(cfg)


def test_run_requires_pod(tmp_path):
    runner = make_runner(tmp_path, {})
    with pytest.raises(RunnerError, match="pod isn't running"):
        runner.run(Config(), "/bin/sh", "-c", "true")


def test_test_usability(tmp_path):
    assert make_runner(tmp_path, {}).test_usability() is True
    assert make_runner(tmp_path, {"namespace": "other"}).test_usability() is False


def test_filter_mounts(tmp_path):
    runner = make_runner(tmp_path, {})
    assert runner.filter_mounts(BindMount("/etc/resolv.conf", "/etc/resolv.conf"))
    assert runner.filter_mounts(BindMount("/c", "/var/cache/melange"))
    assert runner.filter_mounts(BindMount("/x", ""))
    assert not runner.filter_mounts(BindMount("/src", "/home/build"))


def test_new_build_pod_mounts(tmp_path):
    path = tmp_path / "k8s.yaml"
    path.write_text("")
    tags = []

    def bundler(source, tag):
        tags.append((source, tag))
        return "reg.example.com/x@sha256:" + "0" * 64

    runner = KubernetesRunner(new_kubernetes_config(path, {}), FakeClient(), bundler=bundler)
    cfg = Config(package_name="pkg", arch="amd64", mounts=[
        BindMount("/etc/resolv.conf", "/etc/resolv.conf"),
        BindMount("/src", "/home/build"),
    ])
    pod = runner.new_build_pod(cfg)
    assert tags == [("/src", "pkg-mount-1")]
    assert pod["spec"]["initContainers"][0]["name"] == "mount-1"
    assert pod["spec"]["initContainers"][0]["workingDir"] == "/home/build"
    assert pod["spec"]["volumes"] == [{"name": "mount-1", "emptyDir": {}}]
    assert pod["spec"]["containers"][0]["volumeMounts"] == [
        {"name": "mount-1", "mountPath": "/home/build"}
    ]


def test_retryable_pipe_resumes():
    data = b"abcdefgh"
    offsets = []

    def read_at(writer, offset):
        offsets.append(offset)
        rest = data[max(offset - 1, 0):]
        if len(offsets) == 1:
            writer.write(rest[:3])
            raise RunnerError("broken")
        writer.write(rest)

    pipe = RetryableTarPipe(read_at, max_retries=5)
    assert pipe.read() == data
    assert offsets[:2] == [0, 4]
    assert pipe.retries == 5


def test_retryable_pipe_no_retries():
    def read_at(writer, offset):
        writer.write(b"xy")

    pipe = RetryableTarPipe(read_at, max_retries=0)
    assert pipe.read(1) == b"x"
    assert pipe.read(5) == b"y"
    assert pipe.read(5) == b""