# buildrunners

`buildrunners` runs the steps of a package build inside an isolated
environment. One abstract interface, `buildrunners.runner.Runner`, is
implemented by four backends:

| Name          | Class                                  | How it isolates the build                              |
|---------------|----------------------------------------|--------------------------------------------------------|
| `bubblewrap`  | `buildrunners.bubblewrap.BubblewrapRunner` | `bwrap` sandbox over an unpacked root directory    |
| `docker`      | `buildrunners.docker.DockerRunner`     | a long-lived container on a Docker daemon              |
| `lima`        | `buildrunners.lima.LimaRunner`         | containers run with `nerdctl` in a `melange-builder` Lima VM |
| `kubernetes`  | `buildrunners.kubernetes.KubernetesRunner` | a builder pod in a Kubernetes cluster              |

## Life cycle

Every runner is used the same way:

1. `runner.test_usability()` tells whether the backend works on this host.
2. `runner.oci_image_loader().load_image(layer, arch)` prepares the build
   image from a single uncompressed layer tarball (a binary stream or, for
   the Docker, Lima and Kubernetes loaders, also `bytes`) and returns the
   reference to put in `Config.img_ref`.
3. `runner.start_pod(cfg)` starts the environment; runners that keep a
   long-lived container store its id in `cfg.pod_id`.
4. `runner.run(cfg, *args)` runs a command, always starting in
   `/home/build`. Standard output is logged line by line at info level and
   standard error at warning level on `cfg.logger`.
5. `runner.workspace_tar(cfg)` returns a gzipped tar stream of the
   workspace's `melange-out` directory for the Lima and Kubernetes runners;
   the bubblewrap and Docker runners use bind mounts and return `None`.
6. `runner.terminate_pod(cfg)` tears the environment down.

Failures raise `buildrunners.runner.RunnerError`.

What each loader does:

* bubblewrap: extracts the layer into a new temporary directory and returns
  its path, which becomes the root of the sandbox.
* Docker: wraps the layer in an image archive and loads it into the daemon
  as `melange:latest`.
* Lima: wraps the layer in an image archive, loads it with
  `nerdctl image load` inside the VM and returns `name@sha256:...`.
* Kubernetes: pushes a one-layer image to the configured repository and
  returns `repo@sha256:...`.

## Example

```python
import logging

from buildrunners.config import BindMount, Capabilities, Config
from buildrunners.factory import get_runner

logger = logging.getLogger("build")
runner = get_runner("bubblewrap", logger)

if not runner.test_usability():
    raise SystemExit("bubblewrap is not available on this host")

cfg = Config(
    package_name="hello",
    mounts=[BindMount(source="/tmp/hello-workspace", destination="/home/build")],
    capabilities=Capabilities(networking=False),
    logger=logger,
    environment={"HOME": "/home/build"},
    img_ref="/tmp/hello-root",
    arch="x86_64",
)

runner.start_pod(cfg)
try:
    runner.run(cfg, "/bin/sh", "-c", "make && make install DESTDIR=melange-out")
finally:
    runner.terminate_pod(cfg)
```

`get_runner(name, logger)` accepts `bubblewrap`, `docker`, `lima` and
`kubernetes` and raises `RunnerError` for any other name. For `lima` it also
calls `start_vm()`; for `kubernetes` it builds the configuration with
`new_kubernetes_config()` and the API client with
`KubeClient.from_kubeconfig()`.

`BubblewrapRunner.build_args(cfg, *args)` returns the full `bwrap` command
line without running it. Networking is unshared unless
`cfg.capabilities.networking` is set.

## Docker

`DockerClient` talks to the Docker Engine HTTP API at `DOCKER_HOST`, or
`unix:///var/run/docker.sock` when it is unset. Unix sockets and plain
`tcp://` or `http://` hosts are supported. `demux_stream(stream, stdout,
stderr)` splits the daemon's multiplexed exec output.

## Lima

`LimaRunner` drives `limactl`. When the `melange-builder` VM does not exist
yet it is created from the template given as `vm_config` (YAML bytes or a
path). An existing VM must have a writable mount at `/tmp/melange`, which
`temp_dir()` returns. `start_vm()` also installs binfmt emulators inside the
VM; `terminate_vm()` stops and deletes it.

## Kubernetes configuration

`buildrunners.kubernetes_config.new_kubernetes_config(base_config_file,
environ)` layers its sources in this order, later ones winning:

1. Built-in defaults: provider `generic`, namespace `default`, repository
   `ttl.sh/melange`, start timeout of ten minutes, and resource requests of
   `cpu: "2"` and `memory: 4Gi`.
2. A YAML file, `.melange.k8s.yaml` in the current directory unless another
   path is given. A missing file is not an error.
3. Environment variables (`os.environ` unless a mapping is given):
   `MELANGE_PROVIDER`, `MELANGE_CONTEXT`, `MELANGE_REPO`,
   `MELANGE_NAMESPACE`, `MELANGE_START_TIMEOUT`, and `MELANGE_ANNOTATIONS`,
   `MELANGE_LABELS`, `MELANGE_RESOURCES` as `key:value,key:value`. The pod
   template is never read from the environment.

```yaml
namespace: builds
repo: registry.example.com/melange
startTimeout: 5m
labels:
  team: packaging
podTemplate:
  serviceAccountName: builder
  nodeSelector:
    pool: builders
  runtimeClassName: gvisor
```

Durations are parsed by `parse_duration`, which accepts forms such as `10s`,
`5m` or `1h30m` with the units `ns`, `us`, `ms`, `s`, `m` and `h`.

`KubernetesRunnerConfig.default_builder_pod(cfg)` returns the pod manifest
as a dictionary. Dots and underscores in the package name are replaced by
dashes (`escape_rfc1123`) for the pod's `generateName`. With provider `gke`,
arm64 builds are scheduled onto the `Scale-Out` compute class.

```python
from buildrunners.kubernetes_config import new_kubernetes_config

k8s_config = new_kubernetes_config(".melange.k8s.yaml", {"MELANGE_NAMESPACE": "builds"})
pod = k8s_config.default_builder_pod(cfg)
print(pod["metadata"]["generateName"])
```

`KubernetesRunner.new_build_pod(cfg)` adds to that manifest one init
container, volume mount and `emptyDir` volume per bind mount; the mount's
directory is pushed to the repository as an image tagged
`<package>-mount-<n>`. `filter_mounts` skips `/etc/resolv.conf`, mounts onto
`/var/cache/melange`, and mounts without a destination. Remote commands run
over the exec websocket; failures other than a non-zero exit are retried
with exponential backoff. `RetryableTarPipe` restarts the workspace download
from the last offset up to five times.

## What this package does not do

* It has no command-line program; it is a library.
* It ships no Lima VM template; pass one as `vm_config` when the builder VM
  must be created (`get_runner("lima")` does not pass one).
* Docker daemons reached over TLS are not supported.
* Kubeconfig authentication covers bearer tokens and client certificates
  only; exec and auth-provider plugins are not run.
* Registry pushes use anonymous bearer tokens only; no stored registry
  credentials are read.

## Requirements

* Python 3.10 or later.
* `bwrap` on `PATH` for the bubblewrap runner.
* A reachable Docker daemon for the Docker runner.
* `limactl` on `PATH` for the Lima runner.
* A kubeconfig or in-cluster service account with permission to create pods
  for the Kubernetes runner.