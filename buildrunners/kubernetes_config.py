"""Configuration of the Kubernetes runner and the builder pods it creates."""

from __future__ import annotations

import copy
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from fractions import Fraction
from typing import Any

import yaml

from buildrunners.config import Config
from buildrunners.runner import RunnerError

KUBERNETES_CONFIG_FILE_NAME = ".melange.k8s.yaml"
"""File read for global Kubernetes runner settings."""

WORKSPACE_CONTAINER_NAME = "workspace"
"""Name of the builder pod's container that runs the build."""

ENV_PREFIX = "MELANGE"

_POD_COMMAND = [
    "/bin/sh",
    "-c",
    "[ -x /sbin/ldconfig ] && /sbin/ldconfig /lib || true\nsleep infinity",
]

_UNIT_SECONDS = {
    "ns": Fraction(1, 1_000_000_000),
    "us": Fraction(1, 1_000_000),
    "\u00b5s": Fraction(1, 1_000_000),
    "\u03bcs": Fraction(1, 1_000_000),
    "ms": Fraction(1, 1_000),
    "s": Fraction(1),
    "m": Fraction(60),
    "h": Fraction(3600),
}
_UNIT_PATTERN = "ns|us|\u00b5s|\u03bcs|ms|s|m|h"
_COMPONENT = rf"(\d+\.?\d*|\.\d+)({_UNIT_PATTERN})"
_DURATION_RE = re.compile(rf"^[-+]?(?:\d+\.?\d*|\.\d+)(?:{_UNIT_PATTERN})(?:(?:\d+\.?\d*|\.\d+)(?:{_UNIT_PATTERN}))*$")
_COMPONENT_RE = re.compile(_COMPONENT)


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``10s``, ``5m`` or ``1h30m``.

    Accepts an optional sign and the units ns, us, ms, s, m and h.
    Raises ValueError for anything else.
    """
    if text in ("0", "+0", "-0"):
        return timedelta(0)
    if not _DURATION_RE.match(text):
        raise ValueError(f'time: invalid duration "{text}"')
    sign = -1 if text.startswith("-") else 1
    total = sum(
        (Fraction(number) * _UNIT_SECONDS[unit] for number, unit in _COMPONENT_RE.findall(text)),
        Fraction(0),
    )
    microseconds = round(total * 1_000_000)
    return timedelta(microseconds=sign * microseconds)


def escape_rfc1123(name: str) -> str:
    """Replace dots and underscores so ``name`` fits in an RFC 1123 label.

    Collisions do not matter: the result is used as a generateName prefix.
    """
    return name.replace(".", "-").replace("_", "-")


@dataclass
class KubernetesRunnerConfigPodTemplate:
    """Settings copied into every builder pod; never read from the environment."""

    service_account_name: str = ""
    node_selector: dict[str, str] = field(default_factory=dict)
    env: list[dict[str, Any]] = field(default_factory=list)
    affinity: dict[str, Any] | None = None
    runtime_class_name: str | None = None
    volumes: list[dict[str, Any]] = field(default_factory=list)
    volume_mounts: list[dict[str, Any]] = field(default_factory=list)


def _default_resources() -> dict[str, str]:
    return {"cpu": "2", "memory": "4Gi"}


@dataclass
class KubernetesRunnerConfig:
    """Settings of the Kubernetes runner.

    Values come from the defaults, then the global config file, then
    ``MELANGE_*`` environment variables, each overriding the one before.
    """

    provider: str = "generic"
    context: str = ""
    repo: str = "ttl.sh/melange"
    namespace: str = "default"
    annotations: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    start_timeout: timedelta = field(default_factory=lambda: timedelta(minutes=10))
    pod_template: KubernetesRunnerConfigPodTemplate | None = None
    # Only requests are set: a burstable pod suits ephemeral builders.
    resources: dict[str, str] = field(default_factory=_default_resources)

    def default_builder_pod(self, cfg: Config) -> dict[str, Any]:
        """Return the pod manifest for building ``cfg``'s package."""
        arch = cfg.arch
        oci_arch = arch.split("/", 1)[0]
        container: dict[str, Any] = {
            "name": WORKSPACE_CONTAINER_NAME,
            "image": cfg.img_ref,
            "command": list(_POD_COMMAND),
            "resources": {"requests": dict(self.resources)},
            "volumeMounts": [],
            "env": [{"name": key, "value": value} for key, value in cfg.environment.items()],
        }
        spec: dict[str, Any] = {
            "terminationGracePeriodSeconds": 0,
            "containers": [container],
            "restartPolicy": "Never",
            "automountServiceAccountToken": False,
            "nodeSelector": {"kubernetes.io/arch": arch},
            "serviceAccountName": "default",
            "securityContext": {"seccompProfile": {"type": "RuntimeDefault"}},
            "volumes": [],
        }
        metadata: dict[str, Any] = {
            "generateName": f"melange-builder-{escape_rfc1123(cfg.package_name)}-{arch}-",
            "namespace": self.namespace,
            "labels": {
                "kubernetes.io/arch": arch,
                "app.kubernetes.io/component": cfg.package_name,
                "melange.chainguard.dev/arch": oci_arch,
                "melange.chainguard.dev/package": cfg.package_name,
            },
            "annotations": dict(self.annotations),
        }
        metadata["labels"].update(self.labels)

        template = self.pod_template
        if template is not None:
            spec["volumes"].extend(copy.deepcopy(template.volumes))
            container["volumeMounts"].extend(copy.deepcopy(template.volume_mounts))
            spec["nodeSelector"].update(template.node_selector)
            if template.affinity is not None:
                spec["affinity"] = copy.deepcopy(template.affinity)
            if template.runtime_class_name is not None:
                spec["runtimeClassName"] = template.runtime_class_name
            container["env"].extend(copy.deepcopy(template.env))
            if template.service_account_name:
                spec["serviceAccountName"] = template.service_account_name

        if self.provider == "gke" and arch == "arm64":
            # Not every region offers every compute class; be specific.
            spec["nodeSelector"]["cloud.google.com/compute-class"] = "Scale-Out"

        return {"apiVersion": "v1", "kind": "Pod", "metadata": metadata, "spec": spec}


def _lookup(mapping: Mapping[Any, Any], name: str) -> Any:
    if name in mapping:
        return mapping[name]
    lowered = name.lower()
    for key, value in mapping.items():
        if isinstance(key, str) and key.lower() == lowered:
            return value
    return None


def _string(value: Any, what: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{what} must be a string")
    return value


def _string_map(value: Any, what: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"{what} must be a mapping")
    return {str(k): "" if v is None else str(v) for k, v in value.items()}


def _mapping_list(value: Any, what: str) -> list[dict[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, Mapping) for item in value):
        raise ValueError(f"{what} must be a list of mappings")
    return [dict(item) for item in value]


def _pod_template(data: Any) -> KubernetesRunnerConfigPodTemplate | None:
    if data is None:
        return None
    if not isinstance(data, Mapping):
        raise ValueError("podTemplate must be a mapping")
    affinity = _lookup(data, "affinity")
    if affinity is not None and not isinstance(affinity, Mapping):
        raise ValueError("podTemplate.affinity must be a mapping")
    runtime_class = _lookup(data, "runtimeClassName")
    if runtime_class is not None and not isinstance(runtime_class, str):
        raise ValueError("podTemplate.runtimeClassName must be a string")
    return KubernetesRunnerConfigPodTemplate(
        service_account_name=_string(_lookup(data, "serviceAccountName"), "podTemplate.serviceAccountName"),
        node_selector=_string_map(_lookup(data, "nodeSelector"), "podTemplate.nodeSelector"),
        env=_mapping_list(_lookup(data, "env"), "podTemplate.env"),
        affinity=dict(affinity) if affinity is not None else None,
        runtime_class_name=runtime_class,
        volumes=_mapping_list(_lookup(data, "volumes"), "podTemplate.volumes"),
        volume_mounts=_mapping_list(_lookup(data, "volumeMounts"), "podTemplate.volumeMounts"),
    )


def _file_overrides(data: Any) -> dict[str, Any]:
    """Non-empty settings found in a parsed config document."""
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError("config must be a mapping")
    found: dict[str, Any] = {}
    for attr, key in (("provider", "provider"), ("context", "context"),
                      ("repo", "repo"), ("namespace", "namespace")):
        found[attr] = _string(_lookup(data, key), key)
    found["annotations"] = _string_map(_lookup(data, "annotations"), "annotations")
    found["labels"] = _string_map(_lookup(data, "labels"), "labels")
    found["resources"] = _string_map(_lookup(data, "resources"), "resources")
    timeout = _lookup(data, "startTimeout")
    if timeout is not None:
        if not isinstance(timeout, str):
            raise ValueError("startTimeout must be a duration string")
        found["start_timeout"] = parse_duration(timeout)
    found["pod_template"] = _pod_template(_lookup(data, "podTemplate"))
    return found


def _env_map(value: str, key: str) -> dict[str, str]:
    result = {}
    for pair in value.split(","):
        name, sep, item = pair.partition(":")
        if not sep:
            raise ValueError(f"{key}: invalid map item: {pair!r}")
        result[name] = item
    return result


def _environ_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Non-empty settings found in ``MELANGE_*`` environment variables."""
    found: dict[str, Any] = {}
    for attr, suffix in (("provider", "PROVIDER"), ("context", "CONTEXT"),
                         ("repo", "REPO"), ("namespace", "NAMESPACE")):
        found[attr] = environ.get(f"{ENV_PREFIX}_{suffix}", "")
    for attr, suffix in (("annotations", "ANNOTATIONS"), ("labels", "LABELS"),
                         ("resources", "RESOURCES")):
        key = f"{ENV_PREFIX}_{suffix}"
        value = environ.get(key, "")
        if value:
            found[attr] = _env_map(value, key)
    timeout = environ.get(f"{ENV_PREFIX}_START_TIMEOUT", "")
    if timeout:
        found["start_timeout"] = parse_duration(timeout)
    return found


def _merge(cfg: KubernetesRunnerConfig, overrides: Mapping[str, Any]) -> None:
    for attr, value in overrides.items():
        if value is None or value == "" or value == timedelta(0) or value == {}:
            continue
        if isinstance(value, dict):
            getattr(cfg, attr).update(value)
        else:
            setattr(cfg, attr, value)


def new_kubernetes_config(
    base_config_file: str | os.PathLike = KUBERNETES_CONFIG_FILE_NAME,
    environ: Mapping[str, str] | None = None,
) -> KubernetesRunnerConfig:
    """Build the runner config from defaults, the config file and the environment.

    A missing config file is not an error. Raises RunnerError when the
    file cannot be read or parsed, or an environment variable is invalid.
    """
    cfg = KubernetesRunnerConfig()
    path = os.fspath(base_config_file)

    try:
        with open(path, "rb") as handle:
            raw: bytes = handle.read()
    except FileNotFoundError:
        raw = b""
    except OSError as exc:
        raise RunnerError(f"error reading config file {path}: {exc}") from exc

    try:
        _merge(cfg, _file_overrides(yaml.safe_load(raw) if raw.strip() else None))
    except (yaml.YAMLError, ValueError) as exc:
        raise RunnerError(f"error parsing config file {path}: {exc}") from exc

    try:
        _merge(cfg, _environ_overrides(os.environ if environ is None else environ))
    except ValueError as exc:
        raise RunnerError(f"error parsing environment variables: {exc}") from exc

    return cfg