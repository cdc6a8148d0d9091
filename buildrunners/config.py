"""Configuration shared by all build runners."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

RUNNER_WORKDIR = "/home/build"
"""Working directory of commands run inside the build environment."""

DEFAULT_WORKSPACE_DIR = "/home/build"
"""Default path of the workspace directory in the runner's environment."""

DEFAULT_CACHE_DIR = "/var/cache/melange"
"""Default path of the cache directory in the runner's environment."""

DEFAULT_RESOLV_CONF_PATH = "/etc/resolv.conf"
"""Default path of resolv.conf in the runner's environment."""

_REGISTRY = r"(?:[A-Za-z0-9.-]+(?::[0-9]+)?/)?"
_COMPONENT = r"[a-z0-9]+(?:[._-]+[a-z0-9]+)*"
_TAG = r"(?::[A-Za-z0-9_][A-Za-z0-9_.-]{0,127})?"
_REPOSITORY_RE = re.compile(rf"^{_REGISTRY}{_COMPONENT}(?:/{_COMPONENT})*{_TAG}$")
_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


@dataclass
class BindMount:
    """A host path bound into the build environment."""

    source: str
    destination: str


@dataclass
class Capabilities:
    """Optional capabilities granted to the build environment."""

    networking: bool = False


@dataclass
class Config:
    """Everything a runner needs to start and drive a build environment."""

    package_name: str = ""
    mounts: list[BindMount] = field(default_factory=list)
    capabilities: Capabilities = field(default_factory=Capabilities)
    logger: logging.Logger = field(
        default_factory=lambda: logging.getLogger("buildrunners")
    )
    environment: dict[str, str] = field(default_factory=dict)
    img_ref: str = ""
    pod_id: str = ""
    arch: str = ""


def digest_from_ref(ref: str) -> str:
    """Return the hex part of the digest in an image reference ``repo@algo:hex``."""
    base, sep, digest = ref.partition("@")
    if not sep or "@" in digest:
        raise ValueError(f"a digest must contain exactly one '@' separator (e.g. registry/repository@digest) saw: {ref}")
    if not _REPOSITORY_RE.match(base):
        raise ValueError(f"invalid repository in reference {ref!r}")
    algorithm, sep, hex_part = digest.partition(":")
    if not sep:
        raise ValueError(f"invalid digest {digest}")
    if algorithm != "sha256" or not _SHA256_RE.match(hex_part):
        raise ValueError(f"invalid digest {digest}")
    return hex_part