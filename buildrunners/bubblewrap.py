"""A runner that isolates build commands with bubblewrap."""

from __future__ import annotations

import logging
import os
import shutil
import tarfile
import tempfile
from collections.abc import Iterator
from typing import BinaryIO

from buildrunners.config import RUNNER_WORKDIR, Config
from buildrunners.runner import Loader, Runner, RunnerError, monitor_cmd

BUBBLEWRAP_NAME = "bubblewrap"

_LDCONFIG_SCRIPT = "[ -x /sbin/ldconfig ] && /sbin/ldconfig /lib || true"


class BubblewrapRunner(Runner):
    """Runs build commands in a bubblewrap sandbox rooted at the image directory."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger("buildrunners")

    @property
    def name(self) -> str:
        return BUBBLEWRAP_NAME

    def build_args(self, cfg: Config, *args: str) -> list[str]:
        """Return the full bwrap command line for running ``args``."""
        argv = ["bwrap", "--bind", cfg.img_ref, "/"]
        for mount in cfg.mounts:
            argv += ["--bind", mount.source, mount.destination]
        argv += [
            "--unshare-pid",
            "--dev", "/dev",
            "--proc", "/proc",
            "--chdir", RUNNER_WORKDIR,
            "--clearenv",
            "--new-session",
        ]
        if not cfg.capabilities.networking:
            argv.append("--unshare-net")
        for key, value in cfg.environment.items():
            argv += ["--setenv", key, value]
        argv.extend(args)
        return argv

    def run(self, cfg: Config, *args: str) -> None:
        argv = self.build_args(cfg, *args)
        self.logger.info("executing: %s", " ".join(argv))
        monitor_cmd(cfg, argv)

    def test_usability(self) -> bool:
        if shutil.which("bwrap") is None:
            self.logger.warning(
                "cannot use bubblewrap for containers: bwrap not found on $PATH"
            )
            return False
        return True

    def oci_image_loader(self) -> Loader:
        return BubblewrapOCILoader()

    def temp_dir(self) -> str:
        return ""

    def start_pod(self, cfg: Config) -> None:
        """Prime ld.so.cache; there is no long-lived pod for bubblewrap."""
        self.run(cfg, "/bin/sh", "-c", _LDCONFIG_SCRIPT)

    def terminate_pod(self, cfg: Config) -> None:
        return None

    def workspace_tar(self, cfg: Config) -> BinaryIO | None:
        """Bubblewrap uses bind mounts for the workspace, so there is no tar."""
        return None


def _members(tar: tarfile.TarFile) -> Iterator[tarfile.TarInfo]:
    while True:
        try:
            member = tar.next()
        except tarfile.TarError:
            return
        if member is None:
            return
        yield member


def _guest_path(guest_dir: str, name: str) -> str:
    return os.path.normpath(os.path.join(guest_dir, name.lstrip("/")))


class BubblewrapOCILoader(Loader):
    """Unpacks an image layer into a fresh directory to serve as the root."""

    def load_image(self, layer: BinaryIO, arch: str) -> str:
        """Extract the uncompressed tar stream ``layer``; return the directory."""
        try:
            guest_dir = tempfile.mkdtemp(prefix="build-guest-")
        except OSError as exc:
            raise RunnerError(f"failed to create guest dir: {exc}") from exc

        try:
            tar = tarfile.open(fileobj=layer, mode="r|")
        except tarfile.TarError:
            return guest_dir

        with tar:
            for member in _members(tar):
                fullname = _guest_path(guest_dir, member.name)
                perm = member.mode & 0o777
                if member.isdir():
                    try:
                        os.makedirs(fullname, mode=perm, exist_ok=True)
                    except OSError as exc:
                        raise RunnerError(
                            f"failed to create directory {fullname}: {exc}"
                        ) from exc
                elif member.isreg():
                    self._write_file(tar, member, fullname, perm)
                elif member.issym():
                    try:
                        os.symlink(member.linkname, fullname)
                    except OSError as exc:
                        raise RunnerError(
                            f"failed to create symlink {fullname}: {exc}"
                        ) from exc
                elif member.islnk():
                    try:
                        os.link(_guest_path(guest_dir, member.linkname), fullname)
                    except OSError as exc:
                        raise RunnerError(
                            f"failed to create hardlink {fullname}: {exc}"
                        ) from exc
        return guest_dir

    @staticmethod
    def _write_file(
        tar: tarfile.TarFile, member: tarfile.TarInfo, fullname: str, perm: int
    ) -> None:
        try:
            fd = os.open(fullname, os.O_CREAT | os.O_WRONLY, perm)
        except OSError as exc:
            raise RunnerError(f"failed to create file {fullname}: {exc}") from exc
        source = tar.extractfile(member)
        try:
            with os.fdopen(fd, "wb") as out:
                if source is not None:
                    shutil.copyfileobj(source, out)
        except OSError as exc:
            raise RunnerError(f"failed to copy file {fullname}: {exc}") from exc