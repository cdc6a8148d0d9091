"""The runner interface and helpers for supervising build commands."""

from __future__ import annotations

import logging
import subprocess
import threading
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import BinaryIO

from buildrunners.config import Config


class RunnerError(Exception):
    """Raised when a runner fails to prepare or execute a build step."""


class Loader(ABC):
    """Loads a build environment image so that a runner can start it."""

    @abstractmethod
    def load_image(self, layer, arch: str) -> str:
        """Load the image layer and return a reference to it."""


class Runner(ABC):
    """A way of running build commands inside an isolated environment."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Name of the runner."""

    @abstractmethod
    def test_usability(self) -> bool:
        """Return whether this runner can be used on this host."""

    @abstractmethod
    def oci_image_loader(self) -> Loader:
        """Return the loader that prepares images for this runner."""

    @abstractmethod
    def start_pod(self, cfg: Config) -> None:
        """Start the build environment described by ``cfg``."""

    @abstractmethod
    def run(self, cfg: Config, *args: str) -> None:
        """Run a command in the build environment."""

    @abstractmethod
    def terminate_pod(self, cfg: Config) -> None:
        """Tear down the build environment."""

    @abstractmethod
    def temp_dir(self) -> str:
        """Base for temporary directories, or "" for the system default."""

    @abstractmethod
    def workspace_tar(self, cfg: Config) -> BinaryIO | None:
        """Return a tar stream of the workspace, or None if not needed."""


def monitor_pipe(logger: logging.Logger, level: int, pipe: BinaryIO) -> None:
    """Log each line read from ``pipe`` at ``level``, then close the pipe.

    Only ``logging.INFO`` and ``logging.WARNING`` produce log records.
    """
    with pipe:
        for raw in pipe:
            line = raw.decode("utf-8", errors="replace").rstrip("\n").rstrip("\r")
            if level == logging.INFO:
                logger.info("%s", line)
            elif level == logging.WARNING:
                logger.warning("%s", line)


def monitor_cmd(cfg: Config, cmd: Sequence[str]) -> None:
    """Run ``cmd``, logging stdout as info and stderr as warnings.

    Raises RunnerError when the command exits with a non-zero status.
    """
    proc = subprocess.Popen(
        list(cmd),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    watchers = [
        threading.Thread(
            target=monitor_pipe, args=(cfg.logger, logging.INFO, proc.stdout), daemon=True
        ),
        threading.Thread(
            target=monitor_pipe, args=(cfg.logger, logging.WARNING, proc.stderr), daemon=True
        ),
    ]
    for watcher in watchers:
        watcher.start()
    for watcher in watchers:
        watcher.join()
    returncode = proc.wait()
    if returncode != 0:
        raise RunnerError(f"exit status {returncode}")