"""Choosing a runner by name."""

from __future__ import annotations

import logging

from buildrunners.bubblewrap import BUBBLEWRAP_NAME, BubblewrapRunner
from buildrunners.docker import DOCKER_NAME, DockerRunner
from buildrunners.kubernetes import KUBERNETES_NAME, KubeClient, KubernetesRunner
from buildrunners.kubernetes_config import new_kubernetes_config
from buildrunners.lima import LIMA_NAME, LimaRunner
from buildrunners.runner import Runner, RunnerError


def get_runner(name: str, logger: logging.Logger | None = None) -> Runner:
    """Return the runner called ``name``; raise RunnerError for unknown names."""
    logger = logger or logging.getLogger("buildrunners")
    if name == BUBBLEWRAP_NAME:
        return BubblewrapRunner(logger)
    if name == DOCKER_NAME:
        return DockerRunner(logger)
    if name == LIMA_NAME:
        runner = LimaRunner(logger)
        runner.start_vm()
        return runner
    if name == KUBERNETES_NAME:
        try:
            cfg = new_kubernetes_config()
        except RunnerError as exc:
            raise RunnerError(f"failed to configure kubernetes runner: {exc}") from exc
        if cfg.context:
            logger.info("Using kubecontext: %s", cfg.context)
        return KubernetesRunner(cfg, KubeClient.from_kubeconfig(cfg.context), logger)
    raise RunnerError(f'unknown virtualizer "{name}"')