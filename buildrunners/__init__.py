"""Runners that execute package build steps with bubblewrap, Docker, Lima or Kubernetes."""

__version__ = "0.1.0"

__all__ = [
    "bubblewrap",
    "config",
    "docker",
    "factory",
    "kubernetes",
    "kubernetes_config",
    "lima",
    "runner",
]