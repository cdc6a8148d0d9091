[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "buildrunners"
version = "0.1.0"
description = "Pluggable runners (bubblewrap, Docker, Lima, Kubernetes) for executing package build steps in isolated environments"
requires-python = ">=3.10"
keywords = [
    "build",
    "container",
    "bubblewrap",
    "docker",
    "lima",
    "nerdctl",
    "kubernetes",
    "sandbox",
    "packaging",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Operating System :: MacOS",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
    "Topic :: System :: Software Distribution",
]
dependencies = [
    "pyyaml>=6.0",
    "requests>=2.28",
    "websocket-client>=1.5",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
]

[tool.hatch.build.targets.wheel]
packages = ["buildrunners"]

[tool.hatch.build.targets.sdist]
include = ["buildrunners", "tests"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
ignore_missing_imports = true
