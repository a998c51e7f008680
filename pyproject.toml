[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kvsentinel"
version = "0.1.0"
description = "Snapshot files, master-side replication and a Sentinel-style failover monitor for a RESP key-value server"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "key-value",
    "resp",
    "snapshot",
    "replication",
    "sentinel",
    "failover",
    "high-availability",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Database Engines/Servers",
    "Topic :: System :: Clustering",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
kvsentinel-sentinel = "kvsentinel.sentinel_server:main"

[tool.hatch.build.targets.wheel]
packages = ["kvsentinel"]

[tool.hatch.build.targets.sdist]
include = ["kvsentinel", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
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
check_untyped_defs = true
