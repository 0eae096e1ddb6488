[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "jsoperator"
version = "0.1.0"
description = "Reconciliation logic for JetStream consumers, key-value buckets and object stores declared as namespaced resources"
requires-python = ">=3.10"
dependencies = []
keywords = ["jetstream", "nats", "operator", "reconciler", "controller", "consumer", "key-value", "object-store"]
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
    "Topic :: System :: Systems Administration",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["jsoperator"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
