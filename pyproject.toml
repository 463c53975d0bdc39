[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vela-steps"
version = "0.1.0"
description = "Workflow step providers: a handler registry and built-in steps for workspace, e-mail, HTTP, utilities, Kubernetes objects and configs"
requires-python = ">=3.10"
dependencies = []
keywords = ["workflow", "providers", "kubernetes", "steps", "rate-limiter"]
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
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["vela_steps"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
