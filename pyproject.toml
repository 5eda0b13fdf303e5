[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "flagsvc"
version = "0.1.0"
description = "Feature-flag evaluation and flag-sync services: eventing, WSGI middleware, request metrics, a JSON codec and a sync multiplexer"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "feature-flags",
    "feature-toggles",
    "flag-evaluation",
    "flag-sync",
    "wsgi",
    "middleware",
    "cors",
    "metrics",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Middleware",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["flagsvc"]

[tool.hatch.build.targets.sdist]
include = ["flagsvc", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
