[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "taskconsole"
version = "0.1.0"
description = "Task statistics, field visitors and configuration handling for an async task console"
requires-python = ">=3.11"
keywords = ["async", "tasks", "console", "diagnostics", "instrumentation"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Software Development :: Debuggers",
]
dependencies = [
    "tomli-w",
    "platformdirs",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
taskconsole = "taskconsole.config:main"

[tool.hatch.build.targets.wheel]
packages = ["taskconsole"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
