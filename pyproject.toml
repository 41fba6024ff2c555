[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fusekit"
version = "0.1.0"
description = "Building blocks for user-space file systems: union and archive trees, pipe splicing, access checks and POSIX conformance checks"
requires-python = ">=3.10"
dependencies = []
keywords = ["filesystem", "fuse", "unionfs", "zip", "tar", "splice", "posix"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["fusekit"]

[tool.pytest.ini_options]
addopts = "-ra"
