[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "lvmlocalpv"
version = "0.1.0"
description = "Controllers, work queues and CSI response builders for LVM-backed local persistent volumes"
requires-python = ">=3.10"
dependencies = []
keywords = ["lvm", "csi", "kubernetes", "local-pv", "storage", "controller"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["lvmlocalpv"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
